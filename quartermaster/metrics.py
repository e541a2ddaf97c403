# Copyright Contributors to the Testing Farm project.
# SPDX-License-Identifier: Apache-2.0

"""
Classes and functions dealing with metrics.

A reservation process is short-lived, and it cannot be scraped by Prometheus. Its metrics are collected in memory,
in dataclasses based on :py:class:`MetricsBase`, and when the process ends, they are converted to Prometheus
objects and, if configured, pushed to a push gateway.

Metrics are split into several sections, and together they form a tree of :py:class:`MetricsBase` classes,
starting with :py:class:`ReservationMetrics`.
"""

import dataclasses
from typing import Dict, List, Optional

import gluetool.log
import prometheus_client
import prometheus_client.utils
from prometheus_client import CollectorRegistry, Gauge, Histogram

from . import safe_call_and_handle

# Process duration buckets, in seconds. Most processes end in a couple of minutes, cluster requests may wait
# for their children much longer.
PROCESS_DURATION_BUCKETS = (
    1, 5, 10, 30, 60, 120, 300, 600, 1800, 3600, prometheus_client.utils.INF
)


class MetricsBase:
    """
    Base class for all containers carrying metrics around.
    """

    _metric_container_fields: List['MetricsBase']

    def __post_init__(self) -> None:
        """
        Collect all fields that are child classes of this base class.

        This list is then used to automagically call :py:meth:`register_with_prometheus` and other methods
        for these fields.
        """

        self._metric_container_fields = [
            self.__dict__[field.name]
            for field in dataclasses.fields(self)  # type: ignore[arg-type]
            if isinstance(self.__dict__[field.name], MetricsBase)
        ]

    def register_with_prometheus(self, registry: CollectorRegistry) -> None:
        """
        Register instances of Prometheus metrics with the given registry.

        The default implementation delegates the call to all child fields that are descendants of ``MetricsBase``
        class.

        :param registry: Prometheus registry to attach metrics to.
        """

        for container in self._metric_container_fields:
            container.register_with_prometheus(registry)

    def update_prometheus(self) -> None:
        """
        Update values of Prometheus metric instances with the data in this container.

        The default implementation delegates the call to all child fields that are descendants of ``MetricsBase``
        class.
        """

        for container in self._metric_container_fields:
            container.update_prometheus()


@dataclasses.dataclass
class BarrierMetrics(MetricsBase):
    """
    Cluster barrier metrics.
    """

    #: Number of checks of sibling stages.
    polls: int = 0

    #: Number of waits that ran out of time.
    timeouts: int = 0

    def inc_polls(self) -> None:
        self.polls += 1

    def inc_timeouts(self) -> None:
        self.timeouts += 1

    def register_with_prometheus(self, registry: CollectorRegistry) -> None:
        super().register_with_prometheus(registry)

        self.POLLS = Gauge(
            'reservation_barrier_polls',
            'Number of sibling stage checks performed by the reservation process',
            registry=registry
        )

        self.TIMEOUTS = Gauge(
            'reservation_barrier_timeouts',
            'Number of barrier waits that ran out of time',
            registry=registry
        )

    def update_prometheus(self) -> None:
        super().update_prometheus()

        self.POLLS.set(self.polls)
        self.TIMEOUTS.set(self.timeouts)


@dataclasses.dataclass
class CascadeMetrics(MetricsBase):
    """
    Failure cascade metrics.
    """

    #: Outcome of the cascade, ``deleted`` or ``failed``, if the cascade ran.
    outcome: Optional[str] = None

    #: Number of cascade steps that failed to update the store.
    failed_steps: int = 0

    def inc_failed_steps(self) -> None:
        self.failed_steps += 1

    def register_with_prometheus(self, registry: CollectorRegistry) -> None:
        super().register_with_prometheus(registry)

        self.OUTCOME = Gauge(
            'reservation_cascade_outcome',
            'Set to 1 when the failure cascade ended with the given outcome',
            ['outcome'],
            registry=registry
        )

        self.FAILED_STEPS = Gauge(
            'reservation_cascade_failed_steps',
            'Number of failure cascade steps that did not update the store',
            registry=registry
        )

    def update_prometheus(self) -> None:
        super().update_prometheus()

        if self.outcome is not None:
            self.OUTCOME.labels(outcome=self.outcome).set(1)

        self.FAILED_STEPS.set(self.failed_steps)


@dataclasses.dataclass
class ProcessMetrics(MetricsBase):
    """
    Reservation process metrics.
    """

    #: Wall-clock duration of the process, in seconds.
    duration: Optional[float] = None

    sessions_opened: int = 0
    statements_executed: int = 0

    def register_with_prometheus(self, registry: CollectorRegistry) -> None:
        super().register_with_prometheus(registry)

        self.DURATION = Histogram(
            'reservation_process_duration',
            'Time spent by the reservation process, in seconds',
            buckets=PROCESS_DURATION_BUCKETS,
            registry=registry
        )

        self.SESSIONS_OPENED = Gauge(
            'reservation_db_sessions_opened',
            'Number of DB sessions opened by the reservation process',
            registry=registry
        )

        self.STATEMENTS_EXECUTED = Gauge(
            'reservation_db_statements_executed',
            'Number of DB statements executed by the reservation process',
            registry=registry
        )

    def update_prometheus(self) -> None:
        super().update_prometheus()

        if self.duration is not None:
            self.DURATION.observe(self.duration)

        self.SESSIONS_OPENED.set(self.sessions_opened)
        self.STATEMENTS_EXECUTED.set(self.statements_executed)


@dataclasses.dataclass
class ReservationMetrics(MetricsBase):
    """
    Global metrics container of a reservation process.
    """

    barrier: BarrierMetrics = dataclasses.field(default_factory=BarrierMetrics)
    cascade: CascadeMetrics = dataclasses.field(default_factory=CascadeMetrics)
    process: ProcessMetrics = dataclasses.field(default_factory=ProcessMetrics)

    def render_prometheus_metrics(self) -> bytes:
        """
        Render plaintext output of Prometheus metrics representing values in this tree of metrics.
        """

        registry = CollectorRegistry()

        self.register_with_prometheus(registry)
        self.update_prometheus()

        return prometheus_client.generate_latest(registry=registry)

    def push(self, logger: gluetool.log.ContextAdapter, url: str, reservation_id: int) -> None:
        """
        Push metrics to a Prometheus push gateway. Failures are logged, never raised.
        """

        registry = CollectorRegistry()

        self.register_with_prometheus(registry)
        self.update_prometheus()

        grouping_key: Dict[str, str] = {
            'reservation_id': str(reservation_id)
        }

        logger.debug(f'pushing metrics to {url}')

        safe_call_and_handle(
            logger,
            prometheus_client.push_to_gateway,
            url,
            job='quartermaster-reservation',
            registry=registry,
            grouping_key=grouping_key
        )
