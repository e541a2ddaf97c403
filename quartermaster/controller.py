# Copyright Contributors to the Testing Farm project.
# SPDX-License-Identifier: Apache-2.0

import functools
import sys
from types import TracebackType
from typing import Any, Callable, Optional, Type, TypeVar

import gluetool.log
from gluetool.result import Error, Ok, Result

from . import Failure, log_dict_yaml
from .barrier import ClusterBarrier
from .cascade import DEFAULT_FAILURE_MESSAGE, EXIT_FAILED, FailureCascade
from .context import ControllerContext
from .db import DB
from .knobs import KNOB_BARRIER_BEGIN_TICK, KNOB_BARRIER_BEGIN_TIMEOUT, KNOB_METRICS_PUSHGATEWAY_URL
from .metrics import ReservationMetrics
from .state import ComputerLogger, LoadState, RequestLogger, RequestState, ReservationLogger
from .store import ReservationData, Store
from .subsystems import ManagementNodeHandle, ProvisioningHandle, SubsystemFactory, TargetHandle, VirtualHostHandle

#: Type variable representing :py:class:`ReservationController` and its child classes.
ControllerBound = TypeVar('ControllerBound', bound='ReservationController')


def step(fn: Callable[[ControllerBound], None]) -> Callable[[ControllerBound], ControllerBound]:
    """
    Mark a method as a "startup step".

    A step accepts only the controller and returns nothing. Wrapper provided by the decorator tests controller's
    ``result`` attribute, and does not call the decorated method if ``result`` is no longer ``None``.

    After calling the decorated method, wrapper returns the controller itself. Together with the ``result``
    test, this allows for chaining of steps since once ``result`` is set, no following steps would be executed.
    """

    @functools.wraps(fn)
    def wrapper(controller: ControllerBound) -> ControllerBound:
        if controller.result is not None:
            return controller

        fn(controller)

        return controller

    return wrapper


class ReservationController:
    """
    Lifecycle of a single reservation process.

    The controller is a context manager: once entered, its teardown is guaranteed to run when the block ends,
    no matter whether it ended normally, by an exception, or by the process exit requested by the failure cascade.

    .. code-block:: python

       with ReservationController(logger, reservation_id) as controller:
           if not controller.initialize():
               sys.exit(1)

           ...

    :param logger: logger to use for logging.
    :param reservation_id: reservation to serve.
    :param db: if set, DB instance to use instead of a new one.
    :param metrics: if set, metrics container to use instead of a new one.
    """

    def __init__(
        self,
        logger: gluetool.log.ContextAdapter,
        reservation_id: int,
        db: Optional[DB] = None,
        metrics: Optional[ReservationMetrics] = None
    ) -> None:
        self.logger: gluetool.log.ContextAdapter = ReservationLogger(logger, reservation_id)
        self.reservation_id = reservation_id

        self.context = ControllerContext(self.logger, reservation_id, db=db, metrics=metrics)

        #: Outcome of startup. ``None`` until startup either fails or finishes.
        self.result: Optional[Result[None, Failure]] = None

        self.store: Optional[Store] = None
        self.data: Optional[ReservationData] = None

        self.cascade: Optional[FailureCascade] = None
        self.barrier: Optional[ClusterBarrier] = None

        self.management_node: Optional[ManagementNodeHandle] = None
        self.target: Optional[TargetHandle] = None
        self.vmhost: Optional[VirtualHostHandle] = None
        self.provisioner: Optional[ProvisioningHandle] = None

        self._torn_down = False

    @property
    def metrics(self) -> ReservationMetrics:
        return self.context.metrics

    def __enter__(self: ControllerBound) -> ControllerBound:
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_value: Optional[BaseException],
        traceback: Optional[TracebackType]
    ) -> None:
        self.teardown()

    def _fail(self, failure: Failure, label: str) -> None:
        failure.handle(self.logger, label=label, reservation_id=self.reservation_id)

        self.result = Error(failure)

    def _error(self, r: Result[Any, Failure], label: str) -> None:
        self._fail(r.unwrap_error(), label)

    #
    # Startup steps
    #

    @step
    def open_store(self) -> None:
        r_store = self.context.open()

        if r_store.is_error:
            self._error(r_store, 'failed to connect to store')
            return

        self.store = r_store.unwrap()

    @step
    def record_heartbeat(self) -> None:
        assert self.store is not None

        r_lastcheck = self.store.update_reservation_lastcheck(self.reservation_id)

        if r_lastcheck.is_error:
            failure = r_lastcheck.unwrap_error()

            # Missing reservation is fatal, a lost heartbeat is not.
            if not failure.recoverable:
                self._fail(failure, 'failed to update reservation lastcheck')
                return

            self.logger.warning(f'failed to update reservation lastcheck, continuing: {failure.message}')
            return

        self.logger.debug(f'reservation lastcheck updated to {r_lastcheck.unwrap()}')

    @step
    def load_reservation(self) -> None:
        assert self.store is not None

        r_data = self.store.load_reservation(self.reservation_id)

        if r_data.is_error:
            self._error(r_data, 'failed to load reservation')
            return

        self.data = data = r_data.unwrap()

        self.logger = ComputerLogger(RequestLogger(self.logger, data.request_id), data.computer_name)
        self.store.logger = self.logger

        log_dict_yaml(self.logger.debug, 'reservation', {
            'request': data.request_id,
            'request-state': f'{data.request_state}/{data.request_laststate}',
            'reservations': data.reservation_ids,
            'parent': data.is_parent,
            'computer': data.computer_name,
            'vmhost': data.vmhost_name
        })

        self.cascade = FailureCascade(self.logger, self.store, data, metrics=self.metrics.cascade)
        self.barrier = ClusterBarrier(self.logger, self.store, data, self.cascade, metrics=self.metrics.barrier)

    @step
    def build_handles(self) -> None:
        assert self.data is not None

        factory = SubsystemFactory(self.logger, self.data)

        r_management_node = factory.build_management_handle()

        if r_management_node.is_error:
            self._error(r_management_node, 'failed to build management node handle')
            return

        self.management_node = r_management_node.unwrap()

        r_target = factory.build_target_handle()

        if r_target.is_error:
            self._error(r_target, 'failed to build target handle')
            return

        self.target = r_target.unwrap()

        if self.data.is_vm:
            r_vmhost = factory.build_vmhost_handle()

            if r_vmhost.is_error:
                self._error(r_vmhost, 'failed to build VM host handle')
                return

            self.vmhost = r_vmhost.unwrap()

        r_provisioner = factory.build_provisioning_handle()

        if r_provisioner.is_error:
            self._error(r_provisioner, 'failed to build provisioning handle')
            return

        self.provisioner = r_provisioner.unwrap()

    @step
    def wire_handles(self) -> None:
        assert self.target is not None
        assert self.provisioner is not None

        self.provisioner.set_target(self.target)
        self.target.set_provisioner(self.provisioner)

        # The provisioning backend may have found the VM host on its own, and its opinion wins.
        if self.provisioner.vmhost is not None and self.provisioner.vmhost is not self.vmhost:
            self.logger.debug(f'adopting VM host handle {self.provisioner.vmhost} of the provisioning backend')

            self.vmhost = self.provisioner.vmhost

    @step
    def record_begin(self) -> None:
        assert self.store is not None
        assert self.data is not None

        r_append = self.store.append_load_log_entry(
            self.reservation_id,
            self.data.computer_id,
            LoadState.BEGIN.value,
            'beginning to process reservation'
        )

        if r_append.is_error:
            self._error(r_append, 'failed to record begin stage')

    @step
    def wait_for_children(self) -> None:
        assert self.data is not None
        assert self.barrier is not None
        assert self.cascade is not None

        if not self.data.is_parent or not self.data.is_cluster_request:
            return

        if self.barrier.wait_for_stage(
            LoadState.BEGIN.value,
            timeout=KNOB_BARRIER_BEGIN_TIMEOUT.value,
            tick=KNOB_BARRIER_BEGIN_TICK.value
        ):
            return

        self.cascade.run('child reservation processes failed begin')

    @step
    def advance_request_state(self) -> None:
        assert self.store is not None
        assert self.data is not None

        if not self.data.is_parent:
            return

        r_update = self.store.set_request_state(
            self.data.request_id,
            RequestState.PENDING.value,
            self.data.request_state
        )

        # Observers only, processing goes on even when the state could not be changed.
        if r_update.is_error:
            r_update.unwrap_error().handle(
                self.logger,
                label='CRITICAL: failed to update request state to pending',
                request_id=self.data.request_id
            )

    def initialize(self: ControllerBound) -> bool:
        """
        Establish the heartbeat, build subsystem handles and, for the parent of a cluster request, wait for all
        children to begin.

        :returns: ``True`` when everything is ready, ``False`` otherwise. The failure has been already reported.
        """

        self.open_store() \
            .record_heartbeat() \
            .load_reservation() \
            .build_handles() \
            .wire_handles() \
            .record_begin() \
            .wait_for_children() \
            .advance_request_state()

        if self.result is not None:
            return False

        self.result = Ok(None)

        self.logger.info('reservation initialized')

        return True

    def reservation_failed(self, message: Optional[str] = None) -> None:
        """
        Run the failure cascade for this reservation. Ends the process.
        """

        if self.cascade is None:
            # Without reservation data there is nothing the cascade could update.
            Failure('reservation failed before it was loaded', reason=message).handle(self.logger)

            sys.exit(EXIT_FAILED)

        self.cascade.run(message or DEFAULT_FAILURE_MESSAGE)

    #
    # Teardown
    #

    def _cleanup_load_log(self) -> None:
        if self.data is None or self.store is None or self.barrier is None:
            self.logger.warning('reservation was not loaded, skipping load log cleanup')
            return

        if self.data.is_block_request:
            self.logger.debug('block request, skipping load log cleanup')
            return

        if not self.data.reservation_ids:
            self.logger.warning('no reservation IDs known, skipping load log cleanup')
            return

        if not self.data.is_parent:
            self.logger.debug('child reservation, leaving begin stages untouched')
            return

        r_delete = self.store.delete_load_log_entries(self.data.reservation_ids, LoadState.BEGIN.value)

        if r_delete.is_error:
            r_delete.unwrap_error().handle(self.logger, label='failed to delete begin stages')
            return

        self.logger.info(f'removed {r_delete.unwrap()} begin stages of the request')

        self.barrier.refresh_stages()

    def teardown(self) -> None:
        """
        Reset the barrier state of the request, release the store connection and report the process duration.

        Runs at most once, and never raises.
        """

        if self._torn_down:
            return

        self._torn_down = True

        try:
            self._cleanup_load_log()

        except Exception as exc:
            Failure.from_exc('failed to clean up load log', exc).handle(self.logger)

        self.context.close()

        duration = self.context.elapsed

        self.metrics.process.duration = duration

        self.logger.info(f'process duration: {duration:.2f} seconds')

        if KNOB_METRICS_PUSHGATEWAY_URL.value:
            self.metrics.push(self.logger, KNOB_METRICS_PUSHGATEWAY_URL.value, self.reservation_id)
