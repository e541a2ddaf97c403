# Copyright Contributors to the Testing Farm project.
# SPDX-License-Identifier: Apache-2.0

"""
Cluster barrier: waiting for sibling reservations to reach a stage.

Reservation processes of a request have no channel to talk to each other. The only thing they share is the load
log, where each of them records stages it reached. A waiting reservation polls the load log until all its siblings
record the awaited stage. A sibling recording ``failed`` stage ends the wait immediately, and the waiting
reservation fails as well.
"""

import sys
import time
from typing import Dict, List, Optional

import gluetool.log

from . import Failure, format_ids
from .cascade import EXIT_DELETED, FailureCascade
from .knobs import KNOB_BARRIER_TICK, KNOB_BARRIER_TIMEOUT
from .metrics import BarrierMetrics
from .state import LoadState, RequestState
from .store import ReservationData, Store

#: Shortest pause between two checks of sibling stages, in seconds.
MIN_TICK = 1


class ClusterBarrier:
    """
    :param logger: logger to use for logging.
    :param store: store client.
    :param data: snapshot of the waiting reservation.
    :param cascade: failure cascade to run when a sibling fails.
    :param metrics: if set, polls and timeouts are recorded in these metrics.
    """

    def __init__(
        self,
        logger: gluetool.log.ContextAdapter,
        store: Store,
        data: ReservationData,
        cascade: FailureCascade,
        metrics: Optional[BarrierMetrics] = None
    ) -> None:
        self.logger = logger
        self.store = store
        self.data = data
        self.cascade = cascade
        self.metrics = metrics or BarrierMetrics()

        #: Stages of all reservations of the request, as seen by the most recent check.
        self.stages: Optional[Dict[int, List[str]]] = None

    def refresh_stages(self) -> Optional[Dict[int, List[str]]]:
        """
        Fetch stages of all reservations of the request, and update :py:attr:`stages`.

        :returns: the fetched stages, or ``None`` when the store could not provide them.
        """

        r_stages = self.store.get_stage_names_by_reservation(self.data.request_id)

        if r_stages.is_error:
            r_stages.unwrap_error().handle(self.logger, label='failed to fetch reservation stages')

            return None

        self.stages = r_stages.unwrap()

        return self.stages

    def stage_reached(self, stage: str, exclude_self: bool = True) -> Optional[bool]:
        """
        Check whether reservations of the request reached the given stage.

        If any of the checked reservations recorded a failure, the failure cascade runs and the process ends.

        :param stage: name of the stage.
        :param exclude_self: if set, the calling reservation is not checked.
        :returns: ``True`` if all checked reservations reached the stage, ``False`` if some did not, ``None`` if
            it was not possible to find out.
        """

        if not stage:
            Failure('stage name not specified').handle(self.logger)

            return None

        all_stages = self.refresh_stages()

        if all_stages is None:
            return None

        consulted: Dict[int, List[str]] = {
            reservation_id: stages
            for reservation_id, stages in all_stages.items()
            if not (exclude_self and reservation_id == self.data.reservation_id)
        }

        failed = [
            reservation_id
            for reservation_id, stages in consulted.items()
            if LoadState.FAILED.value in stages
        ]

        if failed:
            self.cascade.run(f'child reservation process failed: {format_ids(failed)}')

        pending = [
            reservation_id
            for reservation_id, stages in consulted.items()
            if stage not in stages
        ]

        if pending:
            self.logger.debug(f'reservations {format_ids(pending)} did not reach {stage} yet')

            return False

        self.logger.debug(f'all reservations reached {stage}')

        return True

    def _check_deleted(self) -> None:
        r_deleted = self.store.is_request_deleted(self.data.request_id)

        if r_deleted.is_error:
            r_deleted.unwrap_error().handle(self.logger, label='failed to check whether request was deleted')

            return

        if r_deleted.unwrap():
            self.logger.info(f'request {self.data.request_id} has been deleted while waiting, quitting')

            sys.exit(EXIT_DELETED)

    def wait_for_stage(
        self,
        stage: str,
        timeout: Optional[int] = None,
        tick: Optional[int] = None
    ) -> bool:
        """
        Wait until all sibling reservations reach the given stage.

        At least one check is always performed, no matter how short the timeout is. Request deletion is checked
        before every check, and a deleted request ends the process with success exit status.

        :param stage: name of the stage.
        :param timeout: how long to wait, in seconds. :py:data:`KNOB_BARRIER_TIMEOUT` is used by default.
        :param tick: how long to wait between checks, in seconds. :py:data:`KNOB_BARRIER_TICK` is used by default.
        :returns: ``True`` when all siblings reached the stage, ``False`` when the time ran out.
        """

        if not stage:
            Failure('stage name not specified').handle(self.logger)

            return False

        timeout = KNOB_BARRIER_TIMEOUT.value if timeout is None else timeout
        tick = KNOB_BARRIER_TICK.value if tick is None else tick

        if tick < MIN_TICK:
            self.logger.warning(f'barrier tick {tick}s is too short, using {MIN_TICK}s')

            tick = MIN_TICK

        # A request deleted before the process started is handled by the process itself.
        check_deleted = self.data.request_state != RequestState.DELETED.value

        self.logger.info(f'waiting for reservations to reach {stage}, timeout {timeout}s, tick {tick}s')

        deadline = time.monotonic() + timeout

        while True:
            if check_deleted:
                self._check_deleted()

            self.metrics.inc_polls()

            if self.stage_reached(stage, exclude_self=True) is True:
                self.logger.info(f'all reservations reached {stage}')

                return True

            remaining = deadline - time.monotonic()

            if remaining <= 0:
                break

            time.sleep(min(tick, remaining))

        self.metrics.inc_timeouts()

        self.logger.warning(f'reservations did not reach {stage} in {timeout} seconds')

        return False
