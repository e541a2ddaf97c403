# Copyright Contributors to the Testing Farm project.
# SPDX-License-Identifier: Apache-2.0

"""
The failure cascade: the only way a reservation is marked as failed.

The cascade never returns, it always ends the process. Exit status ``0`` means the request was deleted and there
is nothing for the monitor to do, exit status ``1`` means the reservation failed and states of its request and
computer were already updated.

Every step is applied on its own: when the store refuses one update, the failure is logged and the cascade moves
on to the next step.
"""

import sys
from typing import Any, NoReturn, Optional

import gluetool.log
from gluetool.result import Result

from . import Failure
from .metrics import CascadeMetrics
from .state import IN_FLIGHT_REQUEST_STATES, ComputerState, LoadState, ProcessingLogEnding, RequestState
from .store import ReservationData, Store

#: Exit status of a process whose request was deleted.
EXIT_DELETED = 0

#: Exit status of a process whose reservation failed.
EXIT_FAILED = 1

DEFAULT_FAILURE_MESSAGE = 'reservation failed'


class FailureCascade:
    """
    Unwinds states of a failed reservation and ends the process.

    :param logger: logger to use for logging.
    :param store: store client.
    :param data: snapshot of the reservation.
    :param metrics: if set, the outcome of the cascade is recorded in these metrics.
    """

    def __init__(
        self,
        logger: gluetool.log.ContextAdapter,
        store: Store,
        data: ReservationData,
        metrics: Optional[CascadeMetrics] = None
    ) -> None:
        self.logger = logger
        self.store = store
        self.data = data
        self.metrics = metrics or CascadeMetrics()

    def _handle_step(self, r: Result[Any, Failure], label: str) -> bool:
        if r.is_ok:
            return True

        self.metrics.inc_failed_steps()

        r.unwrap_error().handle(
            self.logger,
            label=label,
            request_id=self.data.request_id,
            reservation_id=self.data.reservation_id,
            computer_id=self.data.computer_id
        )

        return False

    def _computer_in_maintenance(self) -> bool:
        """
        Check whether the computer is held for maintenance. The store is asked first, the snapshot serves
        as a fallback.
        """

        r_state = self.store.get_computer_state(self.data.computer_id)

        if self._handle_step(r_state, 'failed to fetch computer state'):
            state = r_state.unwrap()

            if state is not None:
                return state == ComputerState.MAINTENANCE.value

        return self.data.computer_state == ComputerState.MAINTENANCE.value

    def _request_deleted(self) -> bool:
        r_deleted = self.store.is_request_deleted(self.data.request_id)

        if not self._handle_step(r_deleted, 'failed to check whether request was deleted'):
            return False

        return r_deleted.unwrap()

    def _exit(self, status: int) -> NoReturn:
        self.metrics.outcome = 'deleted' if status == EXIT_DELETED else 'failed'

        sys.exit(status)

    def _on_deleted_request(self) -> NoReturn:
        self.logger.info(f'request {self.data.request_id} has been deleted')

        if self._computer_in_maintenance():
            self.logger.info(f'computer {self.data.computer_name} is in maintenance, leaving its state untouched')

        else:
            self._handle_step(
                self.store.set_computer_state(self.data.computer_id, ComputerState.AVAILABLE.value),
                'failed to set computer state to available'
            )

        self._exit(EXIT_DELETED)

    def run(self, message: str = DEFAULT_FAILURE_MESSAGE) -> NoReturn:
        """
        Mark the reservation as failed and end the process.

        :param message: diagnostic message recorded in the load log.
        """

        if self._request_deleted():
            self._on_deleted_request()

        Failure(message).handle(
            self.logger,
            label='reservation failed',
            sentry=False,
            request_id=self.data.request_id,
            reservation_id=self.data.reservation_id,
            computer_id=self.data.computer_id
        )

        self._handle_step(
            self.store.append_load_log_entry(
                self.data.reservation_id,
                self.data.computer_id,
                LoadState.FAILED.value,
                message
            ),
            'failed to record failure in load log'
        )

        # Request states of the snapshot, the parent itself may have moved the request to "pending" since.
        if self.data.request_state in IN_FLIGHT_REQUEST_STATES and self.data.log_id is not None:
            self._handle_step(
                self.store.mark_processing_log_ending(self.data.log_id, ProcessingLogEnding.FAILED.value),
                'failed to mark processing log ending'
            )

        if self._computer_in_maintenance():
            self.logger.info(f'computer {self.data.computer_name} is in maintenance, leaving its state untouched')

        else:
            self._handle_step(
                self.store.set_computer_state(self.data.computer_id, ComputerState.FAILED.value),
                'failed to set computer state to failed'
            )

        self._handle_step(
            self.store.set_request_state(
                self.data.request_id,
                RequestState.FAILED.value,
                self.data.request_laststate
            ),
            'failed to set request state to failed'
        )

        r_in_block = self.store.is_in_block_allocation(self.data.computer_id)

        if self._handle_step(r_in_block, 'failed to check block allocation membership') and r_in_block.unwrap():
            self.logger.info(f'removing computer {self.data.computer_name} from block allocation')

            self._handle_step(
                self.store.clear_block_allocation(self.data.computer_id),
                'failed to clear block allocation membership'
            )

        self._exit(EXIT_FAILED)
