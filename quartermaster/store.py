# Copyright Contributors to the Testing Farm project.
# SPDX-License-Identifier: Apache-2.0

"""
Access to records shared by all reservation processes.

Every call is a single statement, or a short series of independent statements, executed in auto-commit mode:
other processes may change the very same records at any moment, and the last writer wins. Nothing read from
the store should be kept around longer than necessary - :py:class:`ReservationData` is a snapshot, and callers
that need the current value of a mutable field must ask the store again.
"""

import dataclasses
import datetime
from typing import Dict, List, Optional, Tuple

import gluetool.log
import sqlalchemy
import sqlalchemy.orm.session
from gluetool.result import Error, Ok, Result

from . import Failure
from .db import BlockComputer, Computer, ComputerLoadLog, ProcessingLog, Request, Reservation, SafeQuery, execute_dml
from .state import RequestState, ReservationRole


@dataclasses.dataclass
class ReservationData:
    """
    Snapshot of the reservation, its request and its computer, taken when the reservation process starts.
    """

    reservation_id: int
    request_id: int

    #: State and the previous state of the request at the moment of loading.
    request_state: str
    request_laststate: str

    #: Processing log of the request, if there is any.
    log_id: Optional[int]

    #: Set when the request belongs to a block allocation.
    block_allocation_id: Optional[int]

    role: Optional[str]

    #: All reservations of the request, including this one, ordered by their IDs.
    reservation_ids: List[int]

    computer_id: int
    computer_name: str
    computer_state: str
    os_driver: str
    provisioning_driver: str

    #: Set when the computer is a virtual machine.
    vmhost_id: Optional[int] = None
    vmhost_name: Optional[str] = None
    vmhost_os_driver: Optional[str] = None

    @property
    def is_parent(self) -> bool:
        """
        ``True`` if the reservation coordinates the other reservations of its request.

        Without an explicit role, the reservation with the lowest ID is the parent. That covers requests
        with a single reservation, too.
        """

        if self.role is not None:
            return self.role == ReservationRole.PARENT.value

        return bool(self.reservation_ids) and self.reservation_id == min(self.reservation_ids)

    @property
    def is_cluster_request(self) -> bool:
        return len(self.reservation_ids) > 1

    @property
    def is_block_request(self) -> bool:
        return self.block_allocation_id is not None

    @property
    def is_vm(self) -> bool:
        return self.vmhost_id is not None


class Store:
    """
    Client of the shared store.

    :param logger: logger to use for logging.
    :param session: DB session to use. The session is owned by the caller.
    """

    def __init__(self, logger: gluetool.log.ContextAdapter, session: sqlalchemy.orm.session.Session) -> None:
        self.logger = logger
        self.session = session

    def ping(self) -> Result[None, Failure]:
        try:
            self.session.execute(sqlalchemy.text('SELECT 1'))

        except Exception as exc:
            return Error(Failure.from_exc('store is not available', exc))

        return Ok(None)

    def _fetch_reservation_ids(self, request_id: int) -> Result[List[int], Failure]:
        r_reservations = SafeQuery.from_session(self.session, Reservation) \
            .filter(Reservation.request_id == request_id) \
            .order_by(Reservation.id) \
            .all()

        if r_reservations.is_error:
            return Error(Failure.from_failure(
                'failed to fetch reservations of request',
                r_reservations.unwrap_error(),
                request_id=request_id
            ))

        return Ok([reservation.id for reservation in r_reservations.unwrap()])

    def load_reservation(self, reservation_id: int) -> Result[ReservationData, Failure]:
        r_reservation = SafeQuery.from_session(self.session, Reservation) \
            .filter(Reservation.id == reservation_id) \
            .one_or_none()

        if r_reservation.is_error:
            return Error(Failure.from_failure(
                'failed to load reservation',
                r_reservation.unwrap_error(),
                reservation_id=reservation_id
            ))

        reservation = r_reservation.unwrap()

        if reservation is None:
            return Error(Failure('no such reservation', recoverable=False, reservation_id=reservation_id))

        r_request = SafeQuery.from_session(self.session, Request) \
            .filter(Request.id == reservation.request_id) \
            .one_or_none()

        if r_request.is_error:
            return Error(Failure.from_failure(
                'failed to load request',
                r_request.unwrap_error(),
                reservation_id=reservation_id,
                request_id=reservation.request_id
            ))

        request = r_request.unwrap()

        if request is None:
            return Error(Failure(
                'no such request',
                recoverable=False,
                reservation_id=reservation_id,
                request_id=reservation.request_id
            ))

        r_computer = SafeQuery.from_session(self.session, Computer) \
            .filter(Computer.id == reservation.computer_id) \
            .one_or_none()

        if r_computer.is_error:
            return Error(Failure.from_failure(
                'failed to load computer',
                r_computer.unwrap_error(),
                reservation_id=reservation_id,
                computer_id=reservation.computer_id
            ))

        computer = r_computer.unwrap()

        if computer is None:
            return Error(Failure(
                'no such computer',
                recoverable=False,
                reservation_id=reservation_id,
                computer_id=reservation.computer_id
            ))

        vmhost: Optional[Computer] = None

        if computer.vmhost_id is not None:
            r_vmhost = SafeQuery.from_session(self.session, Computer) \
                .filter(Computer.id == computer.vmhost_id) \
                .one()

            if r_vmhost.is_error:
                return Error(Failure.from_failure(
                    'failed to load VM host',
                    r_vmhost.unwrap_error(),
                    reservation_id=reservation_id,
                    computer_id=computer.id,
                    vmhost_id=computer.vmhost_id
                ))

            vmhost = r_vmhost.unwrap()

        r_reservation_ids = self._fetch_reservation_ids(request.id)

        if r_reservation_ids.is_error:
            return Error(r_reservation_ids.unwrap_error())

        return Ok(ReservationData(
            reservation_id=reservation.id,
            request_id=request.id,
            request_state=request.state,
            request_laststate=request.laststate,
            log_id=request.log_id,
            block_allocation_id=request.block_allocation_id,
            role=reservation.role,
            reservation_ids=r_reservation_ids.unwrap(),
            computer_id=computer.id,
            computer_name=computer.hostname,
            computer_state=computer.state,
            os_driver=computer.os_driver,
            provisioning_driver=computer.provisioning_driver,
            vmhost_id=vmhost.id if vmhost is not None else None,
            vmhost_name=vmhost.hostname if vmhost is not None else None,
            vmhost_os_driver=vmhost.os_driver if vmhost is not None else None
        ))

    def update_reservation_lastcheck(self, reservation_id: int) -> Result[datetime.datetime, Failure]:
        """
        Record the heartbeat of the reservation process.

        :returns: the recorded timestamp.
        """

        lastcheck = datetime.datetime.utcnow()

        r_update = execute_dml(
            self.logger,
            self.session,
            sqlalchemy.update(Reservation)
            .where(Reservation.id == reservation_id)
            .values(lastcheck=lastcheck)
        )

        if r_update.is_error:
            return Error(Failure.from_failure(
                'failed to update reservation lastcheck',
                r_update.unwrap_error(),
                reservation_id=reservation_id
            ))

        if r_update.unwrap().rowcount == 0:
            return Error(Failure('no such reservation', recoverable=False, reservation_id=reservation_id))

        return Ok(lastcheck)

    def get_request_state(self, request_id: int) -> Result[Optional[Tuple[str, str]], Failure]:
        """
        Fetch the current state of the request.

        :returns: a tuple of state and laststate, or ``None`` when the request does not exist anymore.
        """

        r_request = SafeQuery.from_session(self.session, Request) \
            .filter(Request.id == request_id) \
            .one_or_none()

        if r_request.is_error:
            return Error(Failure.from_failure(
                'failed to fetch request state',
                r_request.unwrap_error(),
                request_id=request_id
            ))

        request = r_request.unwrap()

        if request is None:
            return Ok(None)

        return Ok((request.state, request.laststate))

    def set_request_state(self, request_id: int, state: str, laststate: str) -> Result[None, Failure]:
        # One statement, the new state and the prior state land together.
        r_update = execute_dml(
            self.logger,
            self.session,
            sqlalchemy.update(Request)
            .where(Request.id == request_id)
            .values(state=state, laststate=laststate)
        )

        if r_update.is_error:
            return Error(Failure.from_failure(
                'failed to update request state',
                r_update.unwrap_error(),
                request_id=request_id,
                state=state,
                laststate=laststate
            ))

        if r_update.unwrap().rowcount == 0:
            return Error(Failure('no such request', request_id=request_id, state=state, laststate=laststate))

        self.logger.info(f'request {request_id} state changed to {state}/{laststate}')

        return Ok(None)

    def get_computer_state(self, computer_id: int) -> Result[Optional[str], Failure]:
        r_computer = SafeQuery.from_session(self.session, Computer) \
            .filter(Computer.id == computer_id) \
            .one_or_none()

        if r_computer.is_error:
            return Error(Failure.from_failure(
                'failed to fetch computer state',
                r_computer.unwrap_error(),
                computer_id=computer_id
            ))

        computer = r_computer.unwrap()

        return Ok(computer.state if computer is not None else None)

    def set_computer_state(self, computer_id: int, state: str) -> Result[None, Failure]:
        r_update = execute_dml(
            self.logger,
            self.session,
            sqlalchemy.update(Computer)
            .where(Computer.id == computer_id)
            .values(state=state)
        )

        if r_update.is_error:
            return Error(Failure.from_failure(
                'failed to update computer state',
                r_update.unwrap_error(),
                computer_id=computer_id,
                state=state
            ))

        if r_update.unwrap().rowcount == 0:
            return Error(Failure('no such computer', computer_id=computer_id, state=state))

        self.logger.info(f'computer {computer_id} state changed to {state}')

        return Ok(None)

    def append_load_log_entry(
        self,
        reservation_id: int,
        computer_id: Optional[int],
        stage: str,
        message: Optional[str] = None
    ) -> Result[None, Failure]:
        r_insert = execute_dml(
            self.logger,
            self.session,
            sqlalchemy.insert(ComputerLoadLog).values(
                reservation_id=reservation_id,
                computer_id=computer_id,
                loadstatename=stage,
                additionalinfo=message,
                timestamp=datetime.datetime.utcnow()
            )
        )

        if r_insert.is_error:
            return Error(Failure.from_failure(
                'failed to append load log entry',
                r_insert.unwrap_error(),
                reservation_id=reservation_id,
                computer_id=computer_id,
                stage=stage
            ))

        return Ok(None)

    def get_stage_names_by_reservation(self, request_id: int) -> Result[Dict[int, List[str]], Failure]:
        """
        Collect stages recorded in the load log for all reservations of the request.

        :returns: a mapping between reservation IDs and lists of stage names, in the order they were recorded.
            Every reservation of the request is present, even those with no stages recorded yet.
        """

        r_reservation_ids = self._fetch_reservation_ids(request_id)

        if r_reservation_ids.is_error:
            return Error(r_reservation_ids.unwrap_error())

        stages: Dict[int, List[str]] = {
            reservation_id: [] for reservation_id in r_reservation_ids.unwrap()
        }

        if not stages:
            return Ok(stages)

        r_entries = SafeQuery.from_session(self.session, ComputerLoadLog) \
            .filter(ComputerLoadLog.reservation_id.in_(list(stages.keys()))) \
            .order_by(ComputerLoadLog.timestamp, ComputerLoadLog.id) \
            .all()

        if r_entries.is_error:
            return Error(Failure.from_failure(
                'failed to fetch load log entries',
                r_entries.unwrap_error(),
                request_id=request_id
            ))

        for entry in r_entries.unwrap():
            stages[entry.reservation_id].append(entry.loadstatename)

        return Ok(stages)

    def is_request_deleted(self, request_id: int) -> Result[bool, Failure]:
        """
        Check whether the request has been deleted.

        A request is considered deleted when its state, or its previous state, is ``deleted``, or when it does
        not exist anymore.
        """

        r_state = self.get_request_state(request_id)

        if r_state.is_error:
            return Error(r_state.unwrap_error())

        state = r_state.unwrap()

        if state is None:
            return Ok(True)

        return Ok(RequestState.DELETED.value in state)

    def is_in_block_allocation(self, computer_id: int) -> Result[bool, Failure]:
        r_count = SafeQuery.from_session(self.session, BlockComputer) \
            .filter(BlockComputer.computer_id == computer_id) \
            .count()

        if r_count.is_error:
            return Error(Failure.from_failure(
                'failed to fetch block allocation membership',
                r_count.unwrap_error(),
                computer_id=computer_id
            ))

        return Ok(r_count.unwrap() > 0)

    def clear_block_allocation(self, computer_id: int) -> Result[None, Failure]:
        r_delete = execute_dml(
            self.logger,
            self.session,
            sqlalchemy.delete(BlockComputer).where(BlockComputer.computer_id == computer_id)
        )

        if r_delete.is_error:
            return Error(Failure.from_failure(
                'failed to clear block allocation membership',
                r_delete.unwrap_error(),
                computer_id=computer_id
            ))

        return Ok(None)

    def mark_processing_log_ending(self, log_id: int, ending: str) -> Result[None, Failure]:
        r_update = execute_dml(
            self.logger,
            self.session,
            sqlalchemy.update(ProcessingLog)
            .where(ProcessingLog.id == log_id)
            .values(ending=ending)
        )

        if r_update.is_error:
            return Error(Failure.from_failure(
                'failed to update processing log ending',
                r_update.unwrap_error(),
                log_id=log_id,
                ending=ending
            ))

        return Ok(None)

    def delete_load_log_entries(self, reservation_ids: List[int], stage: str) -> Result[int, Failure]:
        """
        Remove all load log entries of given stage recorded by given reservations.

        :returns: number of removed entries.
        """

        r_delete = execute_dml(
            self.logger,
            self.session,
            sqlalchemy.delete(ComputerLoadLog)
            .where(ComputerLoadLog.reservation_id.in_(reservation_ids))
            .where(ComputerLoadLog.loadstatename == stage)
        )

        if r_delete.is_error:
            return Error(Failure.from_failure(
                'failed to delete load log entries',
                r_delete.unwrap_error(),
                reservation_ids=reservation_ids,
                stage=stage
            ))

        return Ok(r_delete.unwrap().rowcount)
