# Copyright Contributors to the Testing Farm project.
# SPDX-License-Identifier: Apache-2.0

import enum
import os
from typing import Optional

import gluetool.log


class RequestState(enum.Enum):
    #: A request was admitted and waits for processing.
    NEW = 'new'

    #: A computer was loaded and is reserved for the user.
    RESERVED = 'reserved'

    #: The user is connected to the computer.
    INUSE = 'inuse'

    #: An image is being captured from the computer.
    IMAGE = 'image'

    #: Reservation processes took the request over, waiting for them to finish.
    PENDING = 'pending'

    #: Reservation processing failed, see ``laststate`` for the state the request was in.
    FAILED = 'failed'

    #: The user deleted the request. Reservation processes are expected to quit.
    DELETED = 'deleted'

    COMPLETE = 'complete'
    TIMEOUT = 'timeout'
    RELOAD = 'reload'


#: Request states representing active processing - a failure of the reservation is recorded
#: in the processing log of such requests.
IN_FLIGHT_REQUEST_STATES = (
    RequestState.NEW.value,
    RequestState.RESERVED.value,
    RequestState.INUSE.value,
    RequestState.IMAGE.value
)


class ComputerState(enum.Enum):
    AVAILABLE = 'available'
    FAILED = 'failed'

    #: Administrative hold. Never overwritten by the controller.
    MAINTENANCE = 'maintenance'

    RESERVED = 'reserved'
    INUSE = 'inuse'
    RELOADING = 'reloading'


class ReservationRole(enum.Enum):
    PARENT = 'parent'
    CHILD = 'child'


class LoadState(enum.Enum):
    """
    Well-known stage names recorded in the load log. Processing code may record any other names as well.
    """

    BEGIN = 'begin'
    FAILED = 'failed'


class ProcessingLogEnding(enum.Enum):
    FAILED = 'failed'


class RequestLogger(gluetool.log.ContextAdapter):
    def __init__(self, logger: gluetool.log.ContextAdapter, request_id: int) -> None:
        super().__init__(logger, {
            'ctx_request_id': (10, request_id)
        })


class ReservationLogger(gluetool.log.ContextAdapter):
    def __init__(
        self,
        logger: gluetool.log.ContextAdapter,
        reservation_id: int,
        pid: Optional[int] = None
    ) -> None:
        super().__init__(logger, {
            'ctx_reservation_id': (20, reservation_id),
            'ctx_pid': (30, pid if pid is not None else os.getpid())
        })


class ComputerLogger(gluetool.log.ContextAdapter):
    def __init__(self, logger: gluetool.log.ContextAdapter, computer_name: str) -> None:
        super().__init__(logger, {
            'ctx_computer_name': (40, computer_name)
        })
