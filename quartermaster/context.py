# Copyright Contributors to the Testing Farm project.
# SPDX-License-Identifier: Apache-2.0

import contextlib
import time
from typing import Optional

import gluetool.log
import sqlalchemy.orm.session
from gluetool.result import Error, Ok, Result

from . import Failure, get_db, safe_call
from .db import DB
from .metrics import ReservationMetrics
from .store import Store


class ControllerContext:
    """
    Resources owned by a reservation process: the store connection, the clock measuring the process
    duration and the metrics. The context is created once, opened once when the process starts, and closed
    exactly once when the process ends.

    :param logger: logger to use for logging.
    :param reservation_id: reservation served by the process.
    :param db: if set, the DB instance to use. Otherwise, a new instance is created when the context is opened,
        and disposed when it is closed.
    """

    def __init__(
        self,
        logger: gluetool.log.ContextAdapter,
        reservation_id: int,
        db: Optional[DB] = None,
        metrics: Optional[ReservationMetrics] = None
    ) -> None:
        self.logger = logger
        self.reservation_id = reservation_id

        self.db = db
        self._owns_db = db is None

        self.session: Optional[sqlalchemy.orm.session.Session] = None
        self.store: Optional[Store] = None

        self.metrics = metrics or ReservationMetrics()

        self._start_monotonic = time.monotonic()

        self._exit_stack = contextlib.ExitStack()
        self._closed = False

    @property
    def elapsed(self) -> float:
        """
        Seconds since the context was created.
        """

        return time.monotonic() - self._start_monotonic

    def open(self) -> Result[Store, Failure]:
        """
        Acquire the store connection. Repeated calls return the very same store.
        """

        if self.store is not None:
            return Ok(self.store)

        if self._closed:
            return Error(Failure('context already closed', reservation_id=self.reservation_id))

        if self.db is None:
            r_db = safe_call(get_db, self.logger, application_name=f'quartermaster-reservation-{self.reservation_id}')

            if r_db.is_error:
                return Error(Failure.from_failure('failed to connect to store', r_db.unwrap_error()))

            self.db = r_db.unwrap()

        r_session = safe_call(self._exit_stack.enter_context, self.db.get_session(self.logger))

        if r_session.is_error:
            return Error(Failure.from_failure('failed to open store session', r_session.unwrap_error()))

        session = r_session.unwrap()
        store = Store(self.logger, session)

        r_ping = store.ping()

        if r_ping.is_error:
            return Error(Failure.from_failure('failed to connect to store', r_ping.unwrap_error()))

        self.session = session
        self.store = store

        return Ok(store)

    def close(self) -> None:
        """
        Release the store connection. Only the first call has any effect.
        """

        if self._closed:
            return

        self._closed = True

        if self.db is not None:
            self.metrics.process.sessions_opened = self.db.sessions_opened
            self.metrics.process.statements_executed = self.db.statements_executed

        try:
            self._exit_stack.close()

            if self._owns_db and self.db is not None:
                self.db.dispose()

        except Exception as exc:
            Failure.from_exc('failed to release store connection', exc).handle(self.logger)

        self.session = None
        self.store = None

        self.logger.debug('store connection released')
