# Copyright Contributors to the Testing Farm project.
# SPDX-License-Identifier: Apache-2.0

import datetime
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Callable, Dict, Generic, Iterator, List, Optional, Type, TypeVar, Union, cast

import gluetool.log
import gluetool.utils
import sqlalchemy
import sqlalchemy.engine
import sqlalchemy.event
import sqlalchemy.orm
import sqlalchemy.orm.session
import sqlalchemy.pool
import sqlalchemy.sql.dml
import sqlalchemy.sql.elements
from gluetool.result import Error, Ok, Result
from sqlalchemy import ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.orm.query import Query as _Query
from sqlalchemy.schema import PrimaryKeyConstraint

from .knobs import KNOB_LOGGING_DB_QUERIES

if TYPE_CHECKING:
    from . import Failure


# Type variables for use in our generic types
T = TypeVar('T')


class Base(sqlalchemy.orm.DeclarativeBase):
    pass


# "Safe" query - a query-like class, adapted to return Result instances instead of the raw data.
# Exceptions raised by underlying SQLAlchemy code are translated into failures. For example, should
# the database connection go away, one_or_none() will raise an exception when called - SafeQuery.one_or_none()
# would return Error(Failure) instead.
class SafeQuery(Generic[T]):
    def __init__(self, session: sqlalchemy.orm.session.Session, query: '_Query[T]') -> None:
        self._session = session
        self.query = query

        self.failure: Optional['Failure'] = None

    @staticmethod
    def from_session(session: sqlalchemy.orm.session.Session, klass: Type[T]) -> 'SafeQuery[T]':
        # Records are shared with other processes, never trust what the session has seen before.
        return SafeQuery(session, session.query(klass).populate_existing())

    def _error(self, message: str, exc: Exception) -> 'Failure':
        from . import Failure

        self.failure = Failure.from_exc(message, exc, query=stringify_query(self._session, self.query.statement))

        return self.failure

    def _update_error(self, exc: Exception) -> 'Failure':
        return self._error('failed to update query', exc)

    def _retrieval_error(self, exc: Exception) -> 'Failure':
        return self._error('failed to retrieve query result', exc)

    def filter(self, *args: Any) -> 'SafeQuery[T]':
        if self.failure is None:
            try:
                self.query = self.query.filter(*args)

            except Exception as exc:
                self._update_error(exc)

        return self

    def order_by(self, *args: Any) -> 'SafeQuery[T]':
        if self.failure is None:
            try:
                self.query = self.query.order_by(*args)

            except Exception as exc:
                self._update_error(exc)

        return self

    def one(self) -> Result[T, 'Failure']:
        if self.failure is None:
            try:
                return Ok(self.query.one())

            except Exception as exc:
                self._retrieval_error(exc)

        assert self.failure is not None

        return Error(self.failure)

    def one_or_none(self) -> Result[Optional[T], 'Failure']:
        if self.failure is None:
            try:
                return Ok(self.query.one_or_none())

            except Exception as exc:
                self._retrieval_error(exc)

        assert self.failure is not None

        return Error(self.failure)

    def all(self) -> Result[List[T], 'Failure']:
        if self.failure is None:
            try:
                return Ok(self.query.all())

            except Exception as exc:
                self._retrieval_error(exc)

        assert self.failure is not None

        return Error(self.failure)

    def count(self) -> Result[int, 'Failure']:
        if self.failure is None:
            try:
                return Ok(self.query.count())

            except Exception as exc:
                self._retrieval_error(exc)

        assert self.failure is not None

        return Error(self.failure)


def stringify_query(session: sqlalchemy.orm.session.Session, query: sqlalchemy.sql.elements.ClauseElement) -> str:
    """
    Return string representation of a given DB query.

    Since SQLAlchemy supports many SQL dialects, and these dialects can add custom operations to queries,
    it is necessary to be aware of the dialect when compiling the query.
    """

    assert session.bind is not None  # narrow type

    return str(query.compile(dialect=session.bind.dialect))


DMLResult = Result[sqlalchemy.engine.CursorResult[Any], 'Failure']


def execute_dml(
    logger: gluetool.log.ContextAdapter,
    session: sqlalchemy.orm.session.Session,
    statement: sqlalchemy.sql.dml.UpdateBase
) -> DMLResult:
    """
    Execute a given DML statement, ``INSERT``, ``UPDATE`` or ``DELETE``.

    :returns: cursor result if the statement was executed correctly, :py:class:`Failure` otherwise.
    """

    stringified = stringify_query(session, statement)

    logger.debug(f'execute DML: {stringified}')

    try:
        return Ok(cast(sqlalchemy.engine.CursorResult[Any], session.execute(statement)))

    except Exception as exc:
        from . import Failure

        return Error(Failure.from_exc('failed to execute DML statement', exc, query=stringified))


class ProcessingLog(Base):
    __tablename__ = 'processing_logs'

    id: Mapped[int] = mapped_column(primary_key=True)
    ending: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)


class BlockAllocation(Base):
    __tablename__ = 'block_allocations'

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(250), nullable=False)


class Computer(Base):
    __tablename__ = 'computers'

    id: Mapped[int] = mapped_column(primary_key=True)
    hostname: Mapped[str] = mapped_column(String(250), nullable=False)
    state: Mapped[str] = mapped_column(String(64), nullable=False)

    #: If set, the computer is a virtual machine running on this computer.
    vmhost_id: Mapped[Optional[int]] = mapped_column(ForeignKey('computers.id'), nullable=True)

    #: Names of subsystem drivers controlling this computer.
    os_driver: Mapped[str] = mapped_column(String(250), nullable=False, default='localhost')
    provisioning_driver: Mapped[str] = mapped_column(String(250), nullable=False, default='localhost')


class BlockComputer(Base):
    __tablename__ = 'block_computers'

    block_allocation_id: Mapped[int] = mapped_column(ForeignKey('block_allocations.id'), nullable=False)
    computer_id: Mapped[int] = mapped_column(ForeignKey('computers.id'), nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint('block_allocation_id', 'computer_id'),
    )


class Request(Base):
    __tablename__ = 'requests'

    id: Mapped[int] = mapped_column(primary_key=True)
    state: Mapped[str] = mapped_column(String(64), nullable=False)
    laststate: Mapped[str] = mapped_column(String(64), nullable=False)

    log_id: Mapped[Optional[int]] = mapped_column(ForeignKey('processing_logs.id'), nullable=True)
    block_allocation_id: Mapped[Optional[int]] = mapped_column(ForeignKey('block_allocations.id'), nullable=True)


class Reservation(Base):
    __tablename__ = 'reservations'

    id: Mapped[int] = mapped_column(primary_key=True)
    request_id: Mapped[int] = mapped_column(ForeignKey('requests.id'), nullable=False, index=True)
    computer_id: Mapped[int] = mapped_column(ForeignKey('computers.id'), nullable=False)

    #: ``parent`` or ``child``. May be unset for requests with just a single reservation.
    role: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    #: Heartbeat of the process handling the reservation.
    lastcheck: Mapped[Optional[datetime.datetime]] = mapped_column(nullable=True)


class ComputerLoadLog(Base):
    __tablename__ = 'computer_load_logs'

    id: Mapped[int] = mapped_column(primary_key=True)
    reservation_id: Mapped[int] = mapped_column(ForeignKey('reservations.id'), nullable=False, index=True)
    computer_id: Mapped[Optional[int]] = mapped_column(ForeignKey('computers.id'), nullable=True)
    loadstatename: Mapped[str] = mapped_column(String(250), nullable=False)
    additionalinfo: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    timestamp: Mapped[datetime.datetime] = mapped_column(nullable=False, default=datetime.datetime.utcnow)


class DB:
    """
    Database connection of a single reservation process.

    The controller works with records shared with many other processes, and every statement is expected to take
    effect on its own: sessions are spawned on top of an engine with ``AUTOCOMMIT`` isolation level.
    """

    #: "Root" engine, with the setup dictated by DB configuration.
    engine: sqlalchemy.engine.Engine

    #: Engine derived from :py:attr:`engine`, configured to use no transactions in an auto-commit fashion.
    engine_autocommit: sqlalchemy.engine.Engine

    #: Session factory on top of auto-commit :py:attr:`engine_autocommit` engine.
    sessionmaker_autocommit: 'sqlalchemy.orm.sessionmaker[sqlalchemy.orm.session.Session]'

    def __init__(self, logger: gluetool.log.ContextAdapter, url: str, application_name: Optional[str] = None) -> None:
        from .knobs import KNOB_DB_POOL_MAX_OVERFLOW, KNOB_DB_POOL_SIZE, KNOB_LOGGING_DB_POOL

        self.logger = logger
        self.url = url

        #: Number of sessions handed out by this instance.
        self.sessions_opened = 0

        #: Number of statements executed over connections of this instance.
        self.statements_executed = 0

        logger.info(f'connecting to db {url}')

        self._echo_pool: Union[str, bool] = False

        if KNOB_LOGGING_DB_POOL.value == 'debug':
            self._echo_pool = 'debug'

        else:
            self._echo_pool = gluetool.utils.normalize_bool_option(KNOB_LOGGING_DB_POOL.value)

        connect_args: Dict[str, Any] = {}

        # We want a nice way how to change default for pool size and maximum overflow for PostgreSQL
        if url.startswith('postgresql://'):
            if application_name is not None:
                connect_args['application_name'] = application_name

            gluetool.log.log_dict(logger.debug, 'postgresql create_engine parameters', {
                'echo_pool': self._echo_pool,
                'pool_size': KNOB_DB_POOL_SIZE.value,
                'max_overflow': KNOB_DB_POOL_MAX_OVERFLOW.value,
                'application_name': application_name,
                'connect_args': connect_args
            })

            self.engine = sqlalchemy.create_engine(
                url,
                echo_pool=self._echo_pool,
                pool_size=KNOB_DB_POOL_SIZE.value,
                max_overflow=KNOB_DB_POOL_MAX_OVERFLOW.value,
                connect_args=connect_args
            )

        # SQLite does not support altering pool size nor max overflow, and must be told to share DB between
        # threads.
        else:
            connect_args['check_same_thread'] = False

            gluetool.log.log_dict(logger.debug, 'sqlite create_engine parameters', {
                'echo_pool': self._echo_pool,
                'connect_args': connect_args
            })

            self.engine = sqlalchemy.create_engine(
                url,
                echo_pool=self._echo_pool,
                connect_args=connect_args,
                poolclass=sqlalchemy.pool.StaticPool
            )

        sqlalchemy.event.listen(self.engine, 'before_cursor_execute', self._before_cursor_execute)

        _engine_execution_options = cast(Callable[..., sqlalchemy.engine.Engine], self.engine.execution_options)

        self.engine_autocommit = _engine_execution_options(isolation_level='AUTOCOMMIT')
        self.sessionmaker_autocommit = sqlalchemy.orm.sessionmaker(bind=self.engine_autocommit)

    def _before_cursor_execute(
        self,
        conn: sqlalchemy.engine.Connection,
        cursor: Any,
        statement: Any,
        parameters: Any,
        context: Any,
        executemany: Any
    ) -> None:
        self.statements_executed += 1

        if KNOB_LOGGING_DB_QUERIES.value:
            self.logger.info(statement)

    @contextmanager
    def get_session(self, logger: gluetool.log.ContextAdapter) -> Iterator[sqlalchemy.orm.session.Session]:
        """
        Create new DB session.

        :returns: new DB session, running in auto-commit mode.
        """

        session = self.sessionmaker_autocommit(
            autoflush=True,
            expire_on_commit=True
        )

        self.sessions_opened += 1

        logger.debug('begin session')

        try:
            yield session

        except Exception:
            session.rollback()

            raise

        finally:
            session.close()

            logger.debug('end session')

    def dispose(self) -> None:
        self.engine.dispose()


def init_schema(logger: gluetool.log.ContextAdapter, db: DB) -> Result[None, 'Failure']:
    """
    Create all tables known to the controller. Existing tables are left untouched.
    """

    from . import Failure

    logger.info(f'creating schema in {db.url}')

    try:
        Base.metadata.create_all(db.engine)

    except Exception as exc:
        return Error(Failure.from_exc('failed to create schema', exc, db_url=db.url))

    return Ok(None)
