# Copyright Contributors to the Testing Farm project.
# SPDX-License-Identifier: Apache-2.0

import copy
import dataclasses
import logging
from typing import Any, Callable, Dict, Generator, List, Optional, cast
from unittest.mock import MagicMock

import _pytest.config.argparsing
import _pytest.logging
import _pytest.monkeypatch
import _pytest.python
import gluetool.log
import pytest
import sqlalchemy.engine.interfaces
import sqlalchemy.engine.url
import sqlalchemy.orm.session
import sqlalchemy_utils.functions

import quartermaster
import quartermaster.barrier
import quartermaster.db
import quartermaster.knobs
import quartermaster.store
from quartermaster.scripts.init_db import seed_db

from . import MockPatcher

# The default list of database URLs we test against. Serves as a safe parameter when
# no other URLs were requested via `--against-db-url`.
DEFAULT_DB_URLS = [
    'sqlite://'
]


#: Records shared by most tests:
#:
#: * request 1 is a cluster request with reservations 1 (parent), 2 and 3 (children),
#: * request 2 has a single reservation 4, whose computer is a virtual machine running on computer 10,
#: * request 3 belongs to a block allocation, with a single reservation 5.
SEED: Dict[str, List[Dict[str, Any]]] = {
    'processing-logs': [
        {'id': 1}
    ],
    'block-allocations': [
        {'id': 1, 'name': 'dummy-block'}
    ],
    'computers': [
        {'id': 1, 'hostname': 'box1', 'state': 'reserved'},
        {'id': 2, 'hostname': 'box2', 'state': 'reserved'},
        {'id': 3, 'hostname': 'box3', 'state': 'reserved'},
        {'id': 10, 'hostname': 'vmhost1', 'state': 'inuse'},
        {'id': 4, 'hostname': 'vm1', 'state': 'reserved', 'vmhost_id': 10},
        {'id': 5, 'hostname': 'blockbox1', 'state': 'reserved'}
    ],
    'block-computers': [
        {'block_allocation_id': 1, 'computer_id': 5}
    ],
    'requests': [
        {'id': 1, 'state': 'new', 'laststate': 'new', 'log_id': 1},
        {'id': 2, 'state': 'reserved', 'laststate': 'new'},
        {'id': 3, 'state': 'new', 'laststate': 'new', 'block_allocation_id': 1}
    ],
    'reservations': [
        {'id': 1, 'request_id': 1, 'computer_id': 1, 'role': 'parent'},
        {'id': 2, 'request_id': 1, 'computer_id': 2, 'role': 'child'},
        {'id': 3, 'request_id': 1, 'computer_id': 3, 'role': 'child'},
        {'id': 4, 'request_id': 2, 'computer_id': 4},
        {'id': 5, 'request_id': 3, 'computer_id': 5}
    ]
}


def pytest_addoption(parser: _pytest.config.argparsing.Parser) -> None:
    # --against-db-url=sqlite://some.db --against-db-url=postgresql://some:user...
    parser.addoption(
        '--against-db-url',
        action='append',
        # Default list is applied later - should it be applied here, user would have no way to get rid of the defaults.
        default=[],
        help='Database URLs to run tests against. Specify multiple times for more DB dialects.'
    )


# `db_url` is not a real fixture, only a name. When encountered, it gets parametrized with the list of database
# URLs given by `--against-db-url`, or with the default list, and `db` fixture is then created for each of them.
def pytest_generate_tests(metafunc: _pytest.python.Metafunc) -> None:
    if 'db_url' not in metafunc.fixturenames:
        return

    metafunc.parametrize('db_url', metafunc.config.option.against_db_url or DEFAULT_DB_URLS)


@pytest.fixture
def mockpatch(monkeypatch: _pytest.monkeypatch.MonkeyPatch) -> MockPatcher:
    """
    Returns a helper that patches given object with a :py:class:`MagicMock` instance.

    This instance is then returned to user.

    .. code-block:: python

       # Patch foo.bar.baz with a mock object, and assign it a return value.
       mockpatch(foo.bar, 'baz').return_value = 79
    """

    def _mockpatch(
        obj: Any,
        member_name: str,
        obj_name: Optional[str] = None
    ) -> MagicMock:
        mock = MagicMock(name=f'{member_name}<M>' if obj_name is None else f'{obj_name}.{member_name}<M>')

        monkeypatch.setattr(obj, member_name, mock)

        return mock

    return _mockpatch


@pytest.fixture
def logger(caplog: _pytest.logging.LogCaptureFixture) -> gluetool.log.ContextAdapter:
    # Set the most detailed log level possible. It may help when debugging test failures, and we don't
    # keep it for the future, it gets thrown away when tests did not fail.
    quartermaster.knobs.KNOB_LOGGING_LEVEL.value = logging.DEBUG

    # Non-JSON log output is better for humans when investigating test suite output and failed tests.
    quartermaster.knobs.KNOB_LOGGING_JSON.value = False

    logger = quartermaster.get_logger()

    assert gluetool.log.Logging.logger is not None

    # Feed our logs into Pytest's fixture, so we can inspect them later.
    gluetool.log.Logging.logger.addHandler(caplog.handler)

    return logger


@pytest.fixture
def db(logger: gluetool.log.ContextAdapter, db_url: str) -> Generator[quartermaster.db.DB, None, None]:
    parsed_url = sqlalchemy.engine.url.make_url(db_url)

    dialect_name = cast(
        Callable[[], sqlalchemy.engine.interfaces.Dialect],
        parsed_url.get_dialect
    )().name

    if dialect_name != 'sqlite':
        if sqlalchemy_utils.functions.database_exists(db_url):
            sqlalchemy_utils.functions.drop_database(db_url)

        sqlalchemy_utils.functions.create_database(db_url)

    db = quartermaster.db.DB(logger, db_url)

    try:
        yield db

    finally:
        db.dispose()

        if dialect_name != 'sqlite':
            sqlalchemy_utils.functions.drop_database(db_url)


@pytest.fixture
def session(
    logger: gluetool.log.ContextAdapter,
    db: quartermaster.db.DB
) -> Generator[sqlalchemy.orm.session.Session, None, None]:
    with db.get_session(logger) as session:
        yield session


@pytest.fixture(name='_schema')
def fixture_schema(logger: gluetool.log.ContextAdapter, db: quartermaster.db.DB) -> None:
    r_schema = quartermaster.db.init_schema(logger, db)

    assert r_schema.is_ok


@pytest.fixture(name='_seeded')
def fixture_seeded(logger: gluetool.log.ContextAdapter, db: quartermaster.db.DB, _schema: None) -> None:
    r_seed = seed_db(logger, db, copy.deepcopy(SEED))

    assert r_seed.is_ok


@pytest.fixture
def store(
    logger: gluetool.log.ContextAdapter,
    session: sqlalchemy.orm.session.Session,
    _seeded: None
) -> quartermaster.store.Store:
    return quartermaster.store.Store(logger, session)


@dataclasses.dataclass
class FakeClock:
    """
    Replaces ``time`` module in the barrier: nobody wants to wait for real in tests.
    """

    now: float = 0.0

    #: Durations of all sleeps, in the order they were requested.
    sleeps: List[float] = dataclasses.field(default_factory=list)

    def monotonic(self) -> float:
        return self.now

    def sleep(self, duration: float) -> None:
        self.sleeps.append(duration)

        self.now += duration


@pytest.fixture(name='clock')
def fixture_clock(monkeypatch: _pytest.monkeypatch.MonkeyPatch) -> FakeClock:
    clock = FakeClock()

    monkeypatch.setattr(quartermaster.barrier, 'time', clock)

    return clock
