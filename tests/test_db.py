# Copyright Contributors to the Testing Farm project.
# SPDX-License-Identifier: Apache-2.0

import gluetool.log
import sqlalchemy
import sqlalchemy.exc
import sqlalchemy.orm.session

from quartermaster.db import DB, Computer, Request, SafeQuery, execute_dml, init_schema


def test_safe_query(session: sqlalchemy.orm.session.Session, _seeded: None) -> None:
    r_computers = SafeQuery.from_session(session, Computer) \
        .filter(Computer.vmhost_id.is_(None)) \
        .order_by(Computer.id) \
        .all()

    assert r_computers.is_ok
    assert [computer.id for computer in r_computers.unwrap()] == [1, 2, 3, 5, 10]

    r_request = SafeQuery.from_session(session, Request).filter(Request.id == 2).one()

    assert r_request.is_ok
    assert r_request.unwrap().state == 'reserved'

    assert SafeQuery.from_session(session, Request).filter(Request.id == 999).one_or_none().unwrap() is None
    assert SafeQuery.from_session(session, Request).count().unwrap() == 3


def test_safe_query_failure(session: sqlalchemy.orm.session.Session, _seeded: None) -> None:
    query = SafeQuery.from_session(session, Computer).filter(sqlalchemy.text('no_such_column = 1'))

    r_computers = query.all()

    assert r_computers.is_error

    failure = r_computers.unwrap_error()

    assert failure.message == 'failed to retrieve query result'
    assert 'no_such_column' in failure.details['query']
    assert isinstance(failure.exception, sqlalchemy.exc.DBAPIError)

    # Once failed, the query stays failed.
    assert query.order_by(Computer.id).one().unwrap_error() is failure


def test_safe_query_sees_outside_changes(
    logger: gluetool.log.ContextAdapter,
    db: DB,
    session: sqlalchemy.orm.session.Session,
    _seeded: None
) -> None:
    request = SafeQuery.from_session(session, Request).filter(Request.id == 2).one().unwrap()

    assert request.state == 'reserved'

    with db.get_session(logger) as other_session:
        other_session.execute(sqlalchemy.update(Request).where(Request.id == 2).values(state='deleted'))

    assert SafeQuery.from_session(session, Request).filter(Request.id == 2).one().unwrap().state == 'deleted'


def test_execute_dml(
    logger: gluetool.log.ContextAdapter,
    session: sqlalchemy.orm.session.Session,
    _seeded: None
) -> None:
    r_update = execute_dml(
        logger,
        session,
        sqlalchemy.update(Computer).where(Computer.id.in_([1, 2])).values(state='maintenance')
    )

    assert r_update.is_ok
    assert r_update.unwrap().rowcount == 2


def test_execute_dml_failure(
    logger: gluetool.log.ContextAdapter,
    session: sqlalchemy.orm.session.Session,
    _seeded: None
) -> None:
    r_insert = execute_dml(
        logger,
        session,
        sqlalchemy.insert(Computer).values(id=1, hostname='box1', state='available')
    )

    assert r_insert.is_error

    failure = r_insert.unwrap_error()

    assert failure.message == 'failed to execute DML statement'
    assert 'INSERT INTO computers' in failure.details['query']
    assert isinstance(failure.exception, sqlalchemy.exc.IntegrityError)


def test_counters(logger: gluetool.log.ContextAdapter, db: DB, _schema: None) -> None:
    sessions_opened = db.sessions_opened
    statements_executed = db.statements_executed

    with db.get_session(logger) as session:
        session.execute(sqlalchemy.select(Computer.id))
        session.execute(sqlalchemy.select(Request.id))

    assert db.sessions_opened == sessions_opened + 1
    assert db.statements_executed >= statements_executed + 2


def test_init_schema_idempotent(logger: gluetool.log.ContextAdapter, db: DB, _schema: None) -> None:
    assert init_schema(logger, db).is_ok
