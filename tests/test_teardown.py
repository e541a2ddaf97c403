# Copyright Contributors to the Testing Farm project.
# SPDX-License-Identifier: Apache-2.0

import logging
from unittest.mock import MagicMock

import _pytest.logging
import _pytest.monkeypatch
import gluetool.log
import pytest
from gluetool.result import Error

import quartermaster.knobs
import quartermaster.metrics
from quartermaster import Failure
from quartermaster.controller import ReservationController
from quartermaster.db import DB
from quartermaster.store import Store

from . import SEARCH, MockPatcher, assert_failure_log, assert_log
from .conftest import FakeClock


def test_parent_resets_begin(logger: gluetool.log.ContextAdapter, db: DB, store: Store, clock: FakeClock) -> None:
    store.append_load_log_entry(2, 2, 'begin').unwrap()
    store.append_load_log_entry(2, 2, 'loaded').unwrap()
    store.append_load_log_entry(3, 3, 'begin').unwrap()

    with ReservationController(logger, 1, db=db) as controller:
        assert controller.initialize() is True

        assert store.get_stage_names_by_reservation(1).unwrap() == {
            1: ['begin'],
            2: ['begin', 'loaded'],
            3: ['begin']
        }

    # All begin stages are gone, not just those of the parent.
    assert store.get_stage_names_by_reservation(1).unwrap() == {1: [], 2: ['loaded'], 3: []}

    assert controller.barrier is not None
    assert controller.barrier.stages == {1: [], 2: ['loaded'], 3: []}


def test_child_leaves_begin(logger: gluetool.log.ContextAdapter, db: DB, store: Store) -> None:
    store.append_load_log_entry(1, 1, 'begin').unwrap()
    store.append_load_log_entry(3, 3, 'begin').unwrap()

    with ReservationController(logger, 2, db=db) as controller:
        assert controller.initialize() is True

    assert store.get_stage_names_by_reservation(1).unwrap() == {1: ['begin'], 2: ['begin'], 3: ['begin']}


def test_block_request_skips_cleanup(
    logger: gluetool.log.ContextAdapter,
    db: DB,
    store: Store,
    caplog: _pytest.logging.LogCaptureFixture
) -> None:
    with ReservationController(logger, 5, db=db) as controller:
        assert controller.initialize() is True

    assert store.get_stage_names_by_reservation(3).unwrap() == {5: ['begin']}

    assert_log(caplog, message=SEARCH('block request, skipping load log cleanup'), levelno=logging.DEBUG)


def test_not_loaded(
    logger: gluetool.log.ContextAdapter,
    db: DB,
    store: Store,
    caplog: _pytest.logging.LogCaptureFixture
) -> None:
    with ReservationController(logger, 999, db=db) as controller:
        assert controller.initialize() is False

    assert_log(caplog, message=SEARCH('reservation was not loaded, skipping load log cleanup'), levelno=logging.WARNING)


def test_missing_reservation_ids(
    logger: gluetool.log.ContextAdapter,
    db: DB,
    store: Store,
    caplog: _pytest.logging.LogCaptureFixture
) -> None:
    with ReservationController(logger, 4, db=db) as controller:
        assert controller.initialize() is True

        assert controller.data is not None

        controller.data.reservation_ids = []

    assert_log(caplog, message=SEARCH('no reservation IDs known, skipping load log cleanup'), levelno=logging.WARNING)

    assert store.get_stage_names_by_reservation(2).unwrap() == {4: ['begin']}


def test_cleanup_failure(
    logger: gluetool.log.ContextAdapter,
    db: DB,
    store: Store,
    mockpatch: MockPatcher,
    caplog: _pytest.logging.LogCaptureFixture
) -> None:
    with ReservationController(logger, 4, db=db) as controller:
        assert controller.initialize() is True

        mockpatch(controller.store, 'delete_load_log_entries').return_value = Error(Failure('dummy failure'))

    assert_failure_log(caplog, 'dummy failure')

    # Connection was released nevertheless.
    assert controller.context.session is None


def test_cleanup_exception(
    logger: gluetool.log.ContextAdapter,
    db: DB,
    store: Store,
    mockpatch: MockPatcher,
    caplog: _pytest.logging.LogCaptureFixture
) -> None:
    with ReservationController(logger, 4, db=db) as controller:
        assert controller.initialize() is True

        mockpatch(controller.store, 'delete_load_log_entries').side_effect = ValueError('dummy error happened')

    assert_failure_log(caplog, 'failed to clean up load log', exception_label='ValueError:')

    assert controller.context.session is None


def test_exactly_once(
    logger: gluetool.log.ContextAdapter,
    db: DB,
    store: Store,
    monkeypatch: _pytest.monkeypatch.MonkeyPatch
) -> None:
    controller = ReservationController(logger, 4, db=db)

    mock_close = MagicMock(wraps=controller.context.close)
    monkeypatch.setattr(controller.context, 'close', mock_close)

    with controller:
        assert controller.initialize() is True

    controller.teardown()
    controller.teardown()

    mock_close.assert_called_once_with()


def test_teardown_after_exception(logger: gluetool.log.ContextAdapter, db: DB, store: Store) -> None:
    with pytest.raises(ValueError, match='dummy error happened'):
        with ReservationController(logger, 4, db=db) as controller:
            assert controller.initialize() is True

            raise ValueError('dummy error happened')

    assert controller.context.session is None
    assert store.get_stage_names_by_reservation(2).unwrap() == {4: []}


def test_duration(
    logger: gluetool.log.ContextAdapter,
    db: DB,
    store: Store,
    caplog: _pytest.logging.LogCaptureFixture
) -> None:
    with ReservationController(logger, 4, db=db) as controller:
        assert controller.initialize() is True

    assert controller.metrics.process.duration is not None
    assert controller.metrics.process.duration >= 0
    assert controller.metrics.process.statements_executed > 0
    assert controller.metrics.process.sessions_opened >= 1

    assert_log(caplog, message=SEARCH(r'process duration: \d+\.\d\d seconds'), levelno=logging.INFO)


def test_metrics_pushed(
    logger: gluetool.log.ContextAdapter,
    db: DB,
    store: Store,
    monkeypatch: _pytest.monkeypatch.MonkeyPatch,
    mockpatch: MockPatcher
) -> None:
    monkeypatch.setattr(quartermaster.knobs.KNOB_METRICS_PUSHGATEWAY_URL, 'value', 'http://pushgateway:9091')

    mock_push = mockpatch(quartermaster.metrics.prometheus_client, 'push_to_gateway')

    with ReservationController(logger, 4, db=db) as controller:
        assert controller.initialize() is True

    mock_push.assert_called_once()

    assert mock_push.call_args.args == ('http://pushgateway:9091',)
    assert mock_push.call_args.kwargs['job'] == 'quartermaster-reservation'
    assert mock_push.call_args.kwargs['grouping_key'] == {'reservation_id': '4'}


def test_metrics_not_pushed_by_default(
    logger: gluetool.log.ContextAdapter,
    db: DB,
    store: Store,
    mockpatch: MockPatcher
) -> None:
    mock_push = mockpatch(quartermaster.metrics.prometheus_client, 'push_to_gateway')

    with ReservationController(logger, 4, db=db) as controller:
        assert controller.initialize() is True

    mock_push.assert_not_called()
