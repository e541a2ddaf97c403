# Copyright Contributors to the Testing Farm project.
# SPDX-License-Identifier: Apache-2.0

import logging
import operator
import re
from typing import Any, Callable, Iterable, List, Optional, Tuple
from unittest.mock import MagicMock

import _pytest.logging
import jinja2
from typing_extensions import Protocol

LOG_ASSERT_MESAGE = jinja2.Template("""
Cannot find log record with these properties:
{% for field, value in fields.items() %}
    {{ field }} == {{ value }}
{%- endfor %}
""")


class MockPatcher(Protocol):
    def __call__(
        self,
        obj: Any,
        member_name: str,
        obj_name: Optional[str] = None
    ) -> MagicMock:
        pass


class PatternMatching:
    def __init__(self, pattern: str, method: str) -> None:
        self.pattern = pattern
        self._compiled_pattern = re.compile(pattern)
        self.method = getattr(self._compiled_pattern, method)

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__}: "{self.pattern}">'


class SEARCH(PatternMatching):
    """
    Wrap a string with this class, to use it as a regular expression when searching for log records.
    ``SEARCH`` applies to any place within the string. Messages logged through context loggers carry
    their context as a prefix, ``SEARCH`` is usually the right choice for them.

    .. code-block:: python

       assert_log(message=SEARCH('an exception .+ was raised'))
    """

    def __init__(self, pattern: str) -> None:
        super().__init__(pattern, 'search')


def assert_log(
    caplog: _pytest.logging.LogCaptureFixture,
    evaluator: Callable[[Iterable[Any]], bool] = any,
    **tests: Any
) -> None:
    """
    Assert log contains a record - logged message - with given properties. Those are specified as keyword
    parameters: :py:class:`logging.LogRecords` properties are allowed names, parameter values are the
    expected values.

    .. code-block:: python

       assert_log(caplog, message='everything went well', levelno=logging.INFO)
       assert_log(caplog, message=SEARCH('request .+ state changed'), levelno=logging.INFO)

    :param caplog: Pytest's `caplog` fixture.
    :param evaluator: a callable reducing a given list of booleans into a single boolean. Each record is tested,
        and results of these per-record tests are passed to `evaluator` for the final decision.
    """

    # Each test is turned into a triplet of a field name, a binary operator and the expected value, so the matching
    # below does not need to care about what kind of test it applies.
    operators: List[Tuple[str, Callable[[Any, Any], bool], Any]] = []

    for field_name, expected_value in tests.items():
        if isinstance(expected_value, PatternMatching):
            operators.append((
                field_name,
                lambda a, b: a.method(b) is not None,
                expected_value
            ))

            continue

        operators.append((
            field_name,
            operator.eq,
            expected_value
        ))

    def _cmp(record: logging.LogRecord) -> bool:
        return all([
            op(expected_value, getattr(record, field_name))
            for field_name, op, expected_value in operators
        ])

    assert evaluator([
        _cmp(record)
        for record in caplog.records
    ]), LOG_ASSERT_MESAGE.render(fields=tests)


def assert_failure_log(
    caplog: _pytest.logging.LogCaptureFixture,
    failure_message: str,
    exception_label: Optional[str] = None,
    **tests: Any
) -> None:
    """
    A failure log is just a special log record, with a nicely formatted message describing the aspects
    of the failure. As of now, only the failure message is tested.

    .. code-block::

       assert_failure_log(caplog, 'no such reservation')
       assert_failure_log(caplog, 'failed to execute DML statement', exception_label='OperationalError:')
    """

    message = rf'(?m){failure_message}\n'

    if exception_label:
        message = f'{message}(?:.*\n)+    {exception_label}'

    assert_log(
        caplog,
        message=SEARCH(message),
        levelno=logging.ERROR,
        **tests
    )
