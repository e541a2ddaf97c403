# Copyright Contributors to the Testing Farm project.
# SPDX-License-Identifier: Apache-2.0

import inspect
import logging
import os
from typing import TYPE_CHECKING, Any, Callable, Dict, Generic, List, Optional, Tuple, TypeVar

import gluetool.utils
from gluetool.result import Error, Ok, Result

if TYPE_CHECKING:
    from . import Failure


T = TypeVar('T')


class KnobSource(Generic[T]):
    """
    Represents one of the possible sources of a knob value. Child classes implement the actual
    "get the value" process.

    :param knob: parent knob instance.
    """

    def __init__(self, knob: 'Knob[T]') -> None:
        self.knob = knob

    def get_value(self) -> Result[Optional[T], 'Failure']:
        """
        Acquires and returns the knob value, or ``None`` if the value does not exist. If it may exist but the process
        failed with an error, returns a :py:class:`Failure` describing the error.
        """

        raise NotImplementedError()

    def to_repr(self) -> List[str]:
        """
        Return list of string that shall be added to knob's ``repr()`` representation.
        """

        raise NotImplementedError()


class KnobSourceEnv(KnobSource[T]):
    """
    Read knob value from an environment variable.

    :param envvar: name of the environment variable.
    """

    def __init__(self, knob: 'Knob[T]', envvar: str) -> None:
        super().__init__(knob)

        self.envvar = envvar

    def get_value(self) -> Result[Optional[T], 'Failure']:
        if self.envvar not in os.environ:
            return Ok(None)

        assert self.knob.cast_from_str is not None

        try:
            return Ok(self.knob.cast_from_str(os.environ[self.envvar]))

        except Exception as exc:
            from . import Failure

            return Error(Failure.from_exc(
                'failed to cast knob value',
                exc,
                knobname=self.knob.knobname,
                envvar=self.envvar
            ))

    def to_repr(self) -> List[str]:
        return [
            f'envvar="{self.envvar}"'
        ]


class KnobSourceDefault(KnobSource[T]):
    """
    Use the given default value as the actual value of the knob.

    :param default: the value to be presented as the knob value.
    :param default_label: if provided, it is used in documentation instead of the actual default value.
    """

    def __init__(self, knob: 'Knob[T]', default: T, default_label: Optional[str] = None) -> None:
        super().__init__(knob)

        self.default = default
        self.default_label = default_label

    def get_value(self) -> Result[Optional[T], 'Failure']:
        return Ok(self.default)

    def to_repr(self) -> List[str]:
        if self.default_label is None:
            return [
                f'default="{self.default}"'
            ]

        return [
            f'default="{self.default_label}" ({self.default})'
        ]


class KnobSourceActual(KnobSource[T]):
    """
    Use value as-is.
    """

    def __init__(self, knob: 'Knob[T]', value: T) -> None:
        super().__init__(knob)

        self.value = value

    def get_value(self) -> Result[Optional[T], 'Failure']:
        return Ok(self.value)

    def to_repr(self) -> List[str]:
        return [
            f'actual="{self.value}"'
        ]


class KnobError(ValueError):
    def __init__(self, knob: 'Knob[T]', message: str, failure: Optional['Failure'] = None) -> None:
        super().__init__(f'Badly configured knob: {message}')

        self.knobname = knob.knobname
        self.failure = failure


class Knob(Generic[T]):
    """
    A "knob" represents a - possibly tweakable - parameter of the controller or one of its parts. Knobs:

    * are typed values,
    * may have a default value,
    * may be given via environment variable,
    * may be given by a configuration file.

    The resolution order in which possible sources are checked when knob value is needed:

    1. the environment variable.
    2. the given "actual" value, prossibly originating from a config file.
    3. the default value.

    A typical knob may look like this:

    .. code-block:: python3

       KNOB_BARRIER_TICK: Knob[int] = Knob(
           'barrier.tick',
           'How often, in seconds, should a barrier check the load log.',
           envvar='QUARTERMASTER_BARRIER_TICK',
           cast_from_str=int,
           default=15
       )

    Since all sources are static, the value is deduced when the knob is declared, and it is available
    as ``value`` attribute:

    .. code-block:: python3

       >>> print(KNOB_BARRIER_TICK.value)
       15
       >>>

    :param knobname: name of the knob. It is used for presentation.
    :param envvar: if set, it is the name of the environment variable providing the value.
    :param actual: if set, it is the currently known value, e.g. provided by a config file.
    :param default: if set, it is used as a default value.
    :param default_label: if provided, it is used in documentation instead of the actual default value.
    :param cast_from_str: a callback used to cast the raw string value to the correct type. Required when ``envvar``
        is set.
    """

    #: All known knobs.
    ALL_KNOBS: Dict[str, 'Knob[Any]'] = {}

    def __init__(
        self,
        knobname: str,
        help: str,
        envvar: Optional[str] = None,
        actual: Optional[T] = None,
        default: Optional[T] = None,
        default_label: Optional[str] = None,
        cast_from_str: Optional[Callable[[str], T]] = None
    ) -> None:
        self.knobname = knobname
        self.help = inspect.cleandoc(help)

        self._sources: List[KnobSource[T]] = []

        self.cast_from_str = cast_from_str

        Knob.ALL_KNOBS[knobname] = self

        if envvar is not None:
            if not cast_from_str:
                raise KnobError(self, 'envvar requested but no cast_from_str.')

            self._sources.append(KnobSourceEnv(self, envvar))

        if actual is not None:
            self._sources.append(KnobSourceActual(self, actual))

        if default is not None:
            self._sources.append(KnobSourceDefault(self, default, default_label=default_label))

        if not self._sources:
            raise KnobError(
                self,
                'no source specified - no envvar, actual nor default value.'
            )

        value, failure = self._get_value()

        # Nothing but an envvar source, and the variable is not set. Since there is no other way to get
        # the value later, this is a bug in the knob declaration.
        if value is None:
            raise KnobError(
                self,
                'sources do not provide value! To fix, add an actual or default value.',
                failure=failure
            )

        self.value: T = value

    def __repr__(self) -> str:
        traits: List[str] = []

        if self.cast_from_str:
            traits += [f'cast-from-str={self.cast_from_str.__name__}']

        traits += sum((source.to_repr() for source in self._sources), [])

        return f'<Knob: {self.knobname}: {" ".join(traits)}>'

    def _get_value(self) -> Tuple[Optional[T], Optional['Failure']]:
        """
        The core method for getting the knob value. Returns two items:

        * the value, or ``None`` if the value was not found.
        * optional :py:class:`Failure` instance if the process failed because of an error.
        """

        for source in self._sources:
            r = source.get_value()

            if r.is_error:
                return None, r.unwrap_error()

            value = r.unwrap()

            if value is None:
                continue

            return value, None

        return None, None

    def get_value(self) -> Result[T, 'Failure']:
        """
        Returns either the knob value, of :py:class:`Failure` instance describing the error encountered, including
        the "value does not exist" state.
        """

        value, failure = self._get_value()

        if value is not None:
            return Ok(value)

        if failure:
            return Error(failure)

        from . import Failure

        return Error(Failure('Cannot fetch knob value'))


KNOB_LOGGING_LEVEL: Knob[int] = Knob(
    'logging.level',
    """
    Level of logging. Accepted values are Python logging levels as defined by Python's
    https://docs.python.org/3/library/logging.html#levels[logging subsystem].
    """,
    envvar='QUARTERMASTER_LOG_LEVEL',
    cast_from_str=lambda s: logging._nameToLevel.get(s.strip().upper(), logging.INFO),
    default=logging.INFO)

KNOB_LOGGING_JSON: Knob[bool] = Knob(
    'logging.json',
    'If enabled, the controller would emit log messages as JSON mappings.',
    envvar='QUARTERMASTER_LOG_JSON',
    cast_from_str=gluetool.utils.normalize_bool_option,
    default=True
)

KNOB_CONFIG_DIRPATH: Knob[str] = Knob(
    'config.dirpath',
    'Path to a directory with configuration.',
    envvar='QUARTERMASTER_CONFIG_DIR',
    cast_from_str=lambda s: os.path.expanduser(s.strip()),
    default=os.getcwd(),
    default_label='$CWD'
)

KNOB_DB_URL: Knob[str] = Knob(
    'db.url',
    'Database URL.',
    envvar='QUARTERMASTER_DB_URL',
    cast_from_str=str,
    default='sqlite:///quartermaster.db'
)

KNOB_LOGGING_DB_QUERIES: Knob[bool] = Knob(
    'logging.db.queries',
    'When enabled, the controller would log SQL queries.',
    envvar='QUARTERMASTER_LOG_DB_QUERIES',
    cast_from_str=gluetool.utils.normalize_bool_option,
    default=False
)

KNOB_LOGGING_DB_POOL: Knob[str] = Knob(
    'logging.db.pool',
    'When enabled, the controller would log events related to database connection pool.',
    envvar='QUARTERMASTER_LOG_DB_POOL',
    cast_from_str=str,
    default='no'
)

KNOB_DB_POOL_SIZE: Knob[int] = Knob(
    'db.pool.size',
    'Size of the DB connection pool.',
    envvar='QUARTERMASTER_DB_POOL_SIZE',
    cast_from_str=int,
    default=2
)

KNOB_DB_POOL_MAX_OVERFLOW: Knob[int] = Knob(
    'db.pool.max-overflow',
    'Maximum size of connection pool overflow.',
    envvar='QUARTERMASTER_DB_POOL_MAX_OVERFLOW',
    cast_from_str=int,
    default=1
)

KNOB_BARRIER_TIMEOUT: Knob[int] = Knob(
    'barrier.timeout',
    'How long, in seconds, should a reservation wait for its siblings to reach a stage.',
    envvar='QUARTERMASTER_BARRIER_TIMEOUT',
    cast_from_str=int,
    default=300
)

KNOB_BARRIER_TICK: Knob[int] = Knob(
    'barrier.tick',
    'How often, in seconds, should a waiting reservation check the load log of its siblings.',
    envvar='QUARTERMASTER_BARRIER_TICK',
    cast_from_str=int,
    default=15
)

KNOB_BARRIER_BEGIN_TIMEOUT: Knob[int] = Knob(
    'barrier.begin.timeout',
    'How long, in seconds, should a parent reservation wait for all children to begin.',
    envvar='QUARTERMASTER_BARRIER_BEGIN_TIMEOUT',
    cast_from_str=int,
    default=60
)

KNOB_BARRIER_BEGIN_TICK: Knob[int] = Knob(
    'barrier.begin.tick',
    'How often, in seconds, should a parent reservation check whether its children did begin.',
    envvar='QUARTERMASTER_BARRIER_BEGIN_TICK',
    cast_from_str=int,
    default=3
)

KNOB_MANAGEMENT_NODE_DRIVER: Knob[str] = Knob(
    'subsystem.management-node.driver',
    'Driver controlling the management node the reservation is processed on.',
    envvar='QUARTERMASTER_MANAGEMENT_NODE_DRIVER',
    cast_from_str=str,
    default='localhost'
)

KNOB_METRICS_PUSHGATEWAY_URL: Knob[str] = Knob(
    'metrics.pushgateway.url',
    'If set, metrics of the reservation process would be pushed to this Prometheus push gateway.',
    envvar='QUARTERMASTER_METRICS_PUSHGATEWAY_URL',
    cast_from_str=str,
    # empty string means "do not push"
    default=''
)

KNOB_DEPLOYMENT_ENVIRONMENT: Knob[str] = Knob(
    'deployment.environment',
    'Optional environment of the deployment (e.g. "production" or "staging").',
    envvar='QUARTERMASTER_DEPLOYMENT_ENVIRONMENT',
    cast_from_str=str,
    default='undefined-deployment-environment'
)

KNOB_SENTRY_DSN: Knob[str] = Knob(
    'sentry.dsn',
    'Sentry DSN.',
    envvar='QUARTERMASTER_SENTRY_DSN',
    cast_from_str=str,
    # TODO: Knob cannot use None as actual default value. Needs a fix.
    default='undefined'
)
