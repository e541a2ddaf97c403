# Copyright Contributors to the Testing Farm project.
# SPDX-License-Identifier: Apache-2.0

import importlib.metadata
import logging
import os
import sys
import traceback as _traceback
from types import FrameType, TracebackType
from typing import Any, Callable, Dict, Generator, List, Optional, Tuple, TypeVar, Union, cast

import gluetool.log
import gluetool.utils
import ruamel.yaml
import ruamel.yaml.compat
import ruamel.yaml.scalarstring
import sentry_sdk
import stackprinter
from gluetool.result import Error, Ok, Result
from typing_extensions import ParamSpec

from . import db as qm_db
from .knobs import KNOB_DEPLOYMENT_ENVIRONMENT, KNOB_SENTRY_DSN

try:
    __VERSION__ = importlib.metadata.version('quartermaster')

except importlib.metadata.PackageNotFoundError:
    __VERSION__ = '0.0.0'


stackprinter.set_excepthook(
    style='darkbg2', source_lines=7, show_signature=True, show_vals='all', reverse=False, add_summary=False
)


ExceptionInfoType = Union[
    # returned by sys.exc_info()
    Tuple[type, BaseException, Optional[TracebackType]],
    # this is way of saying "nothing happened, everything's fine"
    Tuple[None, None, None],
]

# Type variable used in generic types
T = TypeVar('T')
P = ParamSpec('P')

FailureDetailsType = Dict[str, Any]


def get_logger() -> gluetool.log.ContextAdapter:
    from .knobs import KNOB_LOGGING_JSON, KNOB_LOGGING_LEVEL

    return gluetool.log.Logging.setup_logger(level=KNOB_LOGGING_LEVEL.value, json_output=KNOB_LOGGING_JSON.value)


def get_release() -> str:
    return f'quartermaster@{__VERSION__}'


class Sentry:
    """
    Thin wrapper of Sentry SDK initialization. Sentry is enabled only when a DSN is configured.
    """

    def __init__(self) -> None:
        self.enabled = KNOB_SENTRY_DSN.value != 'undefined'

        if not self.enabled:
            return

        sentry_sdk.init(
            dsn=KNOB_SENTRY_DSN.value,
            environment=KNOB_DEPLOYMENT_ENVIRONMENT.value,
            release=get_release()
        )


SENTRY = Sentry()


_LOGGING_WRITER_THRESHOLDS = {
    loglevel_name.lower(): loglevel for loglevel_name, loglevel in logging._nameToLevel.items()
}


def is_logging_writer_visible(writer: gluetool.log.LoggingFunctionType) -> bool:
    """
    Check whether the current logging level is high enough for the writer to be actually acting.

    Formatting structures as YAML can be costly. This helper will try to guess whether the given writer would actually
    emit any output given the current loggign level.

    :param writer: a logging method to inspect.
    :returns: ``True`` if the ``writer`` name is known, and the current logging level, as set via
        :py:data:`KNOB_LOGGING_LEVEL`, is equal or lower than the loglevel of the same name; ``False`` is returned
        otherwise.
    """

    loglevel_threshold = _LOGGING_WRITER_THRESHOLDS.get(writer.__name__)

    if loglevel_threshold is None:
        return True

    from .knobs import KNOB_LOGGING_LEVEL

    return KNOB_LOGGING_LEVEL.value <= loglevel_threshold


# ruamel.yaml does not narrow the type
_RuamelYamlDataType = Any


def format_dict_yaml(data: _RuamelYamlDataType) -> str:
    stream = ruamel.yaml.compat.StringIO()

    yaml = gluetool.utils.YAML()

    ruamel.yaml.scalarstring.walk_tree(data)

    def strip_document_end_marker(s: str) -> str:
        if s.endswith('...\n'):
            s = s[:-4]

        return s.strip()

    yaml.dump(data, stream, transform=strip_document_end_marker)

    return stream.getvalue()


def log_dict_yaml(writer: gluetool.log.LoggingFunctionType, intro: str, data: _RuamelYamlDataType) -> None:
    if not is_logging_writer_visible(writer):
        return

    writer(f'{intro}:\n{format_dict_yaml(data)}', extra={'raw_intro': intro, 'raw_struct': data})


_DEFAULT_FAILURE_LOG_LABEL = 'failure'


class Failure:
    """
    Bundles exception related info.

    :param tuple exc_info: Exception information as returned by :py:func:`sys.exc_info`.

    :ivar Exception exception: Shortcut to ``exc_info[1]``, if available, or ``None``.
    :ivar tuple exc_info: Exception information as returned by :py:func:`sys.exc_info`.
    :ivar str sentry_event_id: If set, the failure was reported to the Sentry under this ID.
    :ivar dict details: Additional details about the exception.
    """

    def __init__(
        self,
        message: str,
        *,
        exc_info: Optional[ExceptionInfoType] = None,
        caused_by: Optional['Failure'] = None,
        sentry: Optional[bool] = True,
        recoverable: bool = True,
        **details: Any
    ) -> None:
        self.message = message
        self.exc_info = exc_info
        self.details = details

        self.sentry = sentry
        self.submited_to_sentry: bool = False
        self.sentry_event_id: Optional[str] = None

        self.exception: Optional[BaseException] = None
        self.traceback: Optional[_traceback.StackSummary] = None

        self.caused_by = caused_by

        # An irrecoverable failure is not worth retrying - e.g. a missing reservation will not appear
        # when asked again.
        self.recoverable = recoverable

        if exc_info:
            self.exception = exc_info[1]

            self.traceback = _traceback.StackSummary.extract(
                cast(Generator[Tuple[FrameType, int], None, None], _traceback.walk_tb(exc_info[2])),
                capture_locals=True
            )
            self.traceback.reverse()

        else:
            # start with the caller frame - the one creating the Failure
            f = sys._getframe().f_back

            self.traceback = _traceback.StackSummary.extract(
                cast(Generator[Tuple[FrameType, int], None, None], _traceback.walk_stack(f)),
                capture_locals=True
            )
            self.traceback.reverse()

    @classmethod
    def from_exc(
        cls,
        message: str,
        exc: BaseException,
        *,
        caused_by: Optional['Failure'] = None,
        sentry: Optional[bool] = True,
        recoverable: bool = True,
        **details: Any
    ) -> 'Failure':
        return Failure(
            message,
            exc_info=(exc.__class__, exc, exc.__traceback__),
            caused_by=caused_by,
            sentry=sentry,
            recoverable=recoverable,
            **details
        )

    @classmethod
    def from_failure(
        cls,
        message: str,
        caused_by: 'Failure',
        *,
        sentry: Optional[bool] = True,
        **details: Any
    ) -> 'Failure':
        """
        Create a new ``Failure`` instance, representing a higher-level view of the problem that's been
        carried by ``failure``.

        This method serves for creating a chain of failures. It is easier to create a new one, to provide
        this higher-level context, to "wrap" the original "low level" failure, keeping it attached to the
        new one, than to overwrite attributes of the original failure.
        """

        return Failure(
            message,
            caused_by=caused_by,
            sentry=sentry,
            recoverable=caused_by.recoverable,
            **details
        )

    @classmethod
    def _exception_details(cls, exc: BaseException) -> Dict[str, str]:
        return {
            'instance': str(exc),
            'type': str(type(exc))
        }

    def get_log_details(self) -> Dict[str, Any]:
        """
        Returns a mapping of failure details, suitable for logging subsystem.
        """

        details = self.details.copy()

        details['message'] = self.message
        details['recoverable'] = self.recoverable

        if self.exception:
            details['exception'] = self._exception_details(self.exception)

        if self.exc_info:
            details['traceback'] = '\n'.join(
                line.rstrip()
                for line in stackprinter.format(self.exc_info, line_wrap=False).splitlines()
            )

        if self.caused_by:
            details['caused-by'] = self.caused_by.get_log_details()

        if self.sentry_event_id:
            details['sentry'] = {
                'event_id': self.sentry_event_id
            }

        return details

    def get_sentry_details(self) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """
        Returns two mappings, tags and extra, accepted by Sentry as issue details.
        """

        tags: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}

        extra['message'] = self.message

        for name in ('request_id', 'reservation_id', 'computer_id'):
            if name in self.details:
                tags[name] = self.details[name]

        extra.update({
            key: str(value) for key, value in self.details.items() if key not in tags
        })

        if self.caused_by:
            extra['caused_by'] = self.caused_by.message

        return tags, extra

    def _printable(self, label: str = _DEFAULT_FAILURE_LOG_LABEL) -> str:
        return f'{label}\n\n{format_dict_yaml(self.get_log_details())}'

    def __str__(self) -> str:
        return self._printable()

    def __repr__(self) -> str:
        return f'<Failure: message="{self.message}">'

    def log(self, log_fn: gluetool.log.LoggingFunctionType, label: str = _DEFAULT_FAILURE_LOG_LABEL) -> None:
        exc_info = self.exc_info if self.exc_info else (None, None, None)

        log_fn(self._printable(label=label), exc_info=exc_info)

    def submit_to_sentry(self, logger: gluetool.log.ContextAdapter, **additional_tags: Any) -> None:
        if self.submited_to_sentry:
            return

        if not SENTRY.enabled or self.sentry is not True:
            return

        tags, extra = self.get_sentry_details()

        if additional_tags:
            tags.update(additional_tags)

        try:
            if self.exception:
                self.sentry_event_id = sentry_sdk.capture_exception(self.exception, tags=tags, extras=extra)

            else:
                self.sentry_event_id = sentry_sdk.capture_message(
                    self.message,
                    level='error',
                    tags=tags,
                    extras=extra
                )

        except Exception as exc:
            Failure.from_exc('failed to submit to Sentry', exc).handle(logger, sentry=False)

        else:
            self.submited_to_sentry = True

    def handle(
        self,
        logger: gluetool.log.ContextAdapter,
        label: str = _DEFAULT_FAILURE_LOG_LABEL,
        sentry: bool = True,
        **details: Any
    ) -> None:
        self.details.update(details)

        if sentry:
            self.submit_to_sentry(logger)

        self.log(logger.error, label=label)


def get_config(filename: str) -> Result[Dict[str, Any], Failure]:
    """
    Load a YAML file from the configuration directory.

    :param filename: name of the file, relative to :py:data:`KNOB_CONFIG_DIRPATH`.
    """

    from .knobs import KNOB_CONFIG_DIRPATH

    filepath = os.path.join(KNOB_CONFIG_DIRPATH.value, filename)

    r_config = safe_call(gluetool.utils.load_yaml, filepath, logger=get_logger())

    if r_config.is_error:
        return Error(Failure.from_failure('failed to load configuration', r_config.unwrap_error(), filepath=filepath))

    config = r_config.unwrap()

    if not isinstance(config, dict):
        return Error(Failure('configuration is not a mapping', filepath=filepath))

    return Ok(cast(Dict[str, Any], config))


def get_db(logger: gluetool.log.ContextAdapter, application_name: Optional[str] = None) -> qm_db.DB:
    """
    Return a DB instance.

    :param logger: logger to use for logging.
    :param application_name: if set, it is passed to DB driver. Some drivers can propagate this string
        down to server level and display it when inspecting DB connections, which may help debugging
        DB operations.
    """

    from .knobs import KNOB_DB_URL

    return qm_db.DB(logger, KNOB_DB_URL.value, application_name=application_name)


def safe_call(fn: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> Result[T, Failure]:
    """
    Call given function, with provided arguments.

    :returns: if an exception was raised during the function call, an error result is returned, wrapping the failure.
        Otherwise, a valid result is returned, wrapping function's return value.
    """

    try:
        return Ok(fn(*args, **kwargs))

    except Exception as exc:
        return Error(Failure.from_exc('exception raised inside a safe block', exc))


def safe_call_and_handle(
    logger: gluetool.log.ContextAdapter,
    fn: Callable[P, T],
    *args: P.args,
    **kwargs: P.kwargs
) -> Optional[T]:
    """
    Call given function, with provided arguments. If the call fails, log the resulting failure before returning it.

    .. note::

       Similar to :py:func:`quartermaster.safe_call`, but

       * does handle the potential failure, and
       * does not return :py:class:`Result` instance but either the bare value or ``None``.

       This fits the needs of helpers whose failure isn't a reason to interrupt the main body of work,
       like pushing metrics, but still needs to be reported.

    :param logger: logger to use for logging.
    :param fn: function to call.
    :param args: positional arguments of ``fn``.
    :param kwargs: keyword arguments of ``fn``.
    :returns: if an exception was raised during the function call, a failure is logged and ``safe_call_and_handle``
        returns ``None``. Otherwise, the return value of the call is returned.
    """

    try:
        return fn(*args, **kwargs)

    except Exception as exc:
        Failure.from_exc('exception raised inside a safe block', exc).handle(logger)

        return None


def format_ids(ids: List[int]) -> str:
    """
    Format a list of identifiers for humans, e.g. ``1, 2, 3``.
    """

    return ', '.join(str(i) for i in sorted(ids))
