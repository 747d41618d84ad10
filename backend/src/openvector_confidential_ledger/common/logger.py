"""Structured logging for the ledger: the Logger interface, LogMessage and StandardLogger."""

from __future__ import annotations

import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
import datetime as dt
import json
import logging
import logging.config
from typing import Any


LOGGER_NAME = "openvector_confidential_ledger_logger"

TRACE_LEVEL_NUM = 5


class LogLevel(Enum):
    """Severity of a log message, ordered from most to least verbose.

    TRACE and DEBUG are meant for development, WARNING and above for issues an
    operator should see. FATAL terminates the process.
    """

    TRACE = -1
    DEBUG = 0
    INFO = 1
    WARNING = 2
    ERROR = 3
    CRITICAL = 4
    FATAL = 5


STDLIB_LEVELS: dict[LogLevel, int] = {
    LogLevel.TRACE: TRACE_LEVEL_NUM,
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.CRITICAL: logging.CRITICAL,
    LogLevel.FATAL: logging.FATAL,
}


@dataclass(slots=True)
class LogMessage:
    """A log line plus the structured fields attached to it.

    Attributes:
        message:
            Human readable text.
        level:
            Only used by `Logger.log`, the level functions set it themselves.
        structured_log_message_data:
            Extra fields emitted alongside the message. Never put the plaintext
            of a secret field in here, handles and grant ids are fine.
        error:
            Exception to attach, its traceback is logged.
        stacklevel:
            Frames to skip when resolving the caller.
    """

    message: str
    level: LogLevel = LogLevel.INFO
    structured_log_message_data: dict[str, Any] = field(default_factory=dict)
    error: Exception | None = None
    stacklevel: int = 1


class LoggingError(Exception):
    """The logging backend failed to emit a message."""

    pass


class Logger(ABC):
    """Level functions over a single `_emit` hook.

    Each level function turns a plain string into a LogMessage, tags it with
    its level and hands it to the implementation.
    """

    __slots__ = ("_min_level",)
    _min_level: LogLevel

    def __init__(self, min_level: LogLevel = LogLevel.WARNING):
        self._min_level = min_level

    @property
    def min_level(self) -> LogLevel:
        return self._min_level

    def log(self, message: str | LogMessage) -> None:
        """Logs at the level carried by the message, plain strings use the minimum level.

        Raises:
            LoggingError: If the backend fails.
        """
        if isinstance(message, str):
            message = LogMessage(message=message, level=self._min_level)
        if message.level.value < self._min_level.value:
            return
        self._dispatch(message, message.level)

    def trace(self, message: str | LogMessage) -> None:
        self._dispatch(message, LogLevel.TRACE)

    def debug(self, message: str | LogMessage) -> None:
        self._dispatch(message, LogLevel.DEBUG)

    def info(self, message: str | LogMessage) -> None:
        self._dispatch(message, LogLevel.INFO)

    def warning(self, message: str | LogMessage) -> None:
        self._dispatch(message, LogLevel.WARNING)

    def error(self, message: str | LogMessage) -> None:
        self._dispatch(message, LogLevel.ERROR)

    def critical(self, message: str | LogMessage) -> None:
        self._dispatch(message, LogLevel.CRITICAL)

    def fatal(self, message: str | LogMessage) -> None:
        """Logs and exits, with the `exit_code` structured field or 1."""
        if isinstance(message, str):
            message = LogMessage(message=message)
        exit_code = message.structured_log_message_data.get("exit_code", 1)
        self._dispatch(message, LogLevel.FATAL)
        sys.exit(exit_code if isinstance(exit_code, int) else 1)

    def _dispatch(self, message: str | LogMessage, level: LogLevel) -> None:
        if isinstance(message, str):
            message = LogMessage(message=message)
        message.level = level
        # the level function, _dispatch and _emit sit between the caller and logging
        message.stacklevel += 3
        message.structured_log_message_data["log_level"] = level.name
        self._emit(message)

    @abstractmethod
    def _emit(self, message: LogMessage) -> None:
        pass


# attributes every LogRecord carries, anything else came in through `extra`
LOG_RECORD_BUILTIN_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {
    "message",
    "asctime",
    "taskName",
}


class JSONFormatter(logging.Formatter):
    """Formats log records as one json object per line.

    `fmt_keys` maps output keys to record attributes. Structured fields passed
    through `extra` are copied as they are. Referenced by name from the
    dictConfig file, see config/logging.json.
    """

    def __init__(
        self,
        *,
        fmt_keys: dict[str, str] | None = None,
    ):
        super().__init__()
        self.fmt_keys = fmt_keys if fmt_keys is not None else {}

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(self._to_dict(record), default=str)

    def _to_dict(self, record: logging.LogRecord) -> dict[str, Any]:
        computed: dict[str, Any] = {
            "message": record.getMessage(),
            "timestamp": dt.datetime.fromtimestamp(
                record.created, tz=dt.timezone.utc
            ).isoformat(),
        }
        if record.exc_info is not None:
            computed["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info is not None:
            computed["stack_info"] = self.formatStack(record.stack_info)

        output: dict[str, Any] = {}
        for key, attr in self.fmt_keys.items():
            if attr in computed:
                output[key] = computed.pop(attr)
            else:
                output[key] = getattr(record, attr)
        output.update(computed)
        output.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in LOG_RECORD_BUILTIN_ATTRS
        )
        return output


class StandardLogger(Logger):
    """Logger backed by the standard library logging module."""

    __slots__ = ("_logger",)

    _logger: logging.Logger

    def __init__(
        self,
        config_path: str | None = None,
    ):
        """Sets up the ledger logger.

        Args:
            config_path:
                Path to a json dictConfig file. When omitted the host process
                logging configuration is used as is.

        Raises:
            FileNotFoundError: If the config file does not exist.
            JSONDecodeError: If the config file is not valid json.
        """
        if config_path is not None:
            with open(config_path, "r", encoding="utf-8") as file:
                logging.config.dictConfig(json.load(file))
        logging.addLevelName(TRACE_LEVEL_NUM, "TRACE")
        self._logger = logging.getLogger(LOGGER_NAME)
        effective_level = self._logger.getEffectiveLevel()
        min_level = LogLevel.FATAL
        for level in LogLevel:
            if STDLIB_LEVELS[level] >= effective_level:
                min_level = level
                break
        super().__init__(min_level)

    def _emit(self, message: LogMessage) -> None:
        try:
            self._logger.log(
                STDLIB_LEVELS[message.level],
                message.message,
                extra=message.structured_log_message_data,
                stacklevel=message.stacklevel,
                exc_info=message.error,
            )
        except (KeyError, TypeError) as e:
            raise LoggingError(f"Could not emit log message: {e}") from e
