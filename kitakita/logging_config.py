"""Structured logging configuration.

JSON-formatted logs with correlation IDs for request tracing. The same
setup is used by the API process and by the standalone bot poller.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

# Correlation ID for the current request or Telegram update
correlation_id_ctx: ContextVar[str | None] = ContextVar("correlation_id", default=None)

# Chatty libraries that only log at WARNING and above
QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx", "apscheduler")


def _timestamp(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, timezone.utc)


class _ServiceFormatter(logging.Formatter):
    """Base for formatters that stamp records with the service name."""

    def __init__(self, service_name: str = "kitakita-api"):
        super().__init__()
        self.service_name = service_name

    @staticmethod
    def extra_fields(record: logging.LogRecord) -> dict[str, Any]:
        return getattr(record, "extra_fields", None) or {}


class JsonFormatter(_ServiceFormatter):
    """Formatter that outputs one JSON object per log record.

    Keys: timestamp, level, service, message, logger, correlation_id (when
    set), any structured extra fields, exception text and, for errors, the
    source location.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": _timestamp(record).isoformat(),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if correlation_id := correlation_id_ctx.get():
            entry["correlation_id"] = correlation_id
        entry.update(self.extra_fields(record))

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        if record.levelno >= logging.ERROR:
            entry["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }
        return json.dumps(entry, default=str)


class TextFormatter(_ServiceFormatter):
    """Human-readable formatter for development.

    Format: timestamp - service - level - [correlation_id] - message key=value...
    """

    def format(self, record: logging.LogRecord) -> str:
        stamp = _timestamp(record)
        parts = [
            stamp.strftime("%Y-%m-%d %H:%M:%S"),
            self.service_name,
            record.levelname,
            f"[{correlation_id_ctx.get() or '-'}]",
            record.getMessage(),
        ]
        line = " - ".join(parts)

        fields = self.extra_fields(record)
        if fields:
            line += " " + " ".join(f"{key}={value}" for key, value in fields.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


_FORMATTERS: dict[str, type[_ServiceFormatter]] = {
    "json": JsonFormatter,
    "text": TextFormatter,
}


def setup_logging(
    log_format: str = "json",
    log_level: str = "INFO",
    service_name: str = "kitakita-api",
) -> None:
    """Replace the root handlers with a single stdout handler.

    Args:
        log_format: 'json' for structured logging, 'text' for human-readable
        log_level: Logging level name; unknown names fall back to INFO
        service_name: Value of the ``service`` field on every record
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    formatter_cls = _FORMATTERS.get(log_format.lower(), TextFormatter)
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(formatter_cls(service_name=service_name))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class StructuredLogger:
    """Logger wrapper that supports structured extra fields.

    ``exc_info=True`` is passed through to the stdlib logger so the
    traceback is attached instead of being logged as a field.
    """

    def __init__(self, name: str):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, msg: str, extra_fields: dict[str, Any]) -> None:
        exc_info = extra_fields.pop("exc_info", None)
        record_extra = {"extra_fields": extra_fields} if extra_fields else {}
        self._logger.log(
            level, msg, exc_info=exc_info, extra=record_extra, stacklevel=3
        )

    def debug(self, msg: str, **extra_fields: Any) -> None:
        self._log(logging.DEBUG, msg, extra_fields)

    def info(self, msg: str, **extra_fields: Any) -> None:
        self._log(logging.INFO, msg, extra_fields)

    def warning(self, msg: str, **extra_fields: Any) -> None:
        self._log(logging.WARNING, msg, extra_fields)

    def error(self, msg: str, **extra_fields: Any) -> None:
        self._log(logging.ERROR, msg, extra_fields)

    def exception(self, msg: str, **extra_fields: Any) -> None:
        """Log at ERROR with the active exception's traceback."""
        extra_fields["exc_info"] = True
        self._log(logging.ERROR, msg, extra_fields)


def get_logger(name: str) -> StructuredLogger:
    """Return a StructuredLogger for ``name`` (usually ``__name__``)."""
    return StructuredLogger(name)
