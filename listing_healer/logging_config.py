"""Structured logging configuration.

Records carry the item they concern. ``item_id``, ``user_id``, ``task_id``,
``queue`` and ``event`` travel as record attributes (through
:func:`get_logger` context or :func:`log_event`) and land as top-level
fields of the JSON line, so the operator stream can be filtered on them.
"""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from pythonjsonlogger import jsonlogger

from listing_healer.config import Settings, settings as default_settings

CONTEXT_FIELDS = ("item_id", "user_id", "task_id", "queue", "event")

# Libraries that log every request or job run at INFO
NOISY_LOGGERS = ("httpx", "apscheduler")


class ContextJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that always emits the item context fields it finds."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.now(timezone.utc).isoformat()
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['source'] = f"{record.filename}:{record.lineno}"

        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_record[field] = value


class ContextConsoleFormatter(logging.Formatter):
    """Human-readable console lines with the item context appended."""

    def format(self, record):
        line = super().format(record)
        context = " ".join(
            f"{field}={getattr(record, field)}"
            for field in CONTEXT_FIELDS
            if getattr(record, field, None) is not None
        )
        return f"{line} [{context}]" if context else line


class ErrorStreamFilter(logging.Filter):
    """Pass errors, plus warnings that report a failed operation (``*_failed`` events)."""

    def filter(self, record):
        if record.levelno >= logging.ERROR:
            return True
        event = getattr(record, "event", None)
        return record.levelno >= logging.WARNING and bool(event) and str(event).endswith("_failed")


def setup_logging(base_dir: str | Path | None = None, settings: Settings | None = None):
    """Configure logging for the application.

    Three handlers: a console stream, ``logs/app.log`` (every record, JSON)
    and ``logs/error.log``, the operator error stream (JSON, see
    :class:`ErrorStreamFilter`).

    Args:
        base_dir: Optional base directory to place the logs/ folder in.
                  If omitted, uses the current working directory.
        settings: Settings to read the log level from (defaults to global settings)
    """
    settings = settings or default_settings

    logs_dir = (Path(base_dir) if base_dir else Path.cwd()) / "logs"
    logs_dir.mkdir(exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper()))
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(
        ContextConsoleFormatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    root_logger.addHandler(console_handler)

    json_formatter = ContextJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    json_handler = logging.FileHandler(logs_dir / "app.log")
    json_handler.setLevel(logging.DEBUG)
    json_handler.setFormatter(json_formatter)
    root_logger.addHandler(json_handler)

    error_handler = logging.FileHandler(logs_dir / "error.log")
    error_handler.setLevel(logging.WARNING)
    error_handler.addFilter(ErrorStreamFilter())
    error_handler.setFormatter(json_formatter)
    root_logger.addHandler(error_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger


class ContextLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that attaches item context to every record.

    An explicit ``extra=`` on a call overrides the adapter's context.
    """

    def process(self, msg, kwargs):
        extra = dict(self.extra)
        extra.update(kwargs.get('extra') or {})
        kwargs['extra'] = extra
        return msg, kwargs


def get_logger(name: str, **context) -> ContextLoggerAdapter:
    """
    Get a logger bound to item context.

    Args:
        name: Logger name (usually __name__)
        **context: Context fields (e.g., item_id=42, user_id='u1')

    Returns:
        ContextLoggerAdapter with context
    """
    context = {key: value for key, value in context.items() if value is not None}
    return ContextLoggerAdapter(logging.getLogger(name), context)


def log_event(
    log: Union[logging.Logger, logging.LoggerAdapter],
    event: str,
    message: str,
    level: Optional[int] = None,
    **context,
) -> None:
    """Log a named operational event with its context as record fields.

    ``*_failed`` events default to WARNING and reach the error stream;
    everything else defaults to INFO.
    """
    if level is None:
        level = logging.WARNING if event.endswith("_failed") else logging.INFO
    extra = {key: value for key, value in context.items() if value is not None}
    extra["event"] = event
    log.log(level, message, extra=extra)
