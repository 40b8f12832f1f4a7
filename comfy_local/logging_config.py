"""
Comfy Local - Logging
======================

All package loggers hang off the "comfy_local" logger, which is configured
once on first use from settings.logging:

- console handler on stderr (stdout is left to the CLI's own output)
- optional file handler (settings.logging.file)
- text or JSON lines (settings.logging.json_output)
- every record carries the request id of the generate() run it belongs to

Usage:
    from comfy_local.logging_config import get_logger, LogContext, log_timing

    logger = get_logger(__name__)

    with LogContext("a1b2c3d4"):
        with log_timing(logger, "wait", prompt_id=prompt_id):
            record = poller.wait(prompt_id)
"""

import json
import logging
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .config import settings

__all__ = [
    "ROOT_LOGGER_NAME",
    "StructuredFormatter",
    "ContextFilter",
    "get_logger",
    "set_log_level",
    "current_request_id",
    "LogContext",
    "log_timing",
]

ROOT_LOGGER_NAME = "comfy_local"

_request_id: ContextVar[str | None] = ContextVar("comfy_local_request_id", default=None)

# Attributes every LogRecord has; anything else came in through extra=
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", None, None)).keys()
    | {"message", "asctime", "request_id"}
)

_configured = False


class StructuredFormatter(logging.Formatter):
    """
    Text formatter that appends extra= fields as key=value pairs, or a JSON
    formatter that emits one object per line with the extra fields inlined.
    """

    def __init__(
        self, fmt: str | None = None, datefmt: str | None = None, json_output: bool = False
    ):
        super().__init__(fmt, datefmt)
        self.json_output = json_output

    @staticmethod
    def extra_fields(record: logging.LogRecord) -> dict[str, Any]:
        return {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        }

    def format(self, record: logging.LogRecord) -> str:
        if self.json_output:
            return self._format_json(record)
        text = super().format(record)
        fields = self.extra_fields(record)
        if fields:
            text += " | " + " ".join(f"{k}={v}" for k, v in fields.items())
        return text

    def _format_json(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "request_id": getattr(record, "request_id", None),
            "message": record.getMessage(),
        }
        entry.update(self.extra_fields(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ContextFilter(logging.Filter):
    """Stamps records with the active request id ("-" outside a LogContext)."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id.get() or "-"
        return True


def _configure():
    global _configured
    if _configured:
        return

    config = settings.logging
    if config.json_output:
        formatter = StructuredFormatter(json_output=True)
    else:
        formatter = StructuredFormatter(fmt=config.format, datefmt=config.date_format)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if config.file:
        path = Path(config.file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.handlers.clear()
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(ContextFilter())
        root.addHandler(handler)
    root.setLevel(getattr(logging, config.level.upper(), logging.INFO))
    root.propagate = False

    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Logger for a module; names outside the package are nested under it."""
    _configure()
    if name != ROOT_LOGGER_NAME and not name.startswith(ROOT_LOGGER_NAME + "."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


def set_log_level(level: str):
    """Change the package log level at runtime (DEBUG, INFO, WARNING, ...)."""
    _configure()
    logging.getLogger(ROOT_LOGGER_NAME).setLevel(getattr(logging, level.upper(), logging.INFO))


def current_request_id() -> str | None:
    return _request_id.get()


class LogContext:
    """
    Tag every record logged inside the block with request_id.

    Contexts nest; leaving one restores the outer id.
    """

    def __init__(self, request_id: str):
        self.request_id = request_id
        self._token = None

    def __enter__(self):
        _configure()
        self._token = _request_id.set(self.request_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        _request_id.reset(self._token)
        return False


@contextmanager
def log_timing(logger: logging.Logger, operation: str, **extra):
    """
    Log how long the block took: INFO when it finishes, WARNING when it raises.
    """
    start = time.perf_counter()
    failed = False
    try:
        yield
    except BaseException:
        failed = True
        raise
    finally:
        elapsed_ms = round((time.perf_counter() - start) * 1000, 1)
        status = "failed" if failed else "completed"
        logger.log(
            logging.WARNING if failed else logging.INFO,
            f"{operation} {status} ({elapsed_ms}ms)",
            extra={"operation": operation, "duration_ms": elapsed_ms, **extra},
        )
