"""Logging helpers shared by the orchestrator modules."""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone

DEFAULT_LOGGER_NAME = "lsp_orchestrator"
_TEXT_FORMAT = "%(asctime)s %(levelname)-7s [%(correlation_id)s] %(name)s: %(message)s"

_correlation_id: ContextVar[str | None] = ContextVar("lsp_orchestrator_correlation_id", default=None)


def get_correlation_id() -> str:
    """Return the correlation id bound to the current context, or ``-``."""
    return _correlation_id.get() or "-"


def set_correlation_id(value: str | None) -> None:
    """Bind ``value`` as the correlation id of the current context."""
    _correlation_id.set(value)


class _CorrelationFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id()
        return True


class StructuredFormatter(logging.Formatter):
    """Render log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "correlation_id": getattr(record, "correlation_id", get_correlation_id()),
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(level: str = "INFO", *, structured: bool = False) -> None:
    """Install a single stderr handler on the root logger."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.addFilter(_CorrelationFilter())
    if structured:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))

    root.addHandler(handler)
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))


def get_logger(name: str | None = None) -> logging.Logger:
    return logging.getLogger(name or DEFAULT_LOGGER_NAME)


__all__ = [
    "StructuredFormatter",
    "configure_logging",
    "get_correlation_id",
    "get_logger",
    "set_correlation_id",
]
