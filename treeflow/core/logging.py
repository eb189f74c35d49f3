"""Application logging configuration.

This module sets up a structured logging configuration using
``logging.config.dictConfig`` and exposes a context manager that binds a
routing session ID to all log records emitted while an agent session walks a
TreeFlow. Log output uses key-value formatting to facilitate downstream
parsing.
"""

from __future__ import annotations

import logging
import logging.config
import os
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

# ---------------------------------------------------------------------------
# Context variable used to propagate per-session IDs to log records
# ---------------------------------------------------------------------------
session_id_ctx_var: ContextVar[str | None] = ContextVar("session_id", default=None)


class SessionIdFilter(logging.Filter):
    """Inject the routing session ID from contextvars into log records."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - small
        record.session_id = session_id_ctx_var.get() or "-"
        return True


def _build_config(log_level: str, stream: str = "ext://sys.stdout") -> dict[str, Any]:
    """Build logging configuration dictionary."""

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"session_id": {"()": SessionIdFilter}},
        "formatters": {
            "kv": {
                "format": (
                    "level=%(levelname)s logger=%(name)s session_id=%(session_id)s "
                    "message=%(message)s"
                )
            }
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "stream": stream,
                "formatter": "kv",
                "filters": ["session_id"],
                "level": log_level,
            }
        },
        "root": {"handlers": ["default"], "level": log_level},
    }


def setup_logging(log_level: str | None = None, *, stream: str = "ext://sys.stdout") -> None:
    """Configure root logging using key-value formatting.

    The log level can be controlled via the ``LOG_LEVEL`` environment variable.
    Commands that print data on stdout pass ``ext://sys.stderr``.
    """

    level = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.config.dictConfig(_build_config(level, stream))


@contextmanager
def bind_session_id(session_id: str | None = None) -> Iterator[str]:
    """Bind a routing session ID for the duration of the block.

    A new UUID4 value is generated when no ID is given. The ID is stored in a
    ContextVar so it is included in every log record via ``SessionIdFilter``.
    """
    value = session_id or str(uuid.uuid4())
    token = session_id_ctx_var.set(value)
    try:
        yield value
    finally:
        session_id_ctx_var.reset(token)


__all__ = ["SessionIdFilter", "bind_session_id", "session_id_ctx_var", "setup_logging"]
