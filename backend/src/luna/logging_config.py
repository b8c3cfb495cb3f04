"""Structured logging configuration using structlog."""

from __future__ import annotations

import logging.config
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog

_CONFIGURED = False


def get_session_id() -> Optional[str]:
    """Get the session_id bound to the current context, if any."""
    try:
        ctx = structlog.contextvars.get_contextvars()
        return ctx.get("session_id")
    except (TypeError, AttributeError):
        return None


def bind_session_id(session_id: Optional[str]) -> None:
    """Bind session_id for the current context using structlog contextvars."""
    structlog.contextvars.bind_contextvars(session_id=session_id)


def clear_session_id() -> None:
    """Remove session_id from context."""
    structlog.contextvars.unbind_contextvars("session_id")


@contextmanager
def session_context(session_id: Optional[str]) -> Iterator[None]:
    """Bind session_id for the block, then restore whatever was bound before."""
    previous = get_session_id()
    bind_session_id(session_id)
    try:
        yield
    finally:
        if previous is None:
            clear_session_id()
        else:
            bind_session_id(previous)


def configure_logging(log_level: str = "INFO") -> None:
    """
    Configure structlog with JSON output. Idempotent - safe to call multiple times.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    global _CONFIGURED

    if _CONFIGURED:
        return

    level_num = getattr(logging, log_level.upper())

    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processor": structlog.processors.JSONRenderer(),
                "foreign_pre_chain": [
                    structlog.stdlib.add_log_level,
                    structlog.stdlib.add_logger_name,
                    structlog.processors.TimeStamper(fmt="iso"),
                    structlog.processors.dict_tracebacks,
                ],
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "json",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {
            "level": log_level.upper(),
            "handlers": ["console"],
        },
        "loggers": {
            "luna": {
                "level": log_level.upper(),
                "propagate": False,
                "handlers": ["console"],
            },
        },
    }
    logging.config.dictConfig(logging_config)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.dict_tracebacks,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_num),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    _CONFIGURED = True


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger instance."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]
