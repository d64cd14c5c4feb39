"""Structured logging configuration for deployguard.

This module configures structlog with support for:
- JSON and console output formats
- File rotation based on size
- A session ID shared by every event of one update or rollback invocation

structlog is used for all log emission; Python's stdlib logging only
provides the handlers (stdout or a rotating file).

Example usage:
    >>> from deployguard.config import LoggingConfig
    >>> from deployguard.logging import setup_logging, get_logger, bind_session_context
    >>>
    >>> setup_logging(LoggingConfig(level="INFO", format="json"))
    >>> bind_session_context(session_id="a1b2c3", mode="update")
    >>> get_logger(__name__).info("backup_created", backup="deploy-backup-...")
"""

from __future__ import annotations

import contextvars
import logging
import logging.handlers
import sys
from typing import Any

import structlog

from deployguard.config import LoggingConfig

_session_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "session_id", default=None
)


def add_session_id(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Add session_id to log event if set in context.

    Args:
        logger: Logger instance (unused, required by structlog protocol)
        method_name: Log method name (unused, required by structlog protocol)
        event_dict: Current event dictionary to augment

    Returns:
        Event dictionary with session_id added if available
    """
    session_id = _session_id.get()
    if session_id is not None:
        event_dict.setdefault("session_id", session_id)
    return event_dict


def set_session_id(session_id: str | None) -> None:
    """Set the session ID for the current context."""
    _session_id.set(session_id)


def get_session_id() -> str | None:
    """Get the current session ID from context."""
    return _session_id.get()


def bind_session_context(session_id: str, mode: str) -> None:
    """Bind session identity to all subsequent logs.

    Args:
        session_id: Identifier of the current update session
        mode: Invocation mode ("update" or "rollback")
    """
    set_session_id(session_id)
    structlog.contextvars.bind_contextvars(mode=mode)


def setup_logging(config: LoggingConfig) -> None:
    """Configure structlog with the given configuration.

    Args:
        config: Logging configuration from DeployguardConfig
    """
    log_level = getattr(logging, config.level)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    if config.file is not None:
        config.file.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.handlers.RotatingFileHandler(
            filename=config.file,
            maxBytes=config.rotation_size_mb * 1024 * 1024,
            backupCount=config.retention_count,
            encoding="utf-8",
        )
    else:
        handler = logging.StreamHandler(sys.stdout)

    handler.setLevel(log_level)
    root_logger.addHandler(handler)

    if config.format == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.contextvars.merge_contextvars,
            add_session_id,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name (typically __name__ of the calling module)

    Returns:
        Configured structlog BoundLogger instance
    """
    return structlog.get_logger(name)
