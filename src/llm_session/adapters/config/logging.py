# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Yakov Shkolnikov and contributors
"""Structured logging configuration.

Everything is written to stderr: stdout carries the streamed response text.
Each generation request runs inside ``request_context``, so its log lines
share a ``request_id`` and the ``model`` they ran against.
"""

import logging
import sys
import uuid
from collections.abc import Callable, Sequence
from contextlib import AbstractContextManager
from enum import Enum
from typing import Any, cast

import structlog
from structlog.typing import EventDict, WrappedLogger


class LogLevel(str, Enum):
    """Log levels accepted on the command line and in settings."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


def configure_logging(log_level: str = "INFO", json_output: bool = False) -> None:
    """Configure structlog and the stdlib root logger.

    Domain modules log through stdlib ``logging``; application services
    through structlog. Both end up on stderr at the same level.

    Raises:
        ValueError: If ``log_level`` is not a LogLevel name.
    """
    level = getattr(logging, LogLevel(log_level.upper()).value)

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level, force=True)

    processors: Sequence[Callable[[WrappedLogger, str, EventDict], Any]] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if json_output:
        processors = [
            *processors,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [*processors, structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def request_context(model_path: str) -> AbstractContextManager[None]:
    """Bind ``model`` and a fresh ``request_id`` to structlog lines of one request."""
    return structlog.contextvars.bound_contextvars(model=model_path, request_id=uuid.uuid4().hex[:12])


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    if name:
        return cast(structlog.BoundLogger, structlog.get_logger(name))
    return cast(structlog.BoundLogger, structlog.get_logger())
