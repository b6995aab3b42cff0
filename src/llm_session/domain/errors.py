# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Yakov Shkolnikov and contributors
"""Domain exception hierarchy.

All session-level errors inherit from SessionError.
This allows clean exception handling at adapter boundaries and lets the
worker report a stable error kind to the host through ``on_error``.

Malformed engine output is deliberately absent: the stream decoder
resynchronizes locally and never raises.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Stable error identifiers reported to host callbacks."""

    SESSION_NOT_READY = "session_not_ready"
    INVALID_CONFIG = "invalid_config"
    GENERATION_IN_PROGRESS = "generation_in_progress"
    ENGINE_FAILURE = "engine_failure"
    INVALID_HISTORY = "invalid_history"


class SessionError(Exception):
    """Base exception for all session errors."""

    kind: ErrorKind = ErrorKind.ENGINE_FAILURE


class SessionNotReadyError(SessionError):
    """Engine is not loaded (never loaded, load failed, or released)."""

    kind = ErrorKind.SESSION_NOT_READY


class InvalidConfigError(SessionError):
    """Configuration payload is malformed; session configuration is unchanged."""

    kind = ErrorKind.INVALID_CONFIG


class GenerationInProgressError(SessionError):
    """A second generation was submitted while one is still running."""

    kind = ErrorKind.GENERATION_IN_PROGRESS


class EngineFailureError(SessionError):
    """Engine raised during load, prefill, decode or audio synthesis."""

    kind = ErrorKind.ENGINE_FAILURE


class HistoryOrderError(SessionError):
    """Turn would break role alternation or the single leading system turn."""

    kind = ErrorKind.INVALID_HISTORY
