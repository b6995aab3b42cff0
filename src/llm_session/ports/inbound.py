# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Yakov Shkolnikov and contributors
"""Inbound port interfaces (driving adapters).

These ports define what a host application (CLI, UI bridge, server)
hands to the session core and what it can call on it.

Callbacks run on the thread that executes the generation. Marshaling them
to another context is the host's job. Exceptions raised by a callback are
not caught by the core.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Protocol

from llm_session.domain.errors import ErrorKind
from llm_session.domain.value_objects import ConversationTurn, GenerationOutcome, GenerationResult


@dataclass(frozen=True)
class StreamCallbacks:
    """Host hooks for one generation request.

    Attributes:
        on_unit: Called with each decoded text unit, in order, never with
            the end-of-turn sentinel. A truthy return value requests stop.
        on_complete: Called once with the metrics of a completed request.
            Not called for cancelled or failed requests.
        on_error: Called with (kind, message) when a background request
            fails.
        on_audio_samples: Called with (samples, is_final) while audio is
            synthesized; return False to stop.
    """

    on_unit: Callable[[str], bool | None] | None = None
    on_complete: Callable[[GenerationResult], None] | None = None
    on_error: Callable[[ErrorKind, str], None] | None = None
    on_audio_samples: Callable[[Sequence[float], bool], bool] | None = None


class GenerationSessionPort(Protocol):
    """Port for driving a conversational session.

    Exactly one generation may be in flight per session. Mutation methods
    are meant to be called between generations.
    """

    def submit(self, prompt: str, callbacks: StreamCallbacks | None = None) -> GenerationOutcome:
        """Generate a reply to ``prompt`` using and updating stored history.

        Raises:
            SessionNotReadyError: If no engine is loaded.
            GenerationInProgressError: If a generation is already running.
            EngineFailureError: If the engine fails mid-request.
        """
        ...

    def submit_with_history(
        self,
        turns: Sequence[ConversationTurn],
        callbacks: StreamCallbacks | None = None,
    ) -> GenerationOutcome:
        """Generate from a caller-managed turn list; stored history is untouched."""
        ...

    def stop_generation(self) -> None:
        """Request cancellation; observed within one decode step."""
        ...

    def update_config(self, config_json: str) -> None:
        """Merge a JSON object of overrides into the session configuration.

        Raises:
            InvalidConfigError: If the payload is not a valid override object.
        """
        ...

    def set_system_prompt(self, system_prompt: str) -> None:
        ...

    def clear_history(self) -> None:
        ...
