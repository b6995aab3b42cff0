# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Yakov Shkolnikov and contributors
"""Outbound port interfaces (driven adapters).

These ports define the contract the session core consumes from a text
generation engine. Implementations wrap a specific runtime (MLX, a remote
process, a test double) behind a one-step-at-a-time interface.

All interfaces use Protocol (PEP 544) for structural typing, allowing
implicit implementation without inheritance.
"""

from collections.abc import Callable, Sequence
from typing import Any, Protocol, runtime_checkable

from llm_session.domain.value_objects import ConversationTurn, EngineStats

ByteSink = Callable[[bytes], None]
"""Receives raw output bytes, in order, for the whole request."""

AudioSink = Callable[[Sequence[float], bool], bool]
"""Receives (samples, is_final) chunks; returns False to stop synthesis."""


class EnginePort(Protocol):
    """Port for a loaded generation engine.

    The engine handle is not reentrant: at most one request runs on it at a
    time. Prefill and every decode step write their output bytes to the
    sink given to ``prefill``, appending to one stream. When the model ends
    its turn, the engine writes ``end_marker`` to that stream.
    """

    def prefill(
        self,
        turns: Sequence[ConversationTurn],
        sink: ByteSink,
        end_marker: str,
        step_budget: int = 1,
    ) -> Any:
        """Consume the rendered turns and generate the first ``step_budget`` tokens.

        Args:
            turns: Full rendered conversation, oldest first.
            sink: Destination for output bytes of this and later steps.
            end_marker: Text to write when the model emits end-of-turn.
            step_budget: Tokens to generate before returning.

        Returns:
            Engine-native result handle for ``result_snapshot``.

        Raises:
            Exception: Any engine failure.
        """
        ...

    def decode_step(self, n: int = 1) -> int:
        """Generate ``n`` more tokens into the prefill sink.

        Returns:
            Number of bytes written.
        """
        ...

    def result_snapshot(self, handle: Any) -> EngineStats | None:
        """Cumulative counters for the request behind ``handle``, if any."""
        ...

    def set_config(self, config: dict[str, Any]) -> None:
        """Replace the engine configuration with ``config``."""
        ...


@runtime_checkable
class AudioEnginePort(EnginePort, Protocol):
    """Engine that can also synthesize speech for the last response.

    Runtime-checkable: the controller tests loaded engines against it.
    """

    def synthesize_audio(self, sink: AudioSink) -> None:
        """Stream waveform chunks for the last response into ``sink``."""
        ...


class EngineLoaderPort(Protocol):
    """Port for loading an engine from persistent model storage."""

    def load(self, model_path: str, config: dict[str, Any]) -> EnginePort:
        """Load the model at ``model_path`` configured with ``config``.

        Raises:
            Exception: If the model cannot be loaded.
        """
        ...
