# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Yakov Shkolnikov and contributors
"""Domain value objects (immutable data structures)."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any


class Role(str, Enum):
    """Speaker of a conversation turn."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class TemplatingMode(str, Enum):
    """Prompt formatting policy, fixed for the lifetime of a session."""

    PLAIN = "plain"
    REASONING = "reasoning"


class GenerationState(str, Enum):
    """Lifecycle of one generation request."""

    IDLE = "idle"
    PREFILLING = "prefilling"
    DECODING = "decoding"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            GenerationState.COMPLETED,
            GenerationState.CANCELLED,
            GenerationState.FAILED,
        )


class StopReason(str, Enum):
    """Why the decode loop stopped issuing engine steps."""

    END_OF_TURN = "end_of_turn"
    MAX_TOKENS = "max_tokens"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ConversationTurn:
    """One role-tagged message."""

    role: Role
    content: str

    @classmethod
    def of(cls, role: "Role | str", content: str) -> "ConversationTurn":
        """Build a turn from a role name or Role member.

        Raises:
            ValueError: If role is not system, user or assistant.
        """
        return cls(role=Role(role), content=content)

    def as_pair(self) -> tuple[str, str]:
        return (self.role.value, self.content)


@dataclass(frozen=True)
class EngineStats:
    """Cumulative counters read from an engine result handle.

    All durations are in microseconds.
    """

    prompt_tokens: int = 0
    generated_tokens: int = 0
    prefill_us: int = 0
    decode_us: int = 0
    vision_us: int = 0
    audio_us: int = 0


@dataclass(frozen=True)
class GenerationResult:
    """Completion metrics for one submission.

    Attributes:
        prompt_tokens: Tokens consumed by prefill.
        generated_tokens: Tokens produced by prefill and decode steps.
        prefill_us: Prefill wall time in microseconds.
        decode_us: Decode wall time in microseconds.
        aux_us: Secondary media timings keyed by medium ("vision", "audio").
            Read-only.
    """

    prompt_tokens: int = 0
    generated_tokens: int = 0
    prefill_us: int = 0
    decode_us: int = 0
    aux_us: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "aux_us", MappingProxyType(dict(self.aux_us)))

    def to_dict(self) -> dict[str, Any]:
        """Flat mapping in the host bridge's field naming."""
        return {
            "promptLen": self.prompt_tokens,
            "decodeLen": self.generated_tokens,
            "prefillTime": self.prefill_us,
            "decodeTime": self.decode_us,
            "visionTime": self.aux_us.get("vision", 0),
            "audioTime": self.aux_us.get("audio", 0),
        }


@dataclass(frozen=True)
class DiagnosticRecord:
    """Prompt and raw response of a single request, for debugging."""

    prompt_text: str = ""
    response_text: str = ""

    def describe(self) -> str:
        return f"last_prompt:\n{self.prompt_text}\nlast_response:\n{self.response_text}"


@dataclass(frozen=True)
class GenerationOutcome:
    """Everything a finished request produced.

    ``text`` is the finalized response (reasoning span removed, leading
    whitespace trimmed); for cancelled requests it is the partial text
    accumulated before the stop.
    """

    state: GenerationState
    stop_reason: StopReason
    result: GenerationResult
    text: str
    diagnostics: DiagnosticRecord
