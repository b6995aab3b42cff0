"""Pytest configuration and shared fixtures.

This module defines:
- Test markers (unit, property)
- A scripted fake engine implementing EnginePort
- Fixtures for loaders and sessions built on it
"""

import os
from collections.abc import Callable, Iterator, Sequence
from typing import Any
from unittest.mock import MagicMock

import pytest
import structlog

from llm_session.adapters.config.settings import SessionConfig, reload_settings
from llm_session.application.session import LlmSession
from llm_session.domain.value_objects import ConversationTurn, EngineStats

END = b"<eop>"


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "unit: Fast unit tests with fake engine ports (no MLX dependencies)",
    )
    config.addinivalue_line(
        "markers",
        "property: Hypothesis property-based tests",
    )


class ScriptedEngine:
    """EnginePort double that replays one byte chunk per step.

    ``prefill`` writes ``steps[0]``; the n-th ``decode_step`` call writes
    ``steps[n]``. Steps past the end of the script write nothing. Counters
    are cumulative per handle, like a real engine's.
    """

    PREFILL_US = 500
    DECODE_US = 20

    def __init__(self, steps: Sequence[bytes] = (), fail_on_step: int | None = None) -> None:
        self.steps = list(steps)
        self.fail_on_step = fail_on_step
        self.prefill_calls: list[list[ConversationTurn]] = []
        self.end_markers: list[str] = []
        self.decode_calls = 0
        self.configs: list[dict[str, Any]] = []
        self.closed = False
        self._sink: Callable[[bytes], None] | None = None
        self._step = 0
        self._handle = 0
        self._stats = EngineStats()
        self.on_step: Callable[[int], None] | None = None

    def prefill(
        self,
        turns: Sequence[ConversationTurn],
        sink: Callable[[bytes], None],
        end_marker: str,
        step_budget: int = 1,
    ) -> int:
        self.prefill_calls.append(list(turns))
        self.end_markers.append(end_marker)
        self._sink = sink
        self._step = 0
        self._handle += 1
        self._stats = EngineStats(prompt_tokens=len(turns), prefill_us=self.PREFILL_US)
        self._write_step()
        return self._handle

    def decode_step(self, n: int = 1) -> int:
        written = 0
        for _ in range(n):
            self.decode_calls += 1
            self._stats = EngineStats(
                prompt_tokens=self._stats.prompt_tokens,
                generated_tokens=self._stats.generated_tokens,
                prefill_us=self._stats.prefill_us,
                decode_us=self._stats.decode_us + self.DECODE_US,
            )
            written += self._write_step()
        return written

    def result_snapshot(self, handle: Any) -> EngineStats | None:
        if handle != self._handle:
            return None
        return self._stats

    def set_config(self, config: dict[str, Any]) -> None:
        self.configs.append(dict(config))

    def close(self) -> None:
        self.closed = True

    def _write_step(self) -> int:
        index = self._step
        self._step += 1
        if self.fail_on_step is not None and index == self.fail_on_step:
            raise RuntimeError(f"engine crashed at step {index}")
        self._stats = EngineStats(
            prompt_tokens=self._stats.prompt_tokens,
            generated_tokens=self._stats.generated_tokens + 1,
            prefill_us=self._stats.prefill_us,
            decode_us=self._stats.decode_us,
        )
        if self.on_step is not None:
            self.on_step(index)
        if index >= len(self.steps):
            return 0
        assert self._sink is not None
        self._sink(self.steps[index])
        return len(self.steps[index])


class AudioScriptedEngine(ScriptedEngine):
    """ScriptedEngine that also synthesizes a fixed waveform."""

    def __init__(self, steps: Sequence[bytes] = (), chunks: int = 3) -> None:
        super().__init__(steps)
        self.chunks = chunks
        self.audio_calls = 0

    def synthesize_audio(self, sink: Callable[[Sequence[float], bool], bool]) -> None:
        self.audio_calls += 1
        for i in range(self.chunks):
            if not sink([0.1 * i, -0.1 * i], i == self.chunks - 1):
                return


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep environment variables of the developer machine out of tests."""
    for name in list(os.environ):
        if name.startswith("LLM_SESSION_"):
            monkeypatch.delenv(name)
    reload_settings()


@pytest.fixture
def scripted_engine() -> ScriptedEngine:
    return ScriptedEngine([b"Hel", b"lo", END])


@pytest.fixture
def fake_loader(scripted_engine: ScriptedEngine) -> MagicMock:
    """Fake EngineLoaderPort returning ``scripted_engine``."""
    loader = MagicMock()
    loader.load.return_value = scripted_engine
    return loader


@pytest.fixture
def session_config() -> SessionConfig:
    return SessionConfig(max_new_tokens=16)


@pytest.fixture
def loaded_session(fake_loader: MagicMock, session_config: SessionConfig) -> LlmSession:
    session = LlmSession("models/fake", fake_loader, config=session_config)
    session.load()
    return session


@pytest.fixture(autouse=True)
def _reset_structlog() -> Iterator[None]:
    """Undo configure_logging() so loggers never cache a test's capture stream."""
    yield
    structlog.reset_defaults()
