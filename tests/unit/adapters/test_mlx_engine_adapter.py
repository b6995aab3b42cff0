# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Yakov Shkolnikov and contributors
"""Unit tests for the MLX engine adapter with the token generator mocked out."""

from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import pytest

pytest.importorskip("mlx_lm")

from llm_session.adapters.outbound import mlx_engine_adapter  # noqa: E402
from llm_session.adapters.outbound.mlx_engine_adapter import MLXEngine, MLXEngineLoader  # noqa: E402
from llm_session.domain.value_objects import ConversationTurn, Role  # noqa: E402

pytestmark = pytest.mark.unit

EOS = 0


class ByteStreamingDetokenizer:
    """Streaming detokenizer double with the mlx-lm interface.

    Holds bytes back until they form complete UTF-8; ``finalize`` flushes
    the remainder with replacement characters.
    """

    def __init__(self, tokenizer: "ByteTokenizer") -> None:
        self._vocab = tokenizer.vocab
        self._unflushed = b""
        self._offset = 0
        self.text = ""
        self.tokens: list[int] = []

    def add_token(self, token: int) -> None:
        self.tokens.append(token)
        self._unflushed += self._vocab[token]
        try:
            self.text += self._unflushed.decode("utf-8")
        except UnicodeDecodeError:
            return
        self._unflushed = b""

    def finalize(self) -> None:
        self.text += self._unflushed.decode("utf-8", errors="replace")
        self._unflushed = b""

    @property
    def last_segment(self) -> str:
        segment = self.text[self._offset :]
        self._offset = len(self.text)
        return segment


class ByteTokenizer:
    """Each token id maps to a fixed byte string."""

    def __init__(self, vocab: dict[int, bytes], chat_template: str | None = None) -> None:
        self.vocab = vocab
        self.chat_template = chat_template
        self.eos_token_ids = {EOS}
        self.apply_chat_template = MagicMock(return_value=[7, 8, 9])
        self.detokenizer = ByteStreamingDetokenizer(self)

    def encode(self, text: str) -> list[int]:
        return [ord(c) for c in text]


@pytest.fixture
def fake_mlx(monkeypatch: pytest.MonkeyPatch) -> dict[str, Any]:
    """Replace mlx_lm generation with a scripted token iterator."""
    calls: dict[str, Any] = {"tokens": []}

    def generate_step(prompt: Any, model: Any, **kwargs: Any) -> Any:
        calls["prompt"] = prompt
        calls["kwargs"] = kwargs
        return iter([(t, None) for t in calls["tokens"]])

    monkeypatch.setattr(mlx_engine_adapter, "generate_step", generate_step)
    monkeypatch.setattr(mlx_engine_adapter, "make_sampler", MagicMock(return_value="sampler"))
    monkeypatch.setattr(mlx_engine_adapter, "mx", SimpleNamespace(array=list, clear_cache=MagicMock()))
    return calls


VOCAB = {EOS: b"", 1: b"Hi", 2: b" \xe4", 3: b"\xbd\xa0", 4: b"!"}
TURNS = [ConversationTurn(Role.SYSTEM, "s"), ConversationTurn(Role.USER, "u")]


class TestStreamingDetokenization:
    def test_incomplete_character_held_back(self, fake_mlx: dict[str, Any]) -> None:
        fake_mlx["tokens"] = [1, 2, 3, 4]
        engine = MLXEngine(object(), ByteTokenizer(VOCAB))
        out: list[bytes] = []

        engine.prefill(TURNS, out.append, "<eop>")

        assert engine.decode_step(1) == 0
        assert out == [b"Hi"]
        assert engine.decode_step(1) == len(" 你".encode())
        engine.decode_step(1)
        assert out == [b"Hi", " 你".encode(), b"!"]

    def test_end_of_turn_flushes_held_back_bytes(self, fake_mlx: dict[str, Any]) -> None:
        fake_mlx["tokens"] = [1, 2, EOS]
        engine = MLXEngine(object(), ByteTokenizer(VOCAB))
        out: list[bytes] = []

        engine.prefill(TURNS, out.append, "<eop>", step_budget=3)

        assert b"".join(out) == "Hi \ufffd".encode() + b"<eop>"

    def test_each_request_gets_its_own_detokenizer(self, fake_mlx: dict[str, Any]) -> None:
        tokenizer = ByteTokenizer(VOCAB)
        engine = MLXEngine(object(), tokenizer)
        first: list[bytes] = []
        second: list[bytes] = []

        fake_mlx["tokens"] = [1, 2]
        engine.prefill(TURNS, first.append, "<eop>", step_budget=2)
        fake_mlx["tokens"] = [4, EOS]
        engine.prefill(TURNS, second.append, "<eop>", step_budget=2)

        assert second == [b"!", b"<eop>"]
        assert tokenizer.detokenizer.tokens == []


class TestMLXEngine:
    def test_prefill_and_decode_write_bytes(self, fake_mlx: dict[str, Any]) -> None:
        fake_mlx["tokens"] = [1, 2, 3, EOS]
        engine = MLXEngine(object(), ByteTokenizer(VOCAB), {"max_new_tokens": 8})
        out: list[bytes] = []

        handle = engine.prefill(TURNS, out.append, "<eop>")
        assert out == [b"Hi"]

        engine.decode_step(1)
        engine.decode_step(1)
        engine.decode_step(1)

        assert b"".join(out) == "Hi 你".encode() + b"<eop>"
        stats = engine.result_snapshot(handle)
        assert stats is not None
        assert stats.generated_tokens == 4
        assert stats.prompt_tokens == len("su")
        assert fake_mlx["kwargs"]["max_tokens"] == 8

    def test_exhausted_generator_ends_turn(self, fake_mlx: dict[str, Any]) -> None:
        fake_mlx["tokens"] = [1]
        engine = MLXEngine(object(), ByteTokenizer(VOCAB))
        out: list[bytes] = []

        engine.prefill(TURNS, out.append, "<eop>")
        engine.decode_step(3)

        assert out == [b"Hi", b"<eop>"]

    def test_chat_template_used_when_enabled(self, fake_mlx: dict[str, Any]) -> None:
        tokenizer = ByteTokenizer(VOCAB, chat_template="{{ messages }}")
        fake_mlx["tokens"] = [EOS]

        MLXEngine(object(), tokenizer).prefill(TURNS, lambda _: None, "<eop>")

        tokenizer.apply_chat_template.assert_called_once_with(
            [{"role": "system", "content": "s"}, {"role": "user", "content": "u"}],
            add_generation_prompt=True,
        )
        assert fake_mlx["prompt"] == [7, 8, 9]

    def test_raw_concatenation_without_template(self, fake_mlx: dict[str, Any]) -> None:
        tokenizer = ByteTokenizer(VOCAB, chat_template="{{ messages }}")
        fake_mlx["tokens"] = [EOS]

        MLXEngine(object(), tokenizer, {"use_template": False}).prefill(TURNS, lambda _: None, "<eop>")

        tokenizer.apply_chat_template.assert_not_called()
        assert fake_mlx["prompt"] == [ord("s"), ord("u")]

    def test_decode_before_prefill(self) -> None:
        with pytest.raises(RuntimeError):
            MLXEngine(object(), ByteTokenizer(VOCAB)).decode_step(1)

    def test_snapshot_of_foreign_handle(self) -> None:
        assert MLXEngine(object(), ByteTokenizer(VOCAB)).result_snapshot(object()) is None

    def test_close_clears_cache(self, fake_mlx: dict[str, Any]) -> None:
        engine = MLXEngine(object(), ByteTokenizer(VOCAB))
        engine.close()
        mlx_engine_adapter.mx.clear_cache.assert_called_once()


class TestMLXEngineLoader:
    def test_load(self, monkeypatch: pytest.MonkeyPatch) -> None:
        tokenizer = ByteTokenizer(VOCAB)
        load = MagicMock(return_value=("model", tokenizer))
        monkeypatch.setattr(mlx_engine_adapter, "load", load)

        engine = MLXEngineLoader().load("models/x", {"temperature": 0.5})

        load.assert_called_once_with("models/x")
        assert isinstance(engine, MLXEngine)
