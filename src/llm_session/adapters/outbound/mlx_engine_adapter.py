# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Yakov Shkolnikov and contributors
"""MLX implementation of EnginePort and EngineLoaderPort.

Runs generation one token at a time through ``mlx_lm.generate_step`` on
Apple Silicon. Tokens go through a per-request copy of the tokenizer's
streaming detokenizer, and each step writes the newly completed text to
the sink as UTF-8 bytes.

Recognized engine config keys:
    use_template (bool, default True): apply the tokenizer chat template.
        False concatenates turn contents (reasoning-mode turns already
        carry their markers).
    temperature (float, default 0.0), top_p (float, default 0.0): sampling.
    max_new_tokens (int): upper bound for the token generator.
    max_kv_size (int | None): rotating KV cache size.
Other keys are accepted and ignored.
"""

import logging
import time
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any

import mlx.core as mx
from mlx_lm import load
from mlx_lm.generate import generate_step
from mlx_lm.sample_utils import make_sampler

from llm_session.domain.value_objects import ConversationTurn, EngineStats
from llm_session.ports.outbound import ByteSink

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 2048


@dataclass
class MLXRequest:
    """Result handle for one request."""

    prompt_tokens: int
    generated_tokens: int = 0
    prefill_us: int = 0
    decode_us: int = 0
    finished: bool = False
    tokens: Iterator[tuple[Any, Any]] | None = field(default=None, repr=False)
    detokenizer: Any = field(default=None, repr=False)

    def stats(self) -> EngineStats:
        return EngineStats(
            prompt_tokens=self.prompt_tokens,
            generated_tokens=self.generated_tokens,
            prefill_us=self.prefill_us,
            decode_us=self.decode_us,
        )


class MLXEngine:
    """Step-wise MLX generation engine.

    Not reentrant: one request at a time, as the session guarantees.
    """

    def __init__(self, model: Any, tokenizer: Any, config: dict[str, Any] | None = None) -> None:
        self._model = model
        self._tokenizer = tokenizer
        self._config: dict[str, Any] = dict(config or {})
        self._request: MLXRequest | None = None
        self._sink: ByteSink | None = None
        self._end_marker = b""

    def set_config(self, config: dict[str, Any]) -> None:
        self._config = dict(config)
        logger.debug(f"MLX engine config: {sorted(self._config)}")

    def prefill(
        self,
        turns: Sequence[ConversationTurn],
        sink: ByteSink,
        end_marker: str,
        step_budget: int = 1,
    ) -> MLXRequest:
        prompt = self._encode(turns)
        sampler = make_sampler(
            temp=float(self._config.get("temperature", 0.0)),
            top_p=float(self._config.get("top_p", 0.0)),
        )
        # New detokenizer per request; the tokenizer's own instance is shared state
        detokenizer_class = type(self._tokenizer.detokenizer)
        request = MLXRequest(prompt_tokens=len(prompt), detokenizer=detokenizer_class(self._tokenizer))
        request.tokens = generate_step(
            mx.array(prompt),
            self._model,
            max_tokens=int(self._config.get("max_new_tokens", DEFAULT_MAX_TOKENS)),
            sampler=sampler,
            max_kv_size=self._config.get("max_kv_size"),
        )
        self._request = request
        self._sink = sink
        self._end_marker = end_marker.encode("utf-8")

        t0 = time.perf_counter()
        self._advance()
        request.prefill_us = int((time.perf_counter() - t0) * 1_000_000)
        logger.info(f"[PREFILL] {request.prompt_tokens} prompt tokens in {request.prefill_us / 1000:.0f}ms")

        if step_budget > 1:
            self.decode_step(step_budget - 1)
        return request

    def decode_step(self, n: int = 1) -> int:
        request = self._request
        if request is None:
            raise RuntimeError("decode_step called before prefill")
        t0 = time.perf_counter()
        written = 0
        for _ in range(n):
            written += self._advance()
        request.decode_us += int((time.perf_counter() - t0) * 1_000_000)
        return written

    def result_snapshot(self, handle: Any) -> EngineStats | None:
        if not isinstance(handle, MLXRequest):
            return None
        return handle.stats()

    def close(self) -> None:
        self._request = None
        self._sink = None
        mx.clear_cache()
        logger.debug("MLX: Cache cleared")

    def _advance(self) -> int:
        request = self._request
        if request is None or request.tokens is None or self._sink is None:
            raise RuntimeError("No active request; call prefill first")
        if request.finished:
            return 0

        try:
            token, _ = next(request.tokens)
        except StopIteration:
            return self._finish(request)

        token = int(token)
        request.generated_tokens += 1
        if token in self._tokenizer.eos_token_ids:
            return self._finish(request)

        request.detokenizer.add_token(token)
        return self._write(request.detokenizer.last_segment)

    def _finish(self, request: MLXRequest) -> int:
        """Flush held-back text, then mark the end of the turn."""
        request.finished = True
        request.detokenizer.finalize()
        written = self._write(request.detokenizer.last_segment)
        assert self._sink is not None
        self._sink(self._end_marker)
        return written + len(self._end_marker)

    def _write(self, segment: str) -> int:
        if not segment:
            return 0
        data = segment.encode("utf-8")
        assert self._sink is not None
        self._sink(data)
        return len(data)

    def _encode(self, turns: Sequence[ConversationTurn]) -> list[int]:
        use_template = bool(self._config.get("use_template", True))
        if use_template and getattr(self._tokenizer, "chat_template", None):
            messages = [{"role": turn.role.value, "content": turn.content} for turn in turns]
            return list(self._tokenizer.apply_chat_template(messages, add_generation_prompt=True))
        text = "".join(turn.content for turn in turns)
        return list(self._tokenizer.encode(text))


class MLXEngineLoader:
    """Loads MLX models from a local path or HuggingFace model ID."""

    def load(self, model_path: str, config: dict[str, Any]) -> MLXEngine:
        logger.info(f"Loading model: {model_path}")
        model, tokenizer = load(model_path)
        logger.info(f"Model loaded: {model_path}")
        return MLXEngine(model, tokenizer, config)
