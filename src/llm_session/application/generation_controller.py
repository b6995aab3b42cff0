# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Yakov Shkolnikov and contributors
"""GenerationController: drives one request through prefill and decode.

State machine::

    IDLE -> PREFILLING -> DECODING -> COMPLETED | CANCELLED | FAILED -> IDLE

The prefill call generates the first token and counts as step 1. Each
following step is one ``engine.decode_step(1)`` call. The loop stops when
the cancellation event is set, when the decoder emits the end-of-turn
sentinel, or once ``max_new_tokens`` steps have been issued.

Output bytes are collected by the sink during an engine call and decoded
right after it returns, so every unit reaches ``on_unit`` within the step
that produced it, and callback exceptions surface here rather than inside
the engine.

Architecture layer: application service.
No infrastructure imports; the engine is reached through EnginePort.
"""

import threading
from collections.abc import Callable, Iterable, Sequence
from typing import Any

import structlog

from llm_session.application.metrics import MetricsCollector
from llm_session.domain.conversation import END_OF_TURN, render_text, visible_response
from llm_session.domain.errors import (
    EngineFailureError,
    GenerationInProgressError,
    SessionNotReadyError,
)
from llm_session.domain.stream_decoder import Utf8StreamDecoder
from llm_session.domain.value_objects import (
    ConversationTurn,
    DiagnosticRecord,
    GenerationOutcome,
    GenerationState,
    StopReason,
    TemplatingMode,
)
from llm_session.ports.inbound import StreamCallbacks
from llm_session.ports.outbound import AudioEnginePort, EnginePort

logger = structlog.get_logger(__name__)


class GenerationController:
    """Runs generation requests against a non-reentrant engine.

    One request at a time: a second ``run`` while one is in flight fails
    immediately with GenerationInProgressError. Nothing is queued.
    """

    def __init__(
        self,
        mode: TemplatingMode = TemplatingMode.PLAIN,
        end_marker: str = END_OF_TURN,
    ) -> None:
        self._mode = mode
        self._end_marker = end_marker
        self._busy = threading.Lock()
        self._state = GenerationState.IDLE
        self.last_state = GenerationState.IDLE

    @property
    def state(self) -> GenerationState:
        return self._state

    @property
    def end_marker(self) -> str:
        return self._end_marker

    def run(
        self,
        engine: EnginePort | None,
        render: Callable[[], Sequence[ConversationTurn]],
        callbacks: StreamCallbacks | None = None,
        *,
        max_new_tokens: int,
        cancel_event: threading.Event,
        audio_event: threading.Event | None = None,
        on_completed: Callable[[str], None] | None = None,
    ) -> GenerationOutcome:
        """Execute one request end to end.

        Args:
            engine: Loaded engine, or None if the session is not ready.
            render: Produces the turn sequence once the request is admitted.
            callbacks: Host hooks; all optional.
            max_new_tokens: Step budget, prefill included.
            cancel_event: Shared stop flag; cleared on entry.
            audio_event: When set, audio is synthesized after completion.
            on_completed: Receives the visible response of a completed
                request before ``on_complete`` fires (history commit).

        Returns:
            GenerationOutcome of a completed or cancelled request.

        Raises:
            SessionNotReadyError: Engine is None. No state change.
            GenerationInProgressError: Another request is running. No state change.
            EngineFailureError: Engine raised; nothing is committed.
        """
        if engine is None:
            raise SessionNotReadyError("Engine is not loaded")
        if not self._busy.acquire(blocking=False):
            raise GenerationInProgressError("A generation is already running on this session")
        try:
            cancel_event.clear()
            outcome = self._run(
                engine,
                render(),
                callbacks or StreamCallbacks(),
                max_new_tokens,
                cancel_event,
                audio_event,
                on_completed,
            )
            self.last_state = outcome.state
            return outcome
        except Exception:
            self.last_state = GenerationState.FAILED
            raise
        finally:
            self._state = GenerationState.IDLE
            self._busy.release()

    def _run(
        self,
        engine: EnginePort,
        turns: Sequence[ConversationTurn],
        callbacks: StreamCallbacks,
        max_new_tokens: int,
        cancel_event: threading.Event,
        audio_event: threading.Event | None,
        on_completed: Callable[[str], None] | None,
    ) -> GenerationOutcome:
        decoder = Utf8StreamDecoder(sentinel=self._end_marker)
        metrics = MetricsCollector()
        chunks: list[bytes] = []
        response: list[str] = []
        ended = False

        def deliver(units: Iterable[str]) -> None:
            nonlocal ended
            for unit in units:
                if ended or cancel_event.is_set():
                    return
                if unit == self._end_marker:
                    ended = True
                    return
                response.append(unit)
                if callbacks.on_unit is not None and callbacks.on_unit(unit):
                    logger.debug("Stop requested by unit callback")
                    cancel_event.set()

        def drain() -> None:
            while chunks:
                deliver(decoder.feed(chunks.pop(0)))

        prompt_text = render_text(turns)
        logger.debug(f"Prefilling {len(turns)} turns, max_new_tokens={max_new_tokens}")

        self._state = GenerationState.PREFILLING
        handle = self._engine_call(engine.prefill, turns, chunks.append, self._end_marker, step_budget=1)
        steps = 1
        metrics.observe(self._engine_call(engine.result_snapshot, handle))

        self._state = GenerationState.DECODING
        drain()
        while not cancel_event.is_set() and not ended and steps < max_new_tokens:
            self._engine_call(engine.decode_step, 1)
            steps += 1
            metrics.observe(self._engine_call(engine.result_snapshot, handle))
            drain()

        cancelled = cancel_event.is_set()
        if not ended and not cancelled:
            deliver(decoder.flush())
            cancelled = cancel_event.is_set()

        raw = "".join(response)
        diagnostics = DiagnosticRecord(prompt_text=prompt_text, response_text=raw)

        if cancelled:
            self._state = GenerationState.CANCELLED
            logger.info(f"Generation cancelled after {steps} steps")
            return GenerationOutcome(
                state=GenerationState.CANCELLED,
                stop_reason=StopReason.CANCELLED,
                result=metrics.finalize(),
                text=raw,
                diagnostics=diagnostics,
            )

        stop_reason = StopReason.END_OF_TURN if ended else StopReason.MAX_TOKENS
        text = visible_response(raw, self._mode)
        if on_completed is not None:
            on_completed(text)

        if audio_event is not None and audio_event.is_set():
            self._synthesize_audio(engine, callbacks, cancel_event, audio_event)
            metrics.observe(self._engine_call(engine.result_snapshot, handle))

        self._state = GenerationState.COMPLETED
        result = metrics.finalize()
        logger.info(
            "Generation completed",
            stop_reason=stop_reason.value,
            steps=steps,
            prompt_tokens=result.prompt_tokens,
            generated_tokens=result.generated_tokens,
        )
        if callbacks.on_complete is not None:
            callbacks.on_complete(result)
        return GenerationOutcome(
            state=GenerationState.COMPLETED,
            stop_reason=stop_reason,
            result=result,
            text=text,
            diagnostics=diagnostics,
        )

    def _synthesize_audio(
        self,
        engine: EnginePort,
        callbacks: StreamCallbacks,
        cancel_event: threading.Event,
        audio_event: threading.Event,
    ) -> None:
        if not isinstance(engine, AudioEnginePort):
            logger.debug("Audio output enabled but engine cannot synthesize audio")
            return

        def audio_sink(samples: Sequence[float], is_final: bool) -> bool:
            if not audio_event.is_set() or cancel_event.is_set():
                return False
            if callbacks.on_audio_samples is None:
                return False
            return bool(callbacks.on_audio_samples(samples, is_final))

        self._engine_call(engine.synthesize_audio, audio_sink)

    def _engine_call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            self._state = GenerationState.FAILED
            logger.error(f"Engine call {getattr(fn, '__name__', fn)!s} failed: {e}", exc_info=True)
            raise EngineFailureError(f"Engine failure: {e}") from e
