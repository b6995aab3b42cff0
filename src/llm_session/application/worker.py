# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Yakov Shkolnikov and contributors
"""GenerationWorker: runs each request on its own worker thread.

Every submission gets a dedicated daemon thread that executes the whole
prefill/decode loop. Unit, completion, error and audio callbacks are
invoked on that thread; marshaling them elsewhere is the caller's job.
``stream()`` does that marshaling for asyncio hosts.

No queueing: a submission made while another one is running fails with
GenerationInProgressError, reported through ``on_error`` and the future.
"""

import asyncio
import itertools
import threading
from collections.abc import AsyncIterator, Callable, Sequence
from concurrent.futures import Future
from dataclasses import replace

import structlog

from llm_session.domain.errors import SessionError
from llm_session.domain.value_objects import ConversationTurn, GenerationOutcome
from llm_session.ports.inbound import GenerationSessionPort, StreamCallbacks

logger = structlog.get_logger(__name__)

_thread_ids = itertools.count(1)


class GenerationWorker:
    """Background execution of session requests.

    Public API:
        submit() / submit_with_history() -- start a request, get a Future.
        stream()                          -- async iterator of text units.
        stop()                            -- cooperative cancellation.
    """

    def __init__(self, session: GenerationSessionPort) -> None:
        self._session = session
        self._thread: threading.Thread | None = None

    @property
    def is_busy(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def submit(
        self, prompt: str, callbacks: StreamCallbacks | None = None
    ) -> "Future[GenerationOutcome]":
        callbacks = callbacks or StreamCallbacks()
        return self._start(lambda: self._session.submit(prompt, callbacks), callbacks)

    def submit_with_history(
        self,
        turns: Sequence[ConversationTurn],
        callbacks: StreamCallbacks | None = None,
    ) -> "Future[GenerationOutcome]":
        callbacks = callbacks or StreamCallbacks()
        snapshot = list(turns)
        return self._start(lambda: self._session.submit_with_history(snapshot, callbacks), callbacks)

    def stop(self) -> None:
        """Request cancellation; the worker observes it within one decode step."""
        self._session.stop_generation()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    async def stream(
        self, prompt: str, callbacks: StreamCallbacks | None = None
    ) -> AsyncIterator[str]:
        """Submit ``prompt`` and yield text units on the running event loop.

        Leaving the iteration early stops the generation. Errors of the
        request are raised from the iterator once queued units are drained.
        """
        loop = asyncio.get_running_loop()
        units: asyncio.Queue[str | None] = asyncio.Queue()
        base = callbacks or StreamCallbacks()

        def hand_off(unit: str | None) -> None:
            # The host may close its loop before the worker observes the stop
            if loop.is_closed():
                return
            try:
                loop.call_soon_threadsafe(units.put_nowait, unit)
            except RuntimeError:
                logger.debug("Event loop closed, dropping streamed unit")

        def on_unit(unit: str) -> bool | None:
            hand_off(unit)
            return base.on_unit(unit) if base.on_unit is not None else None

        future = self.submit(prompt, replace(base, on_unit=on_unit))
        future.add_done_callback(lambda _: hand_off(None))

        try:
            while True:
                unit = await units.get()
                if unit is None:
                    break
                yield unit
        finally:
            if not future.done():
                self.stop()
        await asyncio.wrap_future(future)

    def _start(
        self, fn: Callable[[], GenerationOutcome], callbacks: StreamCallbacks
    ) -> "Future[GenerationOutcome]":
        future: Future[GenerationOutcome] = Future()
        thread = threading.Thread(
            target=self._execute,
            args=(fn, callbacks, future),
            daemon=True,
            name=f"generation-worker-{next(_thread_ids)}",
        )
        self._thread = thread
        thread.start()
        return future

    def _execute(
        self,
        fn: Callable[[], GenerationOutcome],
        callbacks: StreamCallbacks,
        future: "Future[GenerationOutcome]",
    ) -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            outcome = fn()
        except SessionError as e:
            logger.warning(f"Generation failed: {e}", kind=e.kind.value)
            try:
                if callbacks.on_error is not None:
                    callbacks.on_error(e.kind, str(e))
            finally:
                future.set_exception(e)
        except Exception as e:
            logger.error(f"Generation aborted: {e}", exc_info=True)
            future.set_exception(e)
        else:
            future.set_result(outcome)
