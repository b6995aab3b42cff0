# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Yakov Shkolnikov and contributors
"""LlmSession: one conversation bound to one loaded engine.

Owns the session state (history, typed configuration, cancellation and
audio flags) and routes requests through a GenerationController.

Mutation methods (``update_config``, ``set_system_prompt``,
``clear_history``...) are meant to be called between generations. Called
during one, they take effect last-write-wins with no rollback.
"""

import threading
from collections.abc import Callable, Iterable, Sequence
from typing import Any

import structlog

from llm_session.adapters.config.logging import request_context
from llm_session.adapters.config.settings import SessionConfig, parse_config_overrides
from llm_session.application.generation_controller import GenerationController
from llm_session.domain.conversation import ConversationHistory, alternating_turns
from llm_session.domain.errors import EngineFailureError
from llm_session.domain.value_objects import (
    ConversationTurn,
    DiagnosticRecord,
    GenerationOutcome,
    GenerationState,
    Role,
)
from llm_session.ports.inbound import StreamCallbacks
from llm_session.ports.outbound import EngineLoaderPort, EnginePort

logger = structlog.get_logger(__name__)


class LlmSession:
    """Conversational generation session.

    Example:
        >>> session = LlmSession("models/qwen", MLXEngineLoader())
        >>> session.load()
        >>> outcome = session.submit("Hello", StreamCallbacks(on_unit=print))
        >>> outcome.result.generated_tokens
        12
    """

    def __init__(
        self,
        model_path: str,
        loader: EngineLoaderPort,
        config: SessionConfig | None = None,
        history: Iterable[ConversationTurn] = (),
    ) -> None:
        self._model_path = model_path
        self._loader = loader
        self._config = config or SessionConfig.from_settings()
        self._history = ConversationHistory(
            mode=self._config.templating_mode,
            system_prompt=self._config.system_prompt,
            seed=history,
        )
        self._controller = GenerationController(mode=self._config.templating_mode)
        self._engine: EnginePort | None = None
        self._engine_config: dict[str, Any] = self._config.engine_config()
        self._cancel = threading.Event()
        self._audio = threading.Event()
        self.last_diagnostics: DiagnosticRecord | None = None

    @classmethod
    def from_alternating_history(
        cls,
        model_path: str,
        loader: EngineLoaderPort,
        texts: Sequence[str],
        config: SessionConfig | None = None,
    ) -> "LlmSession":
        """Create a session seeded with alternating user/assistant texts."""
        return cls(model_path, loader, config=config, history=alternating_turns(texts))

    # -- lifecycle ---------------------------------------------------------

    def load(self) -> None:
        """Load the engine.

        Raises:
            EngineFailureError: If loading fails; the session stays not ready.
        """
        logger.info(f"Loading engine from {self._model_path}")
        try:
            self._engine = self._loader.load(self._model_path, dict(self._engine_config))
        except Exception as e:
            self._engine = None
            logger.error(f"Engine load failed: {e}", exc_info=True)
            raise EngineFailureError(f"Failed to load {self._model_path}: {e}") from e
        logger.info("Engine loaded", model_path=self._model_path)

    def release(self) -> None:
        """Drop the engine; later submissions fail with SessionNotReadyError."""
        engine, self._engine = self._engine, None
        close = getattr(engine, "close", None)
        if close is not None:
            close()
        logger.info("Engine released", model_path=self._model_path)

    @property
    def is_ready(self) -> bool:
        return self._engine is not None

    @property
    def state(self) -> GenerationState:
        return self._controller.state

    # -- generation --------------------------------------------------------

    def submit(self, prompt: str, callbacks: StreamCallbacks | None = None) -> GenerationOutcome:
        """Generate a reply to ``prompt`` and record the exchange in history.

        With ``retain_history`` off, history is cut back to the system turn
        first. The user turn and the reply are stored only if the request
        completes; cancelled or failed requests leave history as it was.
        """
        history = self._history

        def render() -> list[ConversationTurn]:
            if not self._config.retain_history:
                history.reset_to_system_only()
            return history.render(prompt)

        def commit(text: str) -> None:
            history.commit(Role.USER, prompt)
            history.commit(Role.ASSISTANT, text)

        logger.debug(f"Submitting prompt ({len(prompt)} chars), history={len(history)} turns")
        return self._generate(render, callbacks, commit)

    def submit_with_history(
        self,
        turns: Sequence[ConversationTurn],
        callbacks: StreamCallbacks | None = None,
    ) -> GenerationOutcome:
        """Generate from a caller-managed turn list.

        Turns are sent verbatim; stored history is neither read nor changed.
        """
        snapshot = list(turns)
        logger.debug(f"Submitting full history of {len(snapshot)} turns")
        return self._generate(lambda: snapshot, callbacks, None)

    def _generate(
        self,
        render: Callable[[], Sequence[ConversationTurn]],
        callbacks: StreamCallbacks | None,
        on_completed: Callable[[str], None] | None,
    ) -> GenerationOutcome:
        with request_context(self._model_path):
            outcome = self._controller.run(
                self._engine,
                render,
                callbacks,
                max_new_tokens=self._config.max_new_tokens,
                cancel_event=self._cancel,
                audio_event=self._audio,
                on_completed=on_completed,
            )
        self.last_diagnostics = outcome.diagnostics
        return outcome

    def stop_generation(self) -> None:
        """Request cancellation of the running generation (any thread)."""
        self._cancel.set()

    def enable_audio_output(self, enable: bool) -> None:
        """Toggle audio synthesis after completed generations (any thread)."""
        if enable:
            self._audio.set()
        else:
            self._audio.clear()

    @property
    def audio_output_enabled(self) -> bool:
        return self._audio.is_set()

    # -- configuration -----------------------------------------------------

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def max_new_tokens(self) -> int:
        return self._config.max_new_tokens

    def set_max_new_tokens(self, max_new_tokens: int) -> None:
        self._apply_config(self._config.merged({"max_new_tokens": max_new_tokens}))

    def update_config(self, config_json: str) -> None:
        """Merge a JSON object of overrides into the configuration.

        Known keys are validated and take effect on the session; every key
        is also merged into the engine configuration. ``"system_prompt":
        null`` removes the system turn from history.

        Raises:
            InvalidConfigError: Malformed payload or invalid value; nothing
                changes.
        """
        overrides = parse_config_overrides(config_json)
        updated = self._config.merged(overrides)
        if "system_prompt" in overrides:
            if updated.system_prompt is None:
                self._history.drop_system_prompt()
            else:
                self._history.replace_system_prompt(updated.system_prompt)
        self._apply_config(updated, overrides)

    def set_assistant_prompt(self, assistant_prompt: str) -> None:
        """Set the engine's assistant prompt template."""
        self._push_engine_config({"assistant_prompt_template": assistant_prompt})

    def _apply_config(self, updated: SessionConfig, overrides: dict[str, Any] | None = None) -> None:
        self._config = updated
        engine_config = updated.engine_config()
        if overrides:
            engine_config.update(overrides)
        self._push_engine_config(engine_config)

    def _push_engine_config(self, changes: dict[str, Any]) -> None:
        self._engine_config.update(changes)
        if self._engine is not None:
            self._engine.set_config(dict(self._engine_config))
            logger.debug("Engine config updated", keys=sorted(changes))
        else:
            logger.debug("Engine not loaded yet, config saved for later", keys=sorted(changes))

    # -- history -----------------------------------------------------------

    @property
    def history(self) -> tuple[ConversationTurn, ...]:
        return self._history.turns

    @property
    def system_prompt(self) -> str | None:
        return self._history.system_prompt

    def set_system_prompt(self, system_prompt: str) -> None:
        """Replace the system turn in place (inserted if absent)."""
        self._history.replace_system_prompt(system_prompt)
        self._config = self._config.merged({"system_prompt": system_prompt})

    def reset(self) -> None:
        """Cut history back to the system turn."""
        self._history.reset_to_system_only()

    def clear_history(self, keep: int | None = None) -> None:
        """Drop history and the last request's diagnostics.

        Args:
            keep: Number of leading turns to keep. Defaults to keeping only
                the system turn.
        """
        if keep is None:
            self._history.reset_to_system_only()
        else:
            self._history.truncate(keep)
        if self._history.system_prompt != self._config.system_prompt:
            self._config = self._config.merged({"system_prompt": self._history.system_prompt})
        self.last_diagnostics = None

    # -- diagnostics -------------------------------------------------------

    def debug_info(self) -> str:
        """Prompt and raw response of the last request on this session."""
        return (self.last_diagnostics or DiagnosticRecord()).describe()
