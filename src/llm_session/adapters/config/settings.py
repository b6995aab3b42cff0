# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Yakov Shkolnikov and contributors
"""Configuration management using Pydantic Settings.

Two layers:

- ``Settings``: process-wide defaults from environment variables and
  ``.env`` (``LLM_SESSION_*``).
- ``SessionConfig``: the typed per-session configuration. Known keys are
  validated; unknown keys are kept verbatim and passed through to the
  engine.
"""

import json
import logging
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from llm_session.domain.errors import InvalidConfigError
from llm_session.domain.value_objects import TemplatingMode

_logger = logging.getLogger(__name__)

DEFAULT_MAX_NEW_TOKENS = 2048
DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."


class SessionSettings(BaseSettings):
    """Defaults for new sessions."""

    model_config = SettingsConfigDict(
        env_prefix="LLM_SESSION_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    max_new_tokens: int = Field(
        default=DEFAULT_MAX_NEW_TOKENS,
        ge=1,
        description="Step budget per request, prefill included",
    )

    system_prompt: str | None = Field(
        default=DEFAULT_SYSTEM_PROMPT,
        description="System turn placed at the start of every history (None = no system turn)",
    )

    retain_history: bool = Field(
        default=True,
        description="Keep earlier exchanges in the prompt of later requests",
    )

    templating_mode: TemplatingMode = Field(
        default=TemplatingMode.PLAIN,
        description="Prompt formatting policy (plain or reasoning)",
    )

    mmap_dir: str = Field(
        default="",
        description="Directory for engine weight memory-mapping (empty = disabled)",
    )


class LoggingSettings(BaseSettings):
    """Structured logging configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LLM_SESSION_LOG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    json_output: bool = Field(
        default=False,
        description="Render logs as JSON lines instead of console output",
    )


class Settings(BaseSettings):
    """Root settings container.

    Example:
        >>> settings = Settings()
        >>> settings.session.max_new_tokens
        2048
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    session: SessionSettings = Field(default_factory=SessionSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


# Singleton instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create settings singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings (for testing)."""
    global _settings
    _settings = Settings()
    return _settings


class SessionConfig(BaseModel):
    """Typed configuration of one session.

    Keys other than the declared fields are unknown to the session core and
    are forwarded to the engine as they are (see ``engine_overrides``).
    """

    model_config = ConfigDict(extra="allow", validate_assignment=True)

    max_new_tokens: int = Field(default=DEFAULT_MAX_NEW_TOKENS, ge=1)
    system_prompt: str | None = DEFAULT_SYSTEM_PROMPT
    retain_history: bool = True
    templating_mode: TemplatingMode = TemplatingMode.PLAIN
    mmap_dir: str = ""

    @classmethod
    def from_settings(cls, settings: SessionSettings | None = None) -> "SessionConfig":
        settings = settings or get_settings().session
        return cls(**settings.model_dump())

    @property
    def engine_overrides(self) -> dict[str, Any]:
        """Unknown keys, passed through to the engine untouched."""
        return dict(self.model_extra or {})

    def merged(self, overrides: dict[str, Any]) -> "SessionConfig":
        """Return a validated copy with ``overrides`` applied.

        Raises:
            InvalidConfigError: If a known key has an invalid value or the
                templating mode would change.
        """
        data = {**self.model_dump(), **overrides}
        try:
            updated = type(self).model_validate(data)
        except ValidationError as e:
            raise InvalidConfigError(f"Invalid configuration: {e}") from e
        if updated.templating_mode is not self.templating_mode:
            raise InvalidConfigError("templating_mode is fixed for the lifetime of a session")
        return updated

    def engine_config(self) -> dict[str, Any]:
        """Configuration handed to the engine loader.

        Pass-through keys first, then values derived from typed fields:
        memory-mapping from ``mmap_dir``, and in reasoning mode the engine's
        own chat template is disabled because turns carry explicit markers.
        """
        config = self.engine_overrides
        config["max_new_tokens"] = self.max_new_tokens
        config["use_mmap"] = bool(self.mmap_dir)
        if self.mmap_dir:
            config["tmp_path"] = self.mmap_dir
        if self.templating_mode is TemplatingMode.REASONING:
            config["use_template"] = False
            config["precision"] = "high"
        return config


def parse_config_overrides(config_json: str) -> dict[str, Any]:
    """Parse a JSON object of configuration overrides.

    Raises:
        InvalidConfigError: If the text is not JSON or not a JSON object.
    """
    try:
        overrides = json.loads(config_json)
    except (TypeError, json.JSONDecodeError) as e:
        _logger.error(f"Failed to parse config JSON: {e}")
        raise InvalidConfigError(f"Config is not valid JSON: {e}") from e
    if not isinstance(overrides, dict):
        raise InvalidConfigError(f"Config must be a JSON object, got {type(overrides).__name__}")
    return overrides
