# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Yakov Shkolnikov and contributors
"""Unit tests for Pydantic settings and the per-session configuration model.

Covers loading from environment variables, validation of known keys,
pass-through of unknown keys, and the engine configuration derived from
typed fields.
"""

import pytest

from llm_session.adapters.config.settings import (
    DEFAULT_MAX_NEW_TOKENS,
    DEFAULT_SYSTEM_PROMPT,
    LoggingSettings,
    SessionConfig,
    SessionSettings,
    get_settings,
    parse_config_overrides,
    reload_settings,
)
from llm_session.domain.errors import InvalidConfigError
from llm_session.domain.value_objects import TemplatingMode

pytestmark = pytest.mark.unit


class TestSessionSettings:
    def test_default_values(self) -> None:
        settings = SessionSettings()

        assert settings.max_new_tokens == DEFAULT_MAX_NEW_TOKENS == 2048
        assert settings.system_prompt == DEFAULT_SYSTEM_PROMPT
        assert settings.retain_history is True
        assert settings.templating_mode is TemplatingMode.PLAIN
        assert settings.mmap_dir == ""

    def test_load_from_env_vars(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LLM_SESSION_MAX_NEW_TOKENS", "128")
        monkeypatch.setenv("LLM_SESSION_RETAIN_HISTORY", "false")
        monkeypatch.setenv("LLM_SESSION_TEMPLATING_MODE", "reasoning")

        settings = SessionSettings()

        assert settings.max_new_tokens == 128
        assert settings.retain_history is False
        assert settings.templating_mode is TemplatingMode.REASONING

    def test_validation_max_new_tokens_ge_1(self) -> None:
        with pytest.raises(ValueError, match="greater than or equal to 1"):
            SessionSettings(max_new_tokens=0)


class TestLoggingSettings:
    def test_defaults(self) -> None:
        settings = LoggingSettings()
        assert settings.level == "INFO"
        assert settings.json_output is False

    def test_rejects_unknown_level(self) -> None:
        with pytest.raises(ValueError):
            LoggingSettings(level="VERBOSE")  # type: ignore[arg-type]

    def test_env_prefix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LLM_SESSION_LOG_LEVEL", "DEBUG")
        assert LoggingSettings().level == "DEBUG"


class TestSettingsSingleton:
    def test_get_settings_is_cached(self) -> None:
        assert get_settings() is get_settings()

    def test_reload_picks_up_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        before = get_settings()
        monkeypatch.setenv("LLM_SESSION_MAX_NEW_TOKENS", "7")

        after = reload_settings()

        assert after is not before
        assert get_settings().session.max_new_tokens == 7


class TestSessionConfig:
    def test_from_settings(self) -> None:
        config = SessionConfig.from_settings(SessionSettings(max_new_tokens=9, system_prompt=None))
        assert config.max_new_tokens == 9
        assert config.system_prompt is None

    def test_unknown_keys_pass_through(self) -> None:
        config = SessionConfig.model_validate({"max_new_tokens": 4, "temperature": 0.3, "backend_type": "cpu"})
        assert config.engine_overrides == {"temperature": 0.3, "backend_type": "cpu"}

    def test_merged_returns_validated_copy(self) -> None:
        config = SessionConfig()
        updated = config.merged({"max_new_tokens": 12, "top_k": 40})

        assert updated.max_new_tokens == 12
        assert updated.engine_overrides == {"top_k": 40}
        assert config.max_new_tokens == DEFAULT_MAX_NEW_TOKENS

    @pytest.mark.parametrize("overrides", [{"max_new_tokens": -1}, {"max_new_tokens": "many"}])
    def test_merged_rejects_invalid_values(self, overrides: dict[str, object]) -> None:
        with pytest.raises(InvalidConfigError):
            SessionConfig().merged(overrides)

    def test_templating_mode_is_fixed(self) -> None:
        with pytest.raises(InvalidConfigError, match="templating_mode"):
            SessionConfig().merged({"templating_mode": "reasoning"})

    def test_same_templating_mode_accepted(self) -> None:
        config = SessionConfig(templating_mode=TemplatingMode.REASONING)
        assert config.merged({"templating_mode": "reasoning"}).templating_mode is TemplatingMode.REASONING


class TestEngineConfig:
    def test_plain_defaults(self) -> None:
        config = SessionConfig().engine_config()

        assert config == {"max_new_tokens": DEFAULT_MAX_NEW_TOKENS, "use_mmap": False}

    def test_mmap_dir_enables_mmap(self) -> None:
        config = SessionConfig(mmap_dir="/tmp/weights").engine_config()

        assert config["use_mmap"] is True
        assert config["tmp_path"] == "/tmp/weights"

    def test_reasoning_disables_engine_template(self) -> None:
        config = SessionConfig(templating_mode=TemplatingMode.REASONING).engine_config()

        assert config["use_template"] is False
        assert config["precision"] == "high"

    def test_passthrough_keys_included(self) -> None:
        config = SessionConfig.model_validate({"temperature": 0.1}).engine_config()
        assert config["temperature"] == 0.1


class TestParseConfigOverrides:
    def test_object(self) -> None:
        assert parse_config_overrides('{"a": 1}') == {"a": 1}

    @pytest.mark.parametrize("payload", ["", "{", "null", "3", '"text"', "[]"])
    def test_rejects_non_objects(self, payload: str) -> None:
        with pytest.raises(InvalidConfigError):
            parse_config_overrides(payload)
