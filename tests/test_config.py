"""
Tests for onboarding.config
===========================
"""

import pytest
from pydantic import ValidationError

from onboarding import config
from onboarding.services.exceptions import ConfigurationError
from onboarding.services.models import SessionConfig


class TestEnvHelpers:

    def test_env_int_default_when_unset(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("SOME_INT", raising=False)
        assert config._env_int("SOME_INT", 7) == 7

    def test_env_int_parses(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SOME_INT", "4")
        assert config._env_int("SOME_INT", 7) == 4

    def test_env_int_invalid(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SOME_INT", "four")
        with pytest.raises(ConfigurationError) as exc_info:
            config._env_int("SOME_INT", 7)
        assert exc_info.value.context["config_key"] == "SOME_INT"

    def test_env_float_empty_uses_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SOME_FLOAT", "")
        assert config._env_float("SOME_FLOAT", 1.5) == 1.5

    def test_env_float_invalid(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SOME_FLOAT", "fast")
        with pytest.raises(ConfigurationError):
            config._env_float("SOME_FLOAT", 1.5)


class TestDefaultSessionConfig:

    def test_uses_module_defaults(self) -> None:
        cfg = config.default_session_config()
        assert isinstance(cfg, SessionConfig)
        assert cfg.max_concurrent == config.MAX_CONCURRENT_INSTALLS
        assert cfg.retry_budget == config.AUTO_RETRY_COUNT
        assert cfg.retry_delay_seconds == config.RETRY_DELAY_SECONDS
        assert cfg.intelligent_ordering is True

    def test_overrides_are_merged(self) -> None:
        cfg = config.default_session_config({"max_concurrent": 1, "self_healing": False})
        assert cfg.max_concurrent == 1
        assert cfg.self_healing is False
        assert cfg.retry_budget == config.AUTO_RETRY_COUNT

    def test_unknown_key_rejected(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            config.default_session_config({"max_workers": 4})
        assert exc_info.value.errors()[0]["type"] == "extra_forbidden"

    def test_misspelled_key_rejected_on_model(self) -> None:
        with pytest.raises(ValidationError):
            SessionConfig(max_concurent=2)

    def test_interval_overrides_accepted(self) -> None:
        cfg = config.default_session_config({"progress_interval_seconds": 0.5, "health_check_interval_seconds": 5})
        assert cfg.progress_interval_seconds == 0.5
        assert cfg.health_check_interval_seconds == 5

    def test_invalid_value_rejected(self) -> None:
        with pytest.raises(ValidationError):
            config.default_session_config({"max_concurrent": 0})

    def test_negative_retry_budget_rejected(self) -> None:
        with pytest.raises(ValidationError):
            config.default_session_config({"retry_budget": -1})
