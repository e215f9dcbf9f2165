"""
Tests for configuration loading and validation.
"""

import os

import pytest

from step_orchestrator.config import (
    DEFAULT_ERROR_MESSAGE,
    EnvConfig,
    LLMConfig,
    OrchestratorConfig,
    RateLimitConfig,
)
from step_orchestrator.utils.exceptions import ConfigurationError

KEY_VARS = ("LLM_API_KEY", "ANTHROPIC_API_KEY")


@pytest.fixture
def no_api_keys(monkeypatch):
    for key in KEY_VARS:
        monkeypatch.delenv(key, raising=False)


class TestOrchestratorConfig:
    """OrchestratorConfig defaults, validation and serialization."""

    def test_defaults(self):
        config = OrchestratorConfig()

        assert config.max_steps_per_run == 50
        assert config.allow_replan is True
        assert config.default_step_type == "next-step"
        assert config.error_message == DEFAULT_ERROR_MESSAGE
        assert config.llm is None
        assert config.recursion_limit == 50 * 4 + 10

    @pytest.mark.parametrize("overrides", [
        {"max_steps_per_run": 0},
        {"event_history_size": -1},
        {"default_step_type": ""},
    ])
    def test_invalid_values(self, overrides):
        with pytest.raises(ConfigurationError) as exc_info:
            OrchestratorConfig(**overrides)

        assert exc_info.value.error_code == "CONFIG_ERROR"

    def test_from_dict_builds_nested_sections(self):
        config = OrchestratorConfig.from_dict({
            "max_steps_per_run": 10,
            "rate_limit": {"requests_per_minute": 30},
            "llm": {"api_key": "test-key", "temperature": 0.5},
        })

        assert config.max_steps_per_run == 10
        assert isinstance(config.rate_limit, RateLimitConfig)
        assert config.rate_limit.requests_per_minute == 30
        assert isinstance(config.llm, LLMConfig)
        assert config.llm.temperature == 0.5

    def test_to_dict_hides_api_key(self):
        config = OrchestratorConfig(llm=LLMConfig(api_key="test-key"))

        assert "api_key" not in config.to_dict()["llm"]
        assert config.to_dict(include_secrets=True)["llm"]["api_key"] == "test-key"

    def test_from_env(self, monkeypatch, no_api_keys):
        monkeypatch.setenv("AGENT_MAX_STEPS_PER_RUN", "7")
        monkeypatch.setenv("AGENT_ALLOW_REPLAN", "false")
        monkeypatch.setenv("AGENT_DEFAULT_STEP_TYPE", "respond")
        monkeypatch.setenv("AGENT_ERROR_MESSAGE", "Oops")
        monkeypatch.setenv("LLM_RATE_LIMIT_RPM", "12")

        config = OrchestratorConfig.from_env()

        assert config.max_steps_per_run == 7
        assert config.allow_replan is False
        assert config.default_step_type == "respond"
        assert config.error_message == "Oops"
        assert config.rate_limit.requests_per_minute == 12
        assert config.llm is None

    def test_from_env_builds_llm_when_key_present(self, monkeypatch, no_api_keys):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
        monkeypatch.setenv("AGENT_LLM_TEMPERATURE", "0.7")

        config = OrchestratorConfig.from_env()

        assert config.llm.api_key == "sk-test"
        assert config.llm.temperature == 0.7


class TestLLMConfig:
    """LLM section validation."""

    def test_missing_api_key(self, no_api_keys):
        with pytest.raises(ConfigurationError):
            LLMConfig()

    def test_key_falls_back_to_environment(self, monkeypatch, no_api_keys):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-fallback")

        assert LLMConfig().api_key == "sk-fallback"

    def test_generic_key_wins(self, monkeypatch, no_api_keys):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-fallback")
        monkeypatch.setenv("LLM_API_KEY", "sk-generic")

        assert LLMConfig().api_key == "sk-generic"

    @pytest.mark.parametrize("overrides", [
        {"temperature": 2.5},
        {"provider": "openai"},
    ])
    def test_invalid_values(self, overrides):
        with pytest.raises(ConfigurationError):
            LLMConfig(api_key="test-key", **overrides)

    def test_negative_rate_limit(self):
        with pytest.raises(ConfigurationError):
            RateLimitConfig(requests_per_minute=-1)


class TestEnvConfig:
    """Typed environment getters."""

    def test_getters(self, monkeypatch):
        monkeypatch.setenv("SO_TEST_BOOL", "yes")
        monkeypatch.setenv("SO_TEST_INT", "12")
        monkeypatch.setenv("SO_TEST_BAD_INT", "twelve")
        monkeypatch.setenv("SO_TEST_FLOAT", "0.25")
        monkeypatch.setenv("SO_TEST_JSON", '{"a": 1}')

        assert EnvConfig.get_bool("SO_TEST_BOOL") is True
        assert EnvConfig.get_bool("SO_TEST_MISSING", default=True) is True
        assert EnvConfig.get_int("SO_TEST_INT") == 12
        assert EnvConfig.get_int("SO_TEST_BAD_INT", 3) == 3
        assert EnvConfig.get_float("SO_TEST_FLOAT") == 0.25
        assert EnvConfig.get_json("SO_TEST_JSON") == {"a": 1}
        assert EnvConfig.get("SO_TEST_MISSING", "fallback") == "fallback"

    def test_check_required(self, monkeypatch):
        monkeypatch.setenv("SO_TEST_PRESENT", "1")
        monkeypatch.delenv("SO_TEST_ABSENT", raising=False)

        assert EnvConfig.check_required("SO_TEST_PRESENT") is True
        assert EnvConfig.check_required("SO_TEST_PRESENT", "SO_TEST_ABSENT") is False

    def test_load_env_file(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("SO_TEST_FROM_FILE=loaded\n")

        assert EnvConfig.load_env_file(str(env_file)) is True
        assert EnvConfig.get("SO_TEST_FROM_FILE") == "loaded"
        assert EnvConfig.load_env_file(str(tmp_path / "missing.env")) is False
        os.environ.pop("SO_TEST_FROM_FILE", None)
