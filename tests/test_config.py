"""Tests for configuration loading."""

from pathlib import Path

import pytest
import yaml

from code_agent.errors import AgentError, ErrorCode
from code_agent.utils.config import AgentConfig, ConfigManager


@pytest.fixture
def manager(tmp_path, clean_environment):
    return ConfigManager(tmp_path / "config.yaml")


class TestDefaults:
    """Configuration without a file."""

    def test_defaults(self, manager):
        config = manager.config
        assert config.llm.provider == "gemini"
        assert config.max_iterations == 25
        assert config.parallel_tools is False
        assert config.session.default_session == "default"

    def test_load_from_dict_validation_error(self, manager):
        with pytest.raises(AgentError) as exc_info:
            manager.load_from_dict({"max_iterations": 0})
        assert exc_info.value.code == ErrorCode.INVALID_INPUT


class TestFile:
    """YAML file round trip."""

    def test_load_yaml(self, manager):
        manager.config_path.write_text(yaml.safe_dump({
            "max_iterations": 7,
            "llm": {"provider": "openai", "model": "gpt-4o-mini"},
            "session": {"app_name": "demo"},
        }))
        config = manager.load_config()
        assert config.max_iterations == 7
        assert config.llm.model == "gpt-4o-mini"
        assert config.session.app_name == "demo"

    def test_malformed_yaml(self, manager):
        manager.config_path.write_text("llm: [unclosed\n")
        with pytest.raises(AgentError) as exc_info:
            manager.load_config()
        assert exc_info.value.code == ErrorCode.INVALID_INPUT

    def test_update_and_save_excludes_api_key(self, manager, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-secret")
        manager.config
        manager.update_config(max_iterations=9)

        saved = yaml.safe_load(manager.config_path.read_text())
        assert saved["max_iterations"] == 9
        assert "api_key" not in saved["llm"]

    def test_update_unknown_key(self, manager):
        with pytest.raises(AgentError) as exc_info:
            manager.update_config(colour="blue")
        assert exc_info.value.code == ErrorCode.INVALID_INPUT


class TestEnvironment:
    """Environment variable overrides."""

    def test_explicit_provider_and_key(self, manager, monkeypatch):
        monkeypatch.setenv("LLM_PROVIDER", "Anthropic")
        monkeypatch.setenv("ANTHROPIC_API_KEY", "ak-test")
        monkeypatch.setenv("LLM_MODEL", "claude-sonnet-4-5")

        config = manager.config
        assert config.llm.provider == "anthropic"
        assert config.llm.api_key == "ak-test"
        assert config.llm.model == "claude-sonnet-4-5"

    def test_provider_picked_from_available_key(self, manager, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        config = manager.config
        assert config.llm.provider == "openai"
        assert config.llm.api_key == "sk-test"

    def test_gemini_key_alias(self, manager, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "g-test")
        assert manager.config.llm.api_key == "g-test"

    def test_database_path(self, manager, monkeypatch, tmp_path):
        monkeypatch.setenv("CODE_AGENT_DB", str(tmp_path / "agent.db"))
        assert manager.config.session.db_path == tmp_path / "agent.db"

    def test_max_iterations(self, manager, monkeypatch):
        monkeypatch.setenv("CODE_AGENT_MAX_ITERATIONS", "4")
        assert manager.config.max_iterations == 4

    @pytest.mark.parametrize("raw", ["0", "-2", "many"])
    def test_bad_max_iterations(self, manager, monkeypatch, raw):
        monkeypatch.setenv("CODE_AGENT_MAX_ITERATIONS", raw)
        with pytest.raises(AgentError) as exc_info:
            manager.load_config()
        assert exc_info.value.code == ErrorCode.INVALID_INPUT


def test_agent_config_paths():
    config = AgentConfig(working_directory="project")
    assert config.working_directory == Path("project")
