"""Configuration management for the code agent."""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from ..errors import invalid_input

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".code_agent"

# Environment variables consulted for each provider's API key, in order
PROVIDER_KEY_ENV: Dict[str, Tuple[str, ...]] = {
    "gemini": ("GOOGLE_API_KEY", "GEMINI_API_KEY"),
    "openai": ("OPENAI_API_KEY",),
    "anthropic": ("ANTHROPIC_API_KEY",),
    "local": (),
}


class LLMConfig(BaseModel):
    """Configuration for LLM providers."""
    provider: str = Field(default="gemini", description="LLM provider (gemini, openai, anthropic, local)")
    model: Optional[str] = Field(default=None, description="Model name; provider default when unset")
    api_key: Optional[str] = Field(default=None, description="API key")
    base_url: Optional[str] = Field(default=None, description="Custom base URL")
    max_tokens: int = Field(default=4096, gt=0, description="Maximum tokens per response")
    temperature: float = Field(default=0.1, ge=0, le=2, description="Sampling temperature")


class SessionConfig(BaseModel):
    """Where and under which identity sessions are stored."""
    db_path: Path = Field(default=DEFAULT_CONFIG_DIR / "sessions.db", description="SQLite database file")
    app_name: str = Field(default="code_agent", min_length=1)
    user_id: str = Field(default="user", min_length=1)
    default_session: str = Field(default="default", min_length=1, description="Session opened on start")


class AgentConfig(BaseModel):
    """Main agent configuration."""

    # Core settings
    name: str = Field(default="CodeAgent", description="Agent name")

    llm: LLMConfig = Field(default_factory=LLMConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)

    # Loop settings
    max_iterations: int = Field(default=25, gt=0, description="Model calls allowed per turn")
    model_timeout: float = Field(default=120.0, gt=0, description="Seconds to wait for one model call")
    tool_timeout: float = Field(default=300.0, gt=0, description="Default command timeout in seconds")
    parallel_tools: bool = Field(default=False, description="Run independent tool calls concurrently")
    streaming: bool = Field(default=True, description="Stream model responses")
    max_history_events: Optional[int] = Field(default=None, gt=0, description="Events replayed into the prompt")

    # Tool settings
    working_directory: Optional[Path] = Field(default=None, description="Tool sandbox root; cwd when unset")
    max_file_size: int = Field(default=1_000_000, gt=0, description="Max file size to read or write (bytes)")

    # Interface settings
    verbose: bool = Field(default=False, description="Verbose output")


class ConfigManager:
    """Manages configuration loading and saving."""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = Path(config_path) if config_path else DEFAULT_CONFIG_DIR / "config.yaml"
        self._config: Optional[AgentConfig] = None

    def load_from_dict(self, data: Optional[Dict[str, Any]]) -> AgentConfig:
        """Validate a raw mapping into an AgentConfig."""
        try:
            return AgentConfig.model_validate(data or {})
        except ValidationError as e:
            raise invalid_input(f"bad configuration: {e}")

    def load_config(self) -> AgentConfig:
        """Load configuration from file (or defaults) and apply env overrides."""
        if self._config is not None:
            return self._config

        data: Dict[str, Any] = {}
        if self.config_path.exists():
            try:
                with open(self.config_path, "r") as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise invalid_input(f"could not read config {self.config_path}: {e}").with_context(
                    "path", self.config_path
                )
            logger.debug("Loaded configuration from %s", self.config_path)

        self._config = self.load_from_dict(data)
        self._apply_env_overrides(self._config)
        return self._config

    def save_config(self) -> None:
        """Save current configuration to file."""
        if self._config is None:
            return

        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        data = self._config.model_dump(mode="json", exclude={"llm": {"api_key"}})
        with open(self.config_path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False)

    @staticmethod
    def _env_key(provider: str) -> Optional[str]:
        for var in PROVIDER_KEY_ENV.get(provider, ()):
            value = os.getenv(var)
            if value:
                return value
        return None

    def _apply_env_overrides(self, config: AgentConfig) -> None:
        """Apply environment variable overrides."""
        llm = config.llm

        if os.getenv("LLM_PROVIDER"):
            llm.provider = os.getenv("LLM_PROVIDER").lower()
        elif not llm.api_key and not self._env_key(llm.provider):
            # Pick the first provider that has a key available
            for provider in ("gemini", "openai", "anthropic"):
                if self._env_key(provider):
                    llm.provider = provider
                    break

        key = self._env_key(llm.provider)
        if key:
            llm.api_key = key

        if os.getenv("LLM_MODEL"):
            llm.model = os.getenv("LLM_MODEL")

        if os.getenv("LLM_BASE_URL"):
            llm.base_url = os.getenv("LLM_BASE_URL")

        if os.getenv("CODE_AGENT_DB"):
            config.session.db_path = Path(os.getenv("CODE_AGENT_DB")).expanduser()

        if os.getenv("CODE_AGENT_MAX_ITERATIONS"):
            raw = os.getenv("CODE_AGENT_MAX_ITERATIONS")
            try:
                value = int(raw)
            except ValueError:
                value = 0
            if value <= 0:
                raise invalid_input(f"CODE_AGENT_MAX_ITERATIONS must be a positive integer, got {raw!r}")
            config.max_iterations = value

    @property
    def config(self) -> AgentConfig:
        """Get current configuration."""
        if self._config is None:
            self.load_config()
        return self._config

    def update_config(self, **kwargs) -> AgentConfig:
        """Update top-level configuration values and save."""
        current = self.config
        unknown = [key for key in kwargs if key not in AgentConfig.model_fields]
        if unknown:
            raise invalid_input(f"unknown configuration keys: {', '.join(unknown)}")

        data = current.model_dump()
        data.update(kwargs)
        self._config = self.load_from_dict(data)
        self.save_config()
        return self._config


# Global config manager instance
config_manager = ConfigManager()
