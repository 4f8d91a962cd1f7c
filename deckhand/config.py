"""Configuration management for Deckhand."""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from deckhand.exceptions import ConfigurationError


# Paths
DEFAULT_CONFIG_PATH = Path("~/.deckhand/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.deckhand/sessions.db").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"

# Provider name -> conventional API key environment variable.
PROVIDER_API_KEY_ENV = {
    "groq": "GROQ_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "openai": "OPENAI_API_KEY",
}


class ModelConfig(BaseModel):
    """Model configuration."""

    class AllowedModelConfig(BaseModel):
        """Allowed model entry for live per-session selection."""

        id: str
        provider: str
        model: str
        base_url: str = ""
        context_window: int | None = None
        tpm_limit: int | None = None

    provider: str = "groq"
    model: str = "qwen-2.5-coder-32b"
    temperature: float = 0.2
    max_tokens: int = 8192
    api_key: str = ""
    base_url: str = ""
    context_window: int | None = None
    tpm_limit: int | None = None
    allowed: list[AllowedModelConfig] = Field(default_factory=list)


class ContextConfig(BaseModel):
    """Context budget configuration."""

    default_context_window: int = 32768
    headroom_ratio: float = 0.8
    truncate_threshold_chars: int = 800
    truncate_keep_chars: int = 200
    prune_keep_tail: int = 8
    summary_max_chars: int = 48000
    summary_max_tokens: int = 2048


class AgentConfig(BaseModel):
    """Orchestration loop configuration."""

    max_depth: int = 15
    transcript_save_limit: int = 100


class ProcessConfig(BaseModel):
    """Process supervisor configuration."""

    foreground_timeout: float = 15.0
    stop_grace_seconds: float = 3.0
    preview_chars: int = 300
    stop_output_max_chars: int = 8000
    send_input_wait: float = 1.5
    logs_tail_lines: int = 50


class ToolsConfig(BaseModel):
    """Tools configuration."""

    dangerous: list[str] = [
        "run_command",
        "write_file",
        "stop_process",
        "send_input",
    ]
    # Patterns with whitespace match whole segments, others match the base command.
    blocked_commands: list[str] = [
        r"rm -rf /$",
        r"rm -rf /\*",
        r"rm -rf ~$",
        "mkfs",
        r"dd if=\S+ of=/dev/",
    ]
    read_max_bytes: int = 200_000
    fetch_max_chars: int = 50_000
    fetch_timeout: float = 30.0


class SessionConfig(BaseModel):
    """Session persistence configuration."""

    path: str = str(DEFAULT_DB_PATH)
    resume_window_seconds: int = 7200


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "WARNING"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Deckhand."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    process: ProcessConfig = Field(default_factory=ProcessConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="DECKHAND_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        try:
            with open(config_path, encoding="utf-8") as f:
                data: dict[str, Any] = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"{config_path} must contain a mapping")

        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration in {config_path}: {e}") from e

    @classmethod
    def load(cls) -> "Config":
        """Load configuration, then fill a missing API key from the provider's env var."""
        config = cls.from_yaml()
        config.apply_env_api_key()
        return config

    def apply_env_api_key(self) -> None:
        """Use the conventional provider key variable when no key is configured."""
        if self.model.api_key:
            return
        env_name = PROVIDER_API_KEY_ENV.get(self.model.provider.strip().lower())
        if env_name:
            self.model.api_key = os.environ.get(env_name, "")

    def find_allowed_model(self, selector: str) -> ModelConfig.AllowedModelConfig | None:
        """Find an allowed model entry by id or model name."""
        key = str(selector or "").strip()
        if not key:
            return None
        for entry in self.model.allowed:
            if key in (entry.id, entry.model):
                return entry
        return None

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH

        # Ensure directory exists
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(mode="json", exclude_none=True)

        with open(config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
