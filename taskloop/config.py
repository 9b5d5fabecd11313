"""Configuration management for Taskloop."""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.taskloop/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "taskloop.yaml"

DEFAULT_AGENT_SYSTEM_PROMPT = (
    "You are a task-running assistant. Call start_task first to describe the goal "
    "and, for multi-step work, the planned steps. Use the available tools to do the "
    "work, then call complete_task when everything is finished."
)

DEFAULT_CONTINUATION_PROMPT = (
    "You stopped before the task was finished. Continue working on the remaining "
    "steps and call complete_task when you are done."
)

DEFAULT_DIRECT_CHAT_SYSTEM_PROMPT = (
    "You are a helpful assistant. Respond briefly and naturally. For greetings or "
    "simple questions, give a short, friendly reply in 1-2 sentences. Never output "
    "JSON, schemas, or code examples."
)


class ModelConfig(BaseModel):
    """Model configuration."""

    provider: str = "ollama"
    model: str = "llama3.2"
    api_key: str = ""
    base_url: str = ""


class AgentSettings(BaseModel):
    """Agent loop tuning."""

    max_steps: int = 20
    max_tokens: int = 4096
    # Streamed text updates are emitted at most once per interval.
    emit_throttle_ms: int = 80
    max_continuation_attempts: int = Field(default=1, ge=1)
    continuation_prompt: str = DEFAULT_CONTINUATION_PROMPT
    system_prompt: str = DEFAULT_AGENT_SYSTEM_PROMPT
    tool_timeout_seconds: float = 120.0
    request_timeout_seconds: float = 120.0


class DirectChatSettings(BaseModel):
    """Direct chat fast path configuration."""

    max_retries: int = Field(default=3, ge=1)
    initial_retry_delay_ms: int = 1000
    max_tokens: int = 256
    timeout_seconds: float = 60.0
    system_prompt: str = DEFAULT_DIRECT_CHAT_SYSTEM_PROMPT


class MCPServerConfig(BaseModel):
    """Local stdio MCP server entry."""

    name: str
    command: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    enabled: bool = True


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Taskloop."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    agent: AgentSettings = Field(default_factory=AgentSettings)
    direct_chat: DirectChatSettings = Field(default_factory=DirectChatSettings)
    mcp_servers: list[MCPServerConfig] = Field(default_factory=list)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="TASKLOOP_",
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

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML.

        Values set in the file win over ``TASKLOOP_`` env vars; env vars
        only fill in settings the file leaves out.
        """
        return cls.from_yaml(path)

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


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
