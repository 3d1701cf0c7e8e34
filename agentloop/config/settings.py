"""
Application settings and configuration management.

Uses Pydantic Settings for validation and environment variable support.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LLMSettings(BaseSettings):
    """LLM API configuration."""

    model: str = Field(
        default="ollama/llama3.2",
        description="LiteLLM model string, e.g. 'ollama/llama3.2', 'openai/gpt-4o', "
                    "'anthropic/claude-3-5-sonnet-20241022'. The provider prefix tells "
                    "LiteLLM which API to route the request to.",
    )
    max_tokens: int = Field(default=2048, description="Maximum tokens in response")
    temperature: float = Field(default=0.3, description="Sampling temperature")
    api_key: str = Field(default="", description="API key for the model's provider")
    api_base: str | None = Field(
        default=None,
        description="Override the provider endpoint (e.g. http://localhost:11434 for Ollama)",
    )
    request_timeout: float = Field(
        default=60.0, description="Per-request timeout in seconds for a single model call"
    )
    supported_tools: list[str] | None = Field(
        default=None,
        description="Tool names this model handles well. None exposes every registered tool. "
                    "Set via LLM__SUPPORTED_TOOLS='[\"list_files\",\"read_file\"]'",
    )

    model_config = SettingsConfigDict(env_prefix="LLM_")


class AgentSettings(BaseSettings):
    """Agentic loop policy knobs."""

    max_iterations: int = Field(
        default=10, ge=1, description="Hard cap on tool-executing iterations per turn"
    )
    min_iterations: int = Field(
        default=2,
        ge=0,
        description="Iterations an exploration request runs before the loop accepts "
                    "a tool-free answer as final",
    )
    turn_timeout: float = Field(
        default=120.0, gt=0, description="Wall-clock budget in seconds for one full turn"
    )
    single_tool_per_step: bool = Field(
        default=True,
        description="Execute only the first tool call of a response and ask the model "
                    "to proceed one tool at a time",
    )
    completion_phrases: list[str] = Field(
        default_factory=lambda: [
            "task complete",
            "all done",
            "finished successfully",
            "completed successfully",
        ],
        description="Lower-case phrases that mark the model's answer as final",
    )
    exploration_keywords: list[str] = Field(
        default_factory=lambda: ["explore"],
        description="User-message keywords that mark a turn as open-ended exploration",
    )
    encourage_exploration: bool = Field(
        default=True,
        description="Nudge the model once to keep using tools on exploration requests",
    )
    project_context_paths: list[Path] = Field(
        default_factory=lambda: [Path("AGENTLOOP.md")],
        description="Candidate paths for a static project-context document; the first "
                    "existing file is appended to the system prompt",
    )

    model_config = SettingsConfigDict(env_prefix="AGENT_")


class ContextSettings(BaseSettings):
    """Context window construction."""

    max_messages: int = Field(default=30, ge=1, description="History messages kept per call")
    thinking_keep: int = Field(
        default=5, ge=0, description="Thinking messages older than this many positions are dropped"
    )
    status_keep: int = Field(
        default=10, ge=0, description="Status messages older than this many positions are dropped"
    )
    compress_threshold: int = Field(
        default=200, ge=1, description="Tool outputs at or above this length are summarized"
    )
    max_context_tokens: int | None = Field(
        default=None,
        description="Optional tiktoken budget for the history. None means message count only.",
    )
    encoding_name: str = Field(default="cl100k_base", description="Tiktoken encoding name")

    model_config = SettingsConfigDict(env_prefix="CONTEXT_")


class BreakerSettings(BaseSettings):
    """Default circuit breaker thresholds."""

    max_failures: int = Field(default=5, ge=1, description="Consecutive failures before tripping")
    reset_timeout: float = Field(
        default=60.0, gt=0, description="Seconds an open breaker waits before a trial call"
    )
    half_open_max: int = Field(
        default=3, ge=1, description="Trial successes needed to close a half-open breaker"
    )

    model_config = SettingsConfigDict(env_prefix="BREAKER_")


class StreamSettings(BaseSettings):
    """Streaming event delivery."""

    chunk_size: int = Field(default=50, ge=1, description="Characters per chunk event")
    chunk_delay: float = Field(
        default=0.02, ge=0, description="Pause between chunk events, purely cosmetic"
    )
    tool_output_limit: int = Field(
        default=500, ge=1, description="Characters of tool output included in a tool event"
    )

    model_config = SettingsConfigDict(env_prefix="STREAM_")


class StorageSettings(BaseSettings):
    """Conversation persistence."""

    backend: Literal["memory", "json"] = Field(
        default="memory", description="Conversation store implementation"
    )
    data_path: str = Field(
        default="data/conversations", description="Directory used by the json store"
    )

    model_config = SettingsConfigDict(env_prefix="STORAGE_")


class ToolSettings(BaseSettings):
    """Tool configuration."""

    workspace_root: str | None = Field(
        default=None,
        description="Root directory for the built-in list_files/read_file tools. "
                    "If unset, the file tools are not registered.",
    )
    mcp_server_command: str | None = Field(
        default=None,
        description="Executable that starts an MCP server over stdio (e.g. 'node'). "
                    "If set, every tool the server lists is registered.",
    )
    mcp_server_args: list[str] = Field(
        default_factory=list, description="Arguments passed to the MCP server command"
    )

    model_config = SettingsConfigDict(env_prefix="TOOL_")


class ServerSettings(BaseSettings):
    """HTTP server configuration."""

    host: str = Field(default="127.0.0.1", description="Bind address")
    port: int = Field(default=8000, description="Bind port")

    model_config = SettingsConfigDict(env_prefix="SERVER_")


class Settings(BaseSettings):
    """Main application settings."""

    # Environment
    environment: Literal["development", "production"] = Field(
        default="development", description="Deployment environment"
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    log_file: Path | None = Field(default=None, description="Log file path")

    # Sub-configurations
    llm: LLMSettings = Field(default_factory=LLMSettings)
    agent: AgentSettings = Field(default_factory=AgentSettings)
    context: ContextSettings = Field(default_factory=ContextSettings)
    breaker: BreakerSettings = Field(default_factory=BreakerSettings)
    stream: StreamSettings = Field(default_factory=StreamSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    tools: ToolSettings = Field(default_factory=ToolSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def load_settings(env_file: str | Path | None = None) -> Settings:
    """
    Load settings from file and environment.

    Args:
        env_file: Path to .env file (optional)

    Returns:
        Loaded settings instance
    """
    global _settings
    if env_file:
        _settings = Settings(_env_file=env_file)
    else:
        _settings = Settings()
    return _settings
