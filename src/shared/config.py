"""Configuration management for the task orchestrator.

Supports YAML configuration files and environment variable overrides.
Configuration is loaded once and cached for performance.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LLMSettings(BaseSettings):
    """LLM provider configuration."""
    provider: str = Field(default="openai", description="LLM provider: openai, azure_openai, mock")
    model: str = Field(default="gpt-4o-mini", description="Model name")
    api_key: Optional[str] = Field(default=None, description="API key")
    api_base: Optional[str] = Field(default=None, description="API base URL")
    api_version: Optional[str] = Field(default="2024-02-15-preview", description="API version")
    deployment_name: Optional[str] = Field(default=None, description="Azure deployment name")
    temperature: float = Field(default=0.7, ge=0, le=2)
    max_tokens: int = Field(default=4096, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="LLM_",
        env_file=".env",
        extra="ignore"
    )


class ToolHostSettings(BaseSettings):
    """Tool host (MCP server) connection configuration."""
    transport: Literal["stdio", "http"] = Field(default="stdio")

    # stdio: the host is spawned as a child process
    command: str = Field(default="npx")
    args: list[str] = Field(default_factory=lambda: ["@browsermcp/mcp@latest"])
    env: Optional[dict[str, str]] = Field(default=None)
    cwd: Optional[str] = Field(default=None)

    # http: the host is already running
    url: str = Field(default="http://localhost:3000/mcp")
    headers: dict[str, str] = Field(default_factory=dict)

    request_timeout_seconds: float = Field(default=60.0, gt=0)
    connect_attempts: int = Field(default=3, ge=1)

    client_name: str = Field(default="task-agent")
    client_version: str = Field(default="0.1.0")

    model_config = SettingsConfigDict(
        env_prefix="TOOL_HOST_",
        env_file=".env",
        extra="ignore"
    )


class AgentSettings(BaseSettings):
    """Conversation loop configuration."""
    max_steps: int = Field(default=20, gt=0, description="Dispatch cycles before giving up")
    tool_choice: str = Field(default="auto")
    system_prompt: Optional[str] = Field(default=None, description="Override the built-in prompt")

    model_config = SettingsConfigDict(
        env_prefix="AGENT_",
        env_file=".env",
        extra="ignore"
    )


class ServerSettings(BaseSettings):
    """HTTP host configuration."""
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    model_config = SettingsConfigDict(
        env_prefix="SERVER_",
        env_file=".env",
        extra="ignore"
    )


class Settings(BaseSettings):
    """Main application settings."""
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Component settings
    llm: LLMSettings = Field(default_factory=LLMSettings)
    tool_host: ToolHostSettings = Field(default_factory=ToolHostSettings)
    agent: AgentSettings = Field(default_factory=AgentSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        extra="ignore"
    )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file."""
        return cls(**load_yaml_config(path))


def load_yaml_config(path: str | Path) -> dict[str, Any]:
    """Load a YAML configuration file."""
    path = Path(path)
    if not path.exists():
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    config_path = os.environ.get("AGENT_CONFIG_PATH", "config/settings.yaml")
    return Settings.from_yaml(config_path)
