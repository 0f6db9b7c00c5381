"""Configuration management for the MCP agent bridge.

Supports YAML configuration files and environment variable overrides.
Configuration is loaded once and cached for performance. MCP server
definitions can also be read from an ``mcpServers`` map in a JSON or YAML
file, the format used by most MCP hosts.
"""

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from shared.models import TransportType


class LLMSettings(BaseSettings):
    """LLM provider configuration."""
    provider: str = Field(default="openai", description="LLM provider: azure_openai, openai, mock")
    model: str = Field(default="gpt-4.1", description="Model name")
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


class MCPServerSettings(BaseSettings):
    """Connection settings for a single MCP server."""
    name: str = Field(default="default", description="Server name used in logs")
    transport_type: TransportType = Field(default=TransportType.STREAMABLE_HTTP)

    # streamable-http / sse
    server_url: Optional[str] = Field(default=None)
    headers: dict[str, str] = Field(default_factory=dict)

    # stdio
    command: Optional[str] = Field(default=None, description="Executable that starts the server")
    args: list[str] = Field(default_factory=list)
    env: Optional[dict[str, str]] = Field(default=None)
    cwd: Optional[str] = Field(default=None)

    timeout_seconds: Optional[float] = Field(default=30.0, gt=0, description="Per-call transport timeout")
    auto_load_capabilities: bool = Field(default=True)

    # Identity advertised during the handshake
    client_name: str = Field(default="mcp-agent-bridge")
    client_version: str = Field(default="0.1.0")

    model_config = SettingsConfigDict(
        env_prefix="MCP_SERVER_",
        env_file=".env",
        extra="ignore"
    )


class AgentSettings(BaseSettings):
    """Orchestration loop and sampling configuration."""
    system: Optional[str] = Field(default=None, description="System message")
    max_tokens: Optional[int] = Field(default=None, gt=0)
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    top_p: Optional[float] = Field(default=None, ge=0, le=1)
    top_k: Optional[int] = Field(default=None, gt=0)
    presence_penalty: Optional[float] = Field(default=None)
    frequency_penalty: Optional[float] = Field(default=None)
    stop_sequences: Optional[list[str]] = Field(default=None)
    seed: Optional[int] = Field(default=None)
    headers: Optional[dict[str, str]] = Field(default=None)

    max_steps: int = Field(default=5, gt=0, description="Maximum model rounds per run")
    max_retries: int = Field(default=2, ge=0, description="Retries per model call")
    model_timeout_seconds: Optional[float] = Field(default=None, gt=0)
    include_resources: bool = Field(default=True, description="Prefix prompts with loaded resources")

    model_config = SettingsConfigDict(
        env_prefix="AGENT_",
        env_file=".env",
        extra="ignore"
    )


class Settings(BaseSettings):
    """Main application settings."""
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Service
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    # Component settings
    llm: LLMSettings = Field(default_factory=LLMSettings)
    mcp_server: MCPServerSettings = Field(default_factory=MCPServerSettings)
    agent: AgentSettings = Field(default_factory=AgentSettings)

    model_config = SettingsConfigDict(
        env_prefix="MCP_",
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


def load_server_configs(path: str | Path) -> dict[str, MCPServerSettings]:
    """
    Load MCP server definitions from an ``mcpServers`` map.

    Entries with a ``command`` use the stdio transport; entries with a
    ``url`` use streamable HTTP unless ``transport`` says otherwise.

    Args:
        path: JSON or YAML file containing an ``mcpServers`` mapping

    Returns:
        Server settings keyed by server name; empty if the file is missing
    """
    path = Path(path)
    if not path.exists():
        return {}

    with open(path) as f:
        if path.suffix == ".json":
            data = json.load(f)
        else:
            data = yaml.safe_load(f) or {}

    servers: dict[str, MCPServerSettings] = {}
    for name, entry in (data.get("mcpServers") or {}).items():
        entry = dict(entry or {})
        if "transport" in entry:
            transport = TransportType(entry.pop("transport"))
        elif entry.get("command"):
            transport = TransportType.STDIO
        else:
            transport = TransportType.STREAMABLE_HTTP

        url = entry.pop("url", None)
        servers[name] = MCPServerSettings(
            name=name,
            transport_type=transport,
            server_url=entry.pop("server_url", None) or url,
            **entry
        )

    return servers


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    config_path = os.environ.get("MCP_CONFIG_PATH", "config/settings.yaml")
    return Settings.from_yaml(config_path)
