"""Environment-bound configuration objects.

Settings are loaded from environment variables (and an optional ``.env``
file) through Pydantic BaseSettings. Each group has its own prefix:

- ``TASKRELAY_ENGINE_*``: task engine deadlines and policy
- ``TASKRELAY_RPC_*``: RPC bridge deadlines
- ``TASKRELAY_STATE_*``: state store retention and persistence
- ``TASKRELAY_SERVER_*``: websocket server binding
- ``TASKRELAY_LOG_*``: logging

Example:
    from taskrelay.config.settings import get_settings

    settings = get_settings()
    deadline = settings.engine.approval_timeout

Components never call ``get_settings()`` themselves; they receive a
``Settings`` instance through their constructors.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Task engine deadlines and approval policy.

    All deadlines are in seconds and are part of the deployed contract:
    - approval_timeout: how long a tool call waits for approval before the
      task is cancelled with an ``approval_timeout`` step (default: 300)
    - tool_timeout: default execution deadline for a tool invocation when the
      tool does not declare its own (default: 120)
    - cancel_grace_period: how long an in-flight invocation gets to
      acknowledge an abort before the task is forced to ``cancelled`` (default: 5)
    - max_steps: hard limit on history length per task (default: 200)
    """

    approval_timeout: float = Field(default=300.0, gt=0)
    tool_timeout: float = Field(default=120.0, gt=0)
    cancel_grace_period: float = Field(default=5.0, gt=0)
    max_steps: int = Field(default=200, ge=2, le=10_000)
    auto_approve_tools: List[str] = Field(default_factory=list)

    model_config = SettingsConfigDict(
        env_prefix="TASKRELAY_ENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class RpcSettings(BaseSettings):
    """RPC bridge deadlines."""

    unary_deadline: float = Field(default=30.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="TASKRELAY_RPC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class StateSettings(BaseSettings):
    """State store retention and persistence.

    - state_dir: when set, durable classes are persisted as JSON files in
      this directory; otherwise everything lives in memory
    - ephemeral_ttl: retention for ephemeral entries in seconds, 0 disables
    - history_limit: number of archived task summaries kept
    """

    state_dir: Optional[str] = None
    ephemeral_ttl: float = Field(default=0.0, ge=0)
    history_limit: int = Field(default=50, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="TASKRELAY_STATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class ServerSettings(BaseSettings):
    """WebSocket server binding and session housekeeping."""

    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)
    session_idle_timeout: float = Field(default=300.0, gt=0)
    sweep_interval: float = Field(default=60.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="TASKRELAY_SERVER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class LoggingSettings(BaseSettings):
    """Structured logging output."""

    level: str = "INFO"
    format: str = "json"
    service_name: str = "taskrelay"

    model_config = SettingsConfigDict(
        env_prefix="TASKRELAY_LOG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class Settings(BaseSettings):
    """Root settings, grouping every component's configuration."""

    engine: EngineSettings = Field(default_factory=EngineSettings)
    rpc: RpcSettings = Field(default_factory=RpcSettings)
    state: StateSettings = Field(default_factory=StateSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the settings used by the server entry point."""
    return Settings()
