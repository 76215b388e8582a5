"""Sync agent configuration.

The agent runs inside the preview VM image, so it is configured purely from
environment variables (SYNC_AGENT_ prefix).
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AgentSettings(BaseSettings):
    """Sync agent settings."""

    model_config = SettingsConfigDict(
        env_prefix="SYNC_AGENT_",
        case_sensitive=False,
    )

    host: str = "0.0.0.0"
    port: int = 3001

    # Project root inside the VM; every snapshot path is relative to it
    project_root: str = "/app"

    # Dev server and dependency installer, run with project_root as cwd
    dev_command: list[str] = Field(default_factory=lambda: ["npm", "run", "dev"])
    install_command: list[str] = Field(default_factory=lambda: ["npm", "install"])

    # Files whose content decides whether dependencies must be reinstalled
    manifest_files: list[str] = Field(default_factory=lambda: ["package.json"])

    # Upper bound for one install run; the installer is killed past it
    install_timeout: float = 300.0

    # Ask the dev server for colored output even though stdout is not a TTY
    force_color: bool = True


@lru_cache
def get_agent_settings() -> AgentSettings:
    """Get cached agent settings."""
    return AgentSettings()
