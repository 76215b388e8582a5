"""Preview orchestrator configuration management.

Settings come from an optional YAML file, ``PREVIEW_*`` environment variables
(nested with ``__``) and the defaults below. Values in the YAML file win over
the environment for the keys they set.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000


class DatabaseConfig(BaseModel):
    """Database configuration."""

    url: str = "sqlite+aiosqlite:///./preview.db"
    echo: bool = False


class SessionConfig(BaseModel):
    """Preview session lifetime and timeouts (seconds)."""

    ttl_seconds: int = 1800  # 30 minutes
    extend_seconds: int = 1800

    # Whole start sequence: VM, agent readiness and first push
    start_timeout_seconds: float = 120.0
    sync_timeout_seconds: float = 60.0
    update_timeout_seconds: float = 30.0

    # Part of the start budget spent polling the agent's /health
    ready_timeout_seconds: float = 90.0

    # Consecutive agent failures before the health sweep probes a session
    failure_threshold: int = 3


class StaticProvisionerConfig(BaseModel):
    """A single pre-provisioned VM (local development, tests)."""

    vm_id: str = "static-vm"
    sync_url: str = "http://127.0.0.1:3001"
    preview_url: str = "http://127.0.0.1:5173"
    address: str | None = "127.0.0.1"


class FlyProvisionerConfig(BaseModel):
    """Fly Machines provisioner configuration."""

    api_base: str = "https://api.machines.dev/v1"
    app_name: str = "preview-vms"
    api_token: str | None = None

    region: str = "arn"
    image: str = "registry.fly.io/preview-base:latest"
    cpus: int = 1
    memory_mb: int = 512

    # Ports inside the VM
    sync_port: int = 3001
    preview_port: int = 5173

    machine_start_timeout_seconds: float = 60.0
    poll_interval_seconds: float = 1.0


class ProvisionerConfig(BaseModel):
    """VM provisioner configuration."""

    type: Literal["static", "fly"] = "static"
    static: StaticProvisionerConfig = Field(default_factory=StaticProvisionerConfig)
    fly: FlyProvisionerConfig = Field(default_factory=FlyProvisionerConfig)


class ContentConfig(BaseModel):
    """Content store configuration.

    The directory store reads ``<root_path>/<workspace_id>/**`` as the
    workspace's current snapshot.
    """

    root_path: str = "/var/lib/preview/workspaces"

    # Files larger than this are skipped when building a snapshot
    max_file_bytes: int = 1024 * 1024


class SweepTaskConfig(BaseModel):
    """Sweep task-specific configuration."""

    enabled: bool = True


class SweepConfig(BaseModel):
    """Background sweep configuration."""

    enabled: bool = True
    run_on_startup: bool = True
    interval_seconds: int = 60

    # Per-task configuration
    expired_session: SweepTaskConfig = Field(default_factory=SweepTaskConfig)
    unhealthy_session: SweepTaskConfig = Field(default_factory=SweepTaskConfig)


class Settings(BaseSettings):
    """Preview orchestrator settings."""

    model_config = SettingsConfigDict(
        env_prefix="PREVIEW_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    server: ServerConfig = Field(default_factory=ServerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    provisioner: ProvisionerConfig = Field(default_factory=ProvisionerConfig)
    content: ContentConfig = Field(default_factory=ContentConfig)
    sweep: SweepConfig = Field(default_factory=SweepConfig)


SYSTEM_CONFIG_FILE = Path("/etc/preview/config.yaml")


def _find_config_file() -> Path | None:
    """Pick the YAML file to load, if any.

    ``PREVIEW_CONFIG_FILE`` must name an existing file. Otherwise the first of
    ``./config.yaml`` and ``/etc/preview/config.yaml`` that exists is used.
    """
    explicit = os.environ.get("PREVIEW_CONFIG_FILE")
    if explicit:
        path = Path(explicit)
        if not path.is_file():
            raise FileNotFoundError(f"PREVIEW_CONFIG_FILE does not exist: {path}")
        return path

    return next(
        (path for path in (Path("config.yaml"), SYSTEM_CONFIG_FILE) if path.is_file()),
        None,
    )


def _load_config_file() -> dict:
    path = _find_config_file()
    if path is None:
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return data


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Keys present in the YAML file are passed to ``Settings`` directly and so
    take precedence over ``PREVIEW_*`` variables; everything else comes from
    the environment or the defaults.
    """
    return Settings(**_load_config_file())
