"""Preview session data model.

A preview session is one VM serving one workspace's dev server. Records are
never deleted; ``stopped`` and ``error`` rows remain as history.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from preview_orchestrator.utils.datetime import utcnow


class PreviewStatus(str, Enum):
    """Preview session status."""

    STARTING = "starting"  # VM provisioning / first push in progress
    RUNNING = "running"  # Agent healthy, last push succeeded
    STOPPING = "stopping"  # Teardown in progress
    STOPPED = "stopped"  # Torn down (explicit stop or expiry)
    ERROR = "error"  # Unrecoverable VM/process failure


# Sessions in these states may still own a VM
NON_TERMINAL_STATUSES = (
    PreviewStatus.STARTING,
    PreviewStatus.RUNNING,
    PreviewStatus.STOPPING,
)

# Sessions in these states can be returned as "active"
LIVE_STATUSES = (PreviewStatus.STARTING, PreviewStatus.RUNNING)

# Naive UTC from utcnow(); the column type is explicit so binds never
# require tzinfo
UTC_TIMESTAMP = DateTime(timezone=False)


class PreviewSession(SQLModel, table=True):
    """Preview session - one VM per workspace."""

    __tablename__ = "preview_sessions"

    id: str = Field(primary_key=True)
    workspace_id: str = Field(index=True)

    # Provisioner handle and endpoints
    vm_id: Optional[str] = Field(default=None, index=True)
    vm_address: Optional[str] = Field(default=None)
    region: Optional[str] = Field(default=None)
    sync_url: Optional[str] = Field(default=None)
    preview_url: Optional[str] = Field(default=None)

    status: PreviewStatus = Field(default=PreviewStatus.STARTING, index=True)
    error_message: Optional[str] = Field(default=None)

    # Last successful full sync
    file_count: int = Field(default=0)
    files_synced_at: Optional[datetime] = Field(default=None, sa_type=UTC_TIMESTAMP)

    last_activity_at: datetime = Field(default_factory=utcnow, sa_type=UTC_TIMESTAMP)
    expires_at: datetime = Field(default_factory=utcnow, index=True, sa_type=UTC_TIMESTAMP)

    # Agent call failures since the last successful call
    consecutive_failures: int = Field(default=0)
    last_failure_at: Optional[datetime] = Field(default=None, sa_type=UTC_TIMESTAMP)

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTC_TIMESTAMP)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTC_TIMESTAMP)
    stopped_at: Optional[datetime] = Field(default=None, sa_type=UTC_TIMESTAMP)

    @property
    def is_terminal(self) -> bool:
        return self.status not in NON_TERMINAL_STATUSES

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def is_active(self, now: datetime) -> bool:
        """Whether this session counts as the workspace's active preview."""
        return self.status in LIVE_STATUSES and not self.is_expired(now)

    def touch(self, now: datetime | None = None) -> None:
        self.updated_at = now or utcnow()
