"""Wire contracts shared by the preview orchestrator and the VM sync agent."""

from preview_protocol.paths import UnsafePathError, normalize_relative_path, normalize_snapshot
from preview_protocol.schemas import (
    FileSnapshot,
    HealthResponse,
    SyncRequest,
    SyncResponse,
    UpdateRequest,
    UpdateResponse,
)

__all__ = [
    "FileSnapshot",
    "HealthResponse",
    "SyncRequest",
    "SyncResponse",
    "UnsafePathError",
    "UpdateRequest",
    "UpdateResponse",
    "normalize_relative_path",
    "normalize_snapshot",
]
