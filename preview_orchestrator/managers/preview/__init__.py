from preview_orchestrator.managers.preview.preview import (
    PreviewManager,
    StartResult,
    SyncResult,
    UpdateResult,
)

__all__ = ["PreviewManager", "StartResult", "SyncResult", "UpdateResult"]
