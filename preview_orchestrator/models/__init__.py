"""SQLModel data models."""

from preview_orchestrator.models.session import (
    LIVE_STATUSES,
    NON_TERMINAL_STATUSES,
    PreviewSession,
    PreviewStatus,
)

__all__ = [
    "LIVE_STATUSES",
    "NON_TERMINAL_STATUSES",
    "PreviewSession",
    "PreviewStatus",
]
