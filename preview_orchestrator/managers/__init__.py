"""Managers for business logic."""

from preview_orchestrator.managers.preview import PreviewManager

__all__ = ["PreviewManager"]
