"""Workspace content stores."""

from preview_orchestrator.services.content.store import ContentStore, DirectoryContentStore

__all__ = ["ContentStore", "DirectoryContentStore"]
