"""Concurrency control primitives."""

from preview_orchestrator.concurrency.locks import get_lock_count, get_workspace_lock

__all__ = ["get_lock_count", "get_workspace_lock"]
