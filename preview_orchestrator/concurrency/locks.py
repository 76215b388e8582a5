"""Workspace-level in-memory locks for concurrency control.

This module provides workspace-level locks used by:
- PreviewManager (start, sync, update, extend, stop)
- Sweep tasks (ExpiredSessionSweep, UnhealthySessionSweep)

They serialize only within one process; the row lock taken with
``with_for_update()`` covers the store itself.

Locks are never dropped: a waiter may hold a reference to a lock that is
momentarily free, and replacing it would let a second holder in.

"""

from __future__ import annotations

import asyncio

# Key: workspace_id, Value: asyncio.Lock
_workspace_locks: dict[str, asyncio.Lock] = {}
_workspace_locks_lock = asyncio.Lock()


async def get_workspace_lock(workspace_id: str) -> asyncio.Lock:
    """Get or create the lock for a workspace.

    Serializes every mutation of a workspace's preview sessions, so two
    concurrent starts cannot both provision a VM.
    """
    async with _workspace_locks_lock:
        if workspace_id not in _workspace_locks:
            _workspace_locks[workspace_id] = asyncio.Lock()
        return _workspace_locks[workspace_id]


def get_lock_count() -> int:
    """Number of workspaces that have a lock."""
    return len(_workspace_locks)
