"""Content store - source of a workspace's current file snapshot.

The orchestrator reads snapshots only; writing generated files into the
store is the generator's job.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path

import structlog

from preview_protocol import FileSnapshot
from preview_orchestrator.errors import ValidationError

logger = structlog.get_logger()

# Never part of a preview snapshot
_SKIP_DIRS = {".git", "node_modules", ".sync-agent"}


class ContentStore(ABC):
    @abstractmethod
    async def get_snapshot(self, workspace_id: str) -> FileSnapshot:
        """Return the workspace's current files; empty when it has none."""
        ...


class DirectoryContentStore(ContentStore):
    """Reads ``<root>/<workspace_id>/**`` as a snapshot.

    Files that are not valid UTF-8 or exceed ``max_file_bytes`` are skipped.
    """

    def __init__(self, root: str | Path, *, max_file_bytes: int = 1024 * 1024) -> None:
        self._root = Path(root)
        self._max_file_bytes = max_file_bytes
        self._log = logger.bind(component="content_store", root=str(self._root))

    def _workspace_dir(self, workspace_id: str) -> Path:
        if not workspace_id or "/" in workspace_id or workspace_id in (".", ".."):
            raise ValidationError(
                f"Invalid workspace id: {workspace_id!r}",
                details={"field": "workspaceId"},
            )
        return self._root / workspace_id

    async def get_snapshot(self, workspace_id: str) -> FileSnapshot:
        base = self._workspace_dir(workspace_id)
        return await asyncio.to_thread(self._read_tree, base)

    def _read_tree(self, base: Path) -> FileSnapshot:
        if not base.is_dir():
            return {}

        files: FileSnapshot = {}
        skipped = 0
        for path in sorted(base.rglob("*")):
            relative = path.relative_to(base)
            if any(part in _SKIP_DIRS for part in relative.parts):
                continue
            if not path.is_file():
                continue
            if path.stat().st_size > self._max_file_bytes:
                skipped += 1
                continue
            try:
                files[relative.as_posix()] = path.read_text(encoding="utf-8")
            except UnicodeDecodeError:
                skipped += 1

        self._log.debug(
            "content_store.snapshot_read",
            workspace_dir=str(base),
            file_count=len(files),
            skipped=skipped,
        )
        return files
