"""Project tree writer.

Writes are additive: a full snapshot overwrites the files it names and never
removes files it omits.
"""

from __future__ import annotations

import hashlib
from pathlib import Path

import structlog

from preview_protocol import UnsafePathError, normalize_relative_path, normalize_snapshot
from sync_agent.errors import WorkspaceWriteError

logger = structlog.get_logger()

# Hash of the manifest set that was last installed successfully
INSTALL_MARKER = ".sync-agent/manifest.sha256"


class ProjectWorkspace:
    """File-system view of the preview project root."""

    def __init__(self, root: str | Path, *, manifest_files: list[str]) -> None:
        self._root = Path(root)
        self._manifest_files = [normalize_relative_path(p) for p in manifest_files]
        self._log = logger.bind(component="workspace", root=str(self._root))

    @property
    def root(self) -> Path:
        return self._root

    def ensure_root(self) -> None:
        self._root.mkdir(parents=True, exist_ok=True)

    def write_snapshot(self, files: dict[str, str]) -> int:
        """Write every file of a snapshot and return how many were written.

        All paths are validated before the first write, so a snapshot with
        one bad path leaves the tree untouched.
        """
        normalized = normalize_snapshot(files)
        targets = {path: self._target(path) for path in normalized}

        for path, content in normalized.items():
            self._write(targets[path], content)

        self._log.info("agent.workspace.snapshot_written", file_count=len(normalized))
        return len(normalized)

    def write_file(self, path: str, content: str) -> str:
        """Write a single file and return its normalized path."""
        normalized = normalize_relative_path(path)
        self._write(self._target(normalized), content)
        self._log.info("agent.workspace.file_written", path=normalized)
        return normalized

    def manifest_digest(self) -> str | None:
        """Digest of the dependency manifests currently on disk.

        Returns None when no manifest file exists (nothing to install).
        """
        digest = hashlib.sha256()
        found = False
        for name in sorted(self._manifest_files):
            manifest = self._root / name
            if not manifest.is_file():
                continue
            found = True
            digest.update(name.encode("utf-8"))
            digest.update(b"\x00")
            digest.update(manifest.read_bytes())
            digest.update(b"\x00")
        return digest.hexdigest() if found else None

    def needs_install(self) -> bool:
        """Whether the manifests differ from the last successful install."""
        current = self.manifest_digest()
        if current is None:
            return False
        marker = self._root / INSTALL_MARKER
        if not marker.is_file():
            return True
        return marker.read_text(encoding="utf-8").strip() != current

    def mark_installed(self) -> None:
        current = self.manifest_digest()
        if current is None:
            return
        marker = self._root / INSTALL_MARKER
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.write_text(current, encoding="utf-8")

    def _target(self, normalized: str) -> Path:
        target = self._root / normalized
        # Symlinks inside the tree must not lead the write outside of it
        root = self._root.resolve()
        if not target.resolve().is_relative_to(root):
            raise UnsafePathError(normalized, "symlink_escape")
        return target

    def _write(self, target: Path, content: str) -> None:
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        except OSError as e:
            self._log.error("agent.workspace.write_failed", path=str(target), error=str(e))
            raise WorkspaceWriteError(f"Failed to write {target}: {e}") from e
