"""Unit tests for DirectoryContentStore."""

from __future__ import annotations

import pytest

from preview_orchestrator.errors import ValidationError
from preview_orchestrator.services.content import DirectoryContentStore


@pytest.fixture
def store(tmp_path) -> DirectoryContentStore:
    return DirectoryContentStore(tmp_path, max_file_bytes=64)


class TestDirectoryContentStore:
    async def test_reads_nested_tree(self, store, tmp_path):
        ws = tmp_path / "ws1"
        (ws / "src").mkdir(parents=True)
        (ws / "package.json").write_text("{}")
        (ws / "src" / "App.tsx").write_text("app")

        snapshot = await store.get_snapshot("ws1")

        assert snapshot == {"package.json": "{}", "src/App.tsx": "app"}

    async def test_missing_workspace_is_empty(self, store):
        assert await store.get_snapshot("nope") == {}

    async def test_skips_tooling_dirs(self, store, tmp_path):
        ws = tmp_path / "ws1"
        for skipped in ("node_modules/react", ".git", ".sync-agent"):
            (ws / skipped).mkdir(parents=True)
            (ws / skipped / "file.txt").write_text("x")
        (ws / "index.html").write_text("<html></html>")

        snapshot = await store.get_snapshot("ws1")

        assert list(snapshot) == ["index.html"]

    async def test_skips_large_and_binary_files(self, store, tmp_path):
        ws = tmp_path / "ws1"
        ws.mkdir()
        (ws / "big.txt").write_text("x" * 65)
        (ws / "logo.png").write_bytes(b"\x89PNG\r\n\x1a\n\xff\xfe")
        (ws / "ok.txt").write_text("ok")

        snapshot = await store.get_snapshot("ws1")

        assert snapshot == {"ok.txt": "ok"}

    @pytest.mark.parametrize("workspace_id", ["", "..", ".", "a/b"])
    async def test_rejects_bad_workspace_ids(self, store, workspace_id):
        with pytest.raises(ValidationError):
            await store.get_snapshot(workspace_id)
