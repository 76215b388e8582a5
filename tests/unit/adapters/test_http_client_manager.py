"""Unit tests for the shared HTTP client lifecycle."""

from __future__ import annotations

import pytest

from preview_orchestrator.services.http import HTTPClientManager


class TestHTTPClientManager:
    async def test_startup_and_shutdown(self):
        manager = HTTPClientManager()
        assert manager.is_started is False

        await manager.startup()
        client = manager.client
        assert client.headers["User-Agent"].startswith("preview-orchestrator/")

        await manager.startup()
        assert manager.client is client

        await manager.shutdown()
        assert manager.is_started is False
        assert client.is_closed

    def test_client_before_startup(self):
        with pytest.raises(RuntimeError):
            HTTPClientManager().client

    async def test_shutdown_without_startup(self):
        await HTTPClientManager().shutdown()
