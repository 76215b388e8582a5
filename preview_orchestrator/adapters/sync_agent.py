"""Sync agent adapter.

HTTP adapter for the sync agent running inside each preview VM.

The agent exposes a minimal REST API:
- POST /sync: write a full snapshot, reinstall if needed, restart the dev server
- PUT /update: write a single file (hot reload)
- GET /health: liveness plus whether the dev server handle is held
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import structlog
from pydantic import ValidationError as PydanticValidationError

from preview_protocol import (
    FileSnapshot,
    HealthResponse,
    SyncRequest,
    SyncResponse,
    UpdateRequest,
    UpdateResponse,
)
from preview_orchestrator.errors import RequestTimeoutError, SyncAgentError
from preview_orchestrator.services.http import get_shared_client

logger = structlog.get_logger()


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return response.text[:500]


class SyncAgentClient:
    """HTTP client for one VM's sync agent."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._http_client = http_client
        self._log = logger.bind(adapter="sync_agent", base_url=self._base_url)

    @property
    def base_url(self) -> str:
        return self._base_url

    async def _send(
        self,
        method: str,
        url: str,
        *,
        json: dict[str, Any] | None,
        timeout: float,
    ) -> httpx.Response:
        client = self._http_client or get_shared_client()
        if client is not None:
            return await client.request(method, url, json=json, timeout=timeout)
        async with httpx.AsyncClient(trust_env=False) as temp_client:
            return await temp_client.request(method, url, json=json, timeout=timeout)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        request_timeout = timeout or self._timeout

        try:
            response = await self._send(method, url, json=json, timeout=request_timeout)
        except httpx.TimeoutException:
            self._log.error("sync_agent.timeout", path=path, timeout=request_timeout)
            raise RequestTimeoutError(f"Sync agent request timed out: {path}")
        except httpx.RequestError as e:
            self._log.error("sync_agent.request_error", path=path, error=str(e))
            raise SyncAgentError(f"Sync agent request error: {e}")

        if response.status_code >= 400:
            message = _error_message(response)
            self._log.error(
                "sync_agent.request_failed",
                path=path,
                status=response.status_code,
                error=message,
            )
            raise SyncAgentError(
                f"Sync agent request failed ({response.status_code}): {message}",
                details={"status": response.status_code, "path": path},
            )

        try:
            return response.json()
        except ValueError:
            raise SyncAgentError(f"Sync agent returned invalid JSON: {path}")

    async def sync_files(self, files: FileSnapshot, *, timeout: float | None = None) -> SyncResponse:
        """Push a full snapshot; the agent restarts the dev server."""
        body = SyncRequest(files=files).model_dump(by_alias=True)
        data = await self._request("POST", "/sync", json=body, timeout=timeout)
        try:
            return SyncResponse.model_validate(data)
        except PydanticValidationError as e:
            raise SyncAgentError(f"Unexpected /sync response: {e}")

    async def update_file(
        self,
        path: str,
        content: str,
        *,
        timeout: float | None = None,
    ) -> UpdateResponse:
        """Write a single file; the dev server hot-reloads it."""
        body = UpdateRequest(path=path, content=content).model_dump(by_alias=True)
        data = await self._request("PUT", "/update", json=body, timeout=timeout)
        try:
            return UpdateResponse.model_validate(data)
        except PydanticValidationError as e:
            raise SyncAgentError(f"Unexpected /update response: {e}")

    async def get_health(self, *, timeout: float = 5.0) -> HealthResponse:
        data = await self._request("GET", "/health", timeout=timeout)
        try:
            return HealthResponse.model_validate(data)
        except PydanticValidationError as e:
            raise SyncAgentError(f"Unexpected /health response: {e}")

    async def health(self, *, timeout: float = 5.0) -> bool:
        """Whether the agent answers /health with 200."""
        try:
            response = await self._send("GET", f"{self._base_url}/health", json=None, timeout=timeout)
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def wait_until_ready(
        self,
        *,
        max_wait_seconds: float = 90.0,
        initial_interval: float = 0.5,
        max_interval: float = 5.0,
        backoff_factor: float = 2.0,
    ) -> None:
        """Poll /health with exponential backoff until it answers 200.

        Raises:
            RequestTimeoutError: If the agent is not ready within max_wait_seconds
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        interval = initial_interval
        attempt = 0

        while True:
            attempt += 1
            if await self.health(timeout=2.0):
                self._log.info(
                    "sync_agent.ready",
                    attempts=attempt,
                    elapsed_ms=int((loop.time() - start_time) * 1000),
                )
                return

            elapsed = loop.time() - start_time
            if elapsed >= max_wait_seconds:
                break

            await asyncio.sleep(min(interval, max_wait_seconds - elapsed))
            interval = min(interval * backoff_factor, max_interval)

        self._log.error(
            "sync_agent.not_ready",
            attempts=attempt,
            elapsed_seconds=max_wait_seconds,
        )
        raise RequestTimeoutError(
            "Sync agent failed to become ready",
            details={"sync_url": self._base_url, "attempts": attempt},
        )
