"""Pooled HTTP client for calls into preview VMs.

Every sync-agent request of the app shares one ``httpx.AsyncClient`` that is
opened and closed by the FastAPI lifespan. Outside the lifespan (tests, one-off
scripts) ``get_shared_client()`` returns None and callers open their own.
"""

from __future__ import annotations

import httpx
import structlog

from preview_orchestrator import __version__

logger = structlog.get_logger()


class HTTPClientManager:
    """Owns the shared client between startup() and shutdown()."""

    def __init__(
        self,
        *,
        max_connections: int = 100,
        max_keepalive_connections: int = 20,
        keepalive_expiry: float = 30.0,
        connect_timeout: float = 5.0,
        default_timeout: float = 60.0,
    ) -> None:
        self._limits = httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=max_keepalive_connections,
            keepalive_expiry=keepalive_expiry,
        )
        # Per-call timeouts from SessionConfig override the read budget
        self._timeout = httpx.Timeout(default_timeout, connect=connect_timeout)
        self._client: httpx.AsyncClient | None = None
        self._log = logger.bind(component="http_client")

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("HTTP client not started")
        return self._client

    @property
    def is_started(self) -> bool:
        return self._client is not None

    async def startup(self) -> None:
        if self._client is not None:
            self._log.warning("http_client.already_started")
            return

        # VM addresses are private; a host proxy must not intercept them
        self._client = httpx.AsyncClient(
            limits=self._limits,
            timeout=self._timeout,
            trust_env=False,
            headers={"User-Agent": f"preview-orchestrator/{__version__}"},
        )
        self._log.info("http_client.started", max_connections=self._limits.max_connections)

    async def shutdown(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        await client.aclose()
        self._log.info("http_client.shutdown")


http_client_manager = HTTPClientManager()


def get_shared_client() -> httpx.AsyncClient | None:
    return http_client_manager.client if http_client_manager.is_started else None
