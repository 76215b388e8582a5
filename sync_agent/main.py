"""Sync Agent - HTTP surface of the preview VM.

Endpoints:
- POST /sync: write a full snapshot, reinstall if the manifest changed,
  restart the dev server
- PUT /update: write a single file (hot reload, no restart)
- GET /health: whether a dev-server handle is held

Reached only through the orchestrator, so CORS is fully permissive.
"""

from __future__ import annotations

import signal
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated

import structlog
import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from preview_protocol import (
    HealthResponse,
    SyncRequest,
    SyncResponse,
    UnsafePathError,
    UpdateRequest,
    UpdateResponse,
)
from sync_agent import __version__
from sync_agent.config import AgentSettings, get_agent_settings
from sync_agent.errors import AgentError
from sync_agent.service import SyncService

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan.

    Shutdown stops the dev server so no orphan survives the agent.
    """
    service: SyncService = app.state.sync_service
    service.workspace.ensure_root()
    logger.info(
        "agent.startup",
        version=__version__,
        project_root=str(service.workspace.root),
    )

    yield

    logger.info("agent.shutdown")
    await service.supervisor.shutdown()


def get_sync_service(request: Request) -> SyncService:
    return request.app.state.sync_service


SyncServiceDep = Annotated[SyncService, Depends(get_sync_service)]


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_app(
    settings: AgentSettings | None = None,
    service: SyncService | None = None,
) -> FastAPI:
    """Create the agent application."""
    settings = settings or get_agent_settings()

    app = FastAPI(
        title="Preview Sync Agent",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.sync_service = service or SyncService.from_settings(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return _error(400, f"Invalid payload: {message}")

    @app.exception_handler(UnsafePathError)
    async def unsafe_path_handler(request: Request, exc: UnsafePathError):
        return _error(400, str(exc))

    @app.exception_handler(AgentError)
    async def agent_error_handler(request: Request, exc: AgentError):
        logger.error("agent.request_failed", path=request.url.path, error=str(exc))
        return _error(exc.status_code, str(exc))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        # Unknown methods on known paths are reported like unknown paths
        if exc.status_code in (404, 405):
            return _error(404, "Not found")
        return _error(exc.status_code, str(exc.detail))

    @app.post("/sync", response_model=SyncResponse)
    async def sync(request: SyncRequest, service: SyncServiceDep) -> SyncResponse:
        """Write a full snapshot and restart the dev server."""
        outcome = await service.apply_snapshot(request.files)
        return SyncResponse(
            file_count=outcome.file_count,
            installed=outcome.installed,
            restarted=outcome.restarted,
        )

    @app.put("/update", response_model=UpdateResponse)
    async def update(request: UpdateRequest, service: SyncServiceDep) -> UpdateResponse:
        """Write a single file without reinstalling or restarting."""
        path = await service.apply_update(request.path, request.content)
        return UpdateResponse(path=path, updated_at=datetime.now(timezone.utc))

    @app.get("/health", response_model=HealthResponse)
    async def health(service: SyncServiceDep) -> HealthResponse:
        return HealthResponse(vite_running=service.supervisor.is_running)

    @app.options("/{path:path}")
    async def preflight(path: str) -> Response:
        return Response(status_code=200)

    return app


class AgentServer(uvicorn.Server):
    """uvicorn server that signals the dev server as soon as an exit is requested.

    The lifespan shutdown then waits for it and kills it if it lingers.
    """

    def __init__(self, config: uvicorn.Config, service: SyncService) -> None:
        super().__init__(config)
        self._service = service

    def handle_exit(self, sig: int, frame) -> None:
        if sig in (signal.SIGINT, signal.SIGTERM):
            logger.info("agent.signal", signal=signal.Signals(sig).name)
            self._service.supervisor.terminate_nowait()
        super().handle_exit(sig, frame)


def run() -> None:
    """Console entry point."""
    settings = get_agent_settings()
    app = create_app(settings)
    config = uvicorn.Config(app, host=settings.host, port=settings.port)
    AgentServer(config, app.state.sync_service).run()


app = create_app()


if __name__ == "__main__":
    run()
