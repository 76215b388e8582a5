"""Preview orchestrator FastAPI application entry point."""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from preview_orchestrator import __version__
from preview_orchestrator.config import get_settings
from preview_orchestrator.db import close_db, init_db
from preview_orchestrator.errors import PreviewError, ValidationError
from preview_orchestrator.services.http import http_client_manager
from preview_orchestrator.services.sweep.lifecycle import (
    init_sweep_scheduler,
    shutdown_sweep_scheduler,
)

logger = structlog.get_logger()

_HTTP_ERROR_CODES = {
    400: "validation_error",
    404: "not_found",
    405: "method_not_allowed",
    423: "locked",
    503: "unavailable",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("preview.startup", version=__version__)
    await init_db()

    await http_client_manager.startup()
    await init_sweep_scheduler()

    yield

    logger.info("preview.shutdown")
    await shutdown_sweep_scheduler()

    from preview_orchestrator.api.dependencies import get_provisioner

    await get_provisioner().close()
    await http_client_manager.shutdown()
    await close_db()


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    app = FastAPI(
        title="Preview Orchestrator",
        description="Per-workspace live preview VMs",
        version=__version__,
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add request ID to all requests."""
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response

    @app.exception_handler(PreviewError)
    async def preview_error_handler(request: Request, exc: PreviewError):
        """Handle orchestrator errors with consistent format."""
        if exc.status_code >= 500:
            logger.error(
                "api.request_failed",
                path=request.url.path,
                code=exc.code,
                error=exc.message,
            )
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(_request_id(request)),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            first = errors[0]
            field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
            message = f"{field}: {first.get('msg', 'invalid value')}" if field else first.get("msg")
        else:
            message = "Invalid request"
        error = ValidationError(message)
        return JSONResponse(status_code=400, content=error.to_dict(_request_id(request)))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        body = {
            "error": str(exc.detail),
            "code": _HTTP_ERROR_CODES.get(exc.status_code, "http_error"),
        }
        request_id = _request_id(request)
        if request_id:
            body["requestId"] = request_id
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok"}

    from preview_orchestrator.api import router as api_router

    app.include_router(api_router)

    return app


# Create default app instance
app = create_app()


def run() -> None:
    """Console entry point."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "preview_orchestrator.main:app",
        host=settings.server.host,
        port=settings.server.port,
    )


if __name__ == "__main__":
    run()
