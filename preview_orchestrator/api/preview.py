"""Preview API endpoints.

- POST   /preview/start   start (or return) the workspace's preview
- GET    /preview/start   status of the active preview
- DELETE /preview/start   stop the preview (idempotent)
- POST   /preview/sync    push a full snapshot
- PUT    /preview/update  write a single file
- POST   /preview/update  extend the session deadline
"""

from __future__ import annotations

from typing import Annotated

import structlog
from fastapi import APIRouter, Query
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from preview_orchestrator.api.dependencies import PreviewManagerDep
from preview_orchestrator.models.session import PreviewSession
from preview_orchestrator.utils.datetime import isoformat_utc

router = APIRouter()
_log = structlog.get_logger()

WorkspaceIdQuery = Annotated[str, Query(alias="workspaceId", min_length=1)]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Request/Response Models


class StartPreviewRequest(CamelModel):
    workspace_id: str = Field(..., min_length=1)


class SyncFilesRequest(CamelModel):
    """Full snapshot push; without ``files`` the stored snapshot is pushed."""

    workspace_id: str = Field(..., min_length=1)
    files: dict[str, str] | None = None


class UpdateFileRequest(CamelModel):
    workspace_id: str = Field(..., min_length=1)
    path: str
    content: str


class ExtendSessionRequest(CamelModel):
    workspace_id: str = Field(..., min_length=1)


class StartPreviewResponse(CamelModel):
    success: bool = True
    session_id: str
    preview_url: str | None
    sync_url: str | None
    status: str
    expires_at: str | None


class PreviewStatusResponse(CamelModel):
    active: bool
    session_id: str | None = None
    preview_url: str | None = None
    sync_url: str | None = None
    status: str | None = None
    expires_at: str | None = None
    last_activity: str | None = None
    file_count: int | None = None
    files_synced_at: str | None = None


class SuccessResponse(CamelModel):
    success: bool = True


class SyncFilesResponse(CamelModel):
    success: bool = True
    synced_at: str
    file_count: int


class UpdateFileResponse(CamelModel):
    success: bool = True
    path: str
    updated_at: str


class ExtendSessionResponse(CamelModel):
    success: bool = True
    message: str
    expires_at: str | None


def _status_response(session: PreviewSession) -> PreviewStatusResponse:
    return PreviewStatusResponse(
        active=True,
        session_id=session.id,
        preview_url=session.preview_url,
        sync_url=session.sync_url,
        status=session.status.value,
        expires_at=isoformat_utc(session.expires_at),
        last_activity=isoformat_utc(session.last_activity_at),
        file_count=session.file_count,
        files_synced_at=isoformat_utc(session.files_synced_at),
    )


# Endpoints


@router.post("/start", response_model=StartPreviewResponse)
async def start_preview(
    request: StartPreviewRequest,
    preview_mgr: PreviewManagerDep,
) -> StartPreviewResponse:
    """Start a preview VM for the workspace, or return the active one."""
    result = await preview_mgr.start_preview(request.workspace_id)
    session = result.session
    return StartPreviewResponse(
        session_id=session.id,
        preview_url=result.preview_url,
        sync_url=result.sync_url,
        status=session.status.value,
        expires_at=isoformat_utc(session.expires_at),
    )


@router.get("/start", response_model=PreviewStatusResponse, response_model_exclude_none=True)
async def get_preview_status(
    workspace_id: WorkspaceIdQuery,
    preview_mgr: PreviewManagerDep,
) -> PreviewStatusResponse:
    session = await preview_mgr.get_active_session(workspace_id)
    if session is None:
        return PreviewStatusResponse(active=False)
    return _status_response(session)


@router.delete("/start", response_model=SuccessResponse)
async def stop_preview(
    workspace_id: WorkspaceIdQuery,
    preview_mgr: PreviewManagerDep,
) -> SuccessResponse:
    """Stop the workspace's preview. Stopping nothing is still a success."""
    stopped = await preview_mgr.stop_preview(workspace_id)
    _log.info("api.preview.stop", workspace_id=workspace_id, stopped=stopped)
    return SuccessResponse()


@router.post("/sync", response_model=SyncFilesResponse)
async def sync_files(
    request: SyncFilesRequest,
    preview_mgr: PreviewManagerDep,
) -> SyncFilesResponse:
    result = await preview_mgr.sync_files(request.workspace_id, request.files)
    return SyncFilesResponse(
        synced_at=isoformat_utc(result.synced_at),
        file_count=result.file_count,
    )


@router.put("/update", response_model=UpdateFileResponse)
async def update_file(
    request: UpdateFileRequest,
    preview_mgr: PreviewManagerDep,
) -> UpdateFileResponse:
    """Write one file; the dev server hot-reloads it without a restart."""
    result = await preview_mgr.update_file(request.workspace_id, request.path, request.content)
    return UpdateFileResponse(path=result.path, updated_at=isoformat_utc(result.updated_at))


@router.post("/update", response_model=ExtendSessionResponse)
async def extend_session(
    request: ExtendSessionRequest,
    preview_mgr: PreviewManagerDep,
) -> ExtendSessionResponse:
    session = await preview_mgr.extend_session(request.workspace_id)
    return ExtendSessionResponse(
        message="Session extended",
        expires_at=isoformat_utc(session.expires_at),
    )
