"""FastAPI dependencies for the orchestrator API.

Provides dependency injection for:
- Database sessions
- PreviewManager
- Provisioner and content store
"""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from preview_orchestrator.config import get_settings
from preview_orchestrator.db.session import get_session_dependency
from preview_orchestrator.managers.preview import PreviewManager
from preview_orchestrator.provisioners import FlyProvisioner, Provisioner, StaticProvisioner
from preview_orchestrator.services.content import ContentStore, DirectoryContentStore


@lru_cache
def get_provisioner() -> Provisioner:
    """Get cached provisioner instance (single instance across requests)."""
    settings = get_settings()
    if settings.provisioner.type == "static":
        return StaticProvisioner(settings.provisioner.static)
    elif settings.provisioner.type == "fly":
        return FlyProvisioner(settings.provisioner.fly)
    else:
        raise ValueError(f"Unsupported provisioner type: {settings.provisioner.type}")


@lru_cache
def get_content_store() -> ContentStore:
    settings = get_settings()
    return DirectoryContentStore(
        settings.content.root_path,
        max_file_bytes=settings.content.max_file_bytes,
    )


async def get_preview_manager(
    session: Annotated[AsyncSession, Depends(get_session_dependency)],
) -> PreviewManager:
    """Get PreviewManager with injected dependencies."""
    return PreviewManager(
        provisioner=get_provisioner(),
        content_store=get_content_store(),
        db_session=session,
        config=get_settings().session,
    )


PreviewManagerDep = Annotated[PreviewManager, Depends(get_preview_manager)]
