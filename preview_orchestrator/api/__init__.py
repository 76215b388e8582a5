"""API router."""

from fastapi import APIRouter

from preview_orchestrator.api.admin import router as admin_router
from preview_orchestrator.api.preview import router as preview_router

router = APIRouter()

router.include_router(preview_router, prefix="/preview", tags=["preview"])
router.include_router(admin_router, prefix="/admin", tags=["admin"])
