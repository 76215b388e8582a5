"""Operator endpoints for the background sweep."""

from __future__ import annotations

import time

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from preview_orchestrator.config import get_settings
from preview_orchestrator.services.sweep.base import SweepResult
from preview_orchestrator.services.sweep.lifecycle import get_sweep_scheduler

router = APIRouter()


class SweepRunRequest(BaseModel):
    tasks: list[str] | None = Field(
        default=None,
        description="Run only these tasks (expired_session, unhealthy_session). "
        "Omit to run every registered task.",
    )


class SweepTaskResult(BaseModel):
    task_name: str
    cleaned_count: int
    skipped_count: int
    errors: list[str]

    @classmethod
    def from_result(cls, result: SweepResult) -> "SweepTaskResult":
        return cls(
            task_name=result.task_name or "unknown",
            cleaned_count=result.cleaned_count,
            skipped_count=result.skipped_count,
            errors=list(result.errors),
        )


class SweepRunResponse(BaseModel):
    results: list[SweepTaskResult]
    total_cleaned: int
    total_errors: int
    duration_ms: int


class SweepStatusResponse(BaseModel):
    enabled: bool
    is_running: bool
    cycle_in_progress: bool
    interval_seconds: int
    tasks: dict[str, dict[str, bool]]


@router.post("/sweep/run", response_model=SweepRunResponse)
async def run_sweep(request: SweepRunRequest | None = None) -> SweepRunResponse:
    """Run one sweep cycle now and report what each task did.

    Available even when the background loop is disabled. Answers 423 while a
    cycle is already running and 503 before the scheduler exists.
    """
    scheduler = get_sweep_scheduler()
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Sweep scheduler is not available")
    if scheduler.is_cycle_in_progress:
        raise HTTPException(status_code=423, detail="A sweep cycle is already running")

    only = set(request.tasks) if request and request.tasks is not None else None
    if only is not None and (unknown := only - set(scheduler.task_names)):
        raise HTTPException(
            status_code=400,
            detail=f"Unknown sweep tasks: {', '.join(sorted(unknown))}",
        )

    started = time.monotonic()
    results = await scheduler.run_once(only=only)
    elapsed_ms = int((time.monotonic() - started) * 1000)

    return SweepRunResponse(
        results=[SweepTaskResult.from_result(r) for r in results],
        total_cleaned=sum(r.cleaned_count for r in results),
        total_errors=sum(len(r.errors) for r in results),
        duration_ms=elapsed_ms,
    )


@router.get("/sweep/status", response_model=SweepStatusResponse)
async def get_sweep_status() -> SweepStatusResponse:
    config = get_settings().sweep
    scheduler = get_sweep_scheduler()

    return SweepStatusResponse(
        enabled=config.enabled,
        is_running=bool(scheduler and scheduler.is_running),
        cycle_in_progress=bool(scheduler and scheduler.is_cycle_in_progress),
        interval_seconds=config.interval_seconds,
        tasks={
            "expired_session": {"enabled": config.expired_session.enabled},
            "unhealthy_session": {"enabled": config.unhealthy_session.enabled},
        },
    )
