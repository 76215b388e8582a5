"""Sweep lifecycle management for FastAPI lifespan integration."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog

from preview_orchestrator.config import SweepConfig, get_settings
from preview_orchestrator.db.session import get_async_session
from preview_orchestrator.services.sweep.base import SweepTask
from preview_orchestrator.services.sweep.scheduler import SweepScheduler
from preview_orchestrator.services.sweep.tasks import ExpiredSessionSweep, UnhealthySessionSweep

logger = structlog.get_logger()

# Global scheduler instance
_sweep_scheduler: SweepScheduler | None = None


class SessionPerCycleSweepScheduler(SweepScheduler):
    """Sweep scheduler that opens a fresh db session for each cycle.

    Long-lived background sessions would otherwise read stale snapshots.
    """

    def __init__(self, config: SweepConfig) -> None:
        super().__init__(tasks=[], config=config)

    @property
    def task_names(self) -> list[str]:
        names = []
        if self._config.expired_session.enabled:
            names.append("expired_session")
        if self._config.unhealthy_session.enabled:
            names.append("unhealthy_session")
        return names

    @asynccontextmanager
    async def _cycle_tasks(self) -> AsyncIterator[list[SweepTask]]:
        # Imported lazily: dependencies import the managers, which import config
        from preview_orchestrator.api.dependencies import get_content_store, get_provisioner
        from preview_orchestrator.managers.preview import PreviewManager

        settings = get_settings()
        async with get_async_session() as db_session:
            manager = PreviewManager(
                provisioner=get_provisioner(),
                content_store=get_content_store(),
                db_session=db_session,
                config=settings.session,
            )

            tasks: list[SweepTask] = []
            if self._config.expired_session.enabled:
                tasks.append(ExpiredSessionSweep(manager, db_session))
            if self._config.unhealthy_session.enabled:
                tasks.append(UnhealthySessionSweep(manager, db_session, settings.session))
            yield tasks


async def init_sweep_scheduler() -> SweepScheduler:
    """Initialize the sweep scheduler.

    Called during FastAPI lifespan startup, after database initialization.
    The scheduler is always created so the admin API can trigger a cycle;
    the background loop only starts if sweep.enabled is true.
    """
    global _sweep_scheduler

    sweep_config = get_settings().sweep

    logger.info(
        "sweep.init",
        enabled=sweep_config.enabled,
        interval_seconds=sweep_config.interval_seconds,
        run_on_startup=sweep_config.run_on_startup,
        tasks={
            "expired_session": sweep_config.expired_session.enabled,
            "unhealthy_session": sweep_config.unhealthy_session.enabled,
        },
    )

    _sweep_scheduler = SessionPerCycleSweepScheduler(config=sweep_config)

    if not sweep_config.enabled:
        logger.info("sweep.background_disabled", reason="sweep.enabled=false")
        return _sweep_scheduler

    if sweep_config.run_on_startup:
        try:
            results = await _sweep_scheduler.run_once()
            logger.info(
                "sweep.run_on_startup.complete",
                cleaned=sum(r.cleaned_count for r in results),
                errors=sum(len(r.errors) for r in results),
            )
        except Exception as e:
            # Startup continues; the background loop retries
            logger.exception("sweep.run_on_startup.failed", error=str(e))

    await _sweep_scheduler.start()
    return _sweep_scheduler


async def shutdown_sweep_scheduler() -> None:
    """Stop the sweep scheduler. Called during FastAPI lifespan shutdown."""
    global _sweep_scheduler

    if _sweep_scheduler is not None:
        await _sweep_scheduler.stop()
        _sweep_scheduler = None


def get_sweep_scheduler() -> SweepScheduler | None:
    """Get the current sweep scheduler instance."""
    return _sweep_scheduler
