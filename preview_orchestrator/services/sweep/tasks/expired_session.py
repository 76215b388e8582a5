"""ExpiredSessionSweep - stop sessions that are past their deadline."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from preview_orchestrator.models.session import NON_TERMINAL_STATUSES, PreviewSession
from preview_orchestrator.services.sweep.base import SweepResult, SweepTask
from preview_orchestrator.utils.datetime import utcnow

if TYPE_CHECKING:
    from preview_orchestrator.managers.preview import PreviewManager

logger = structlog.get_logger()


class ExpiredSessionSweep(SweepTask):
    """Sweep task for stopping expired sessions.

    Trigger condition:
        session.expires_at < now AND status in (starting, running, stopping)

    Action (per workspace, through PreviewManager.stop_expired):
        1. Acquire workspace lock
        2. Double-check expires_at (the user may have extended meanwhile)
        3. stopping -> destroy VM (best effort) -> stopped
    """

    def __init__(self, manager: "PreviewManager", db_session: AsyncSession) -> None:
        self._manager = manager
        self._db = db_session
        self._log = logger.bind(sweep_task="expired_session")

    @property
    def name(self) -> str:
        return "expired_session"

    async def run(self) -> SweepResult:
        result = SweepResult(task_name=self.name)

        # Fresh transaction so SQLite does not serve a stale snapshot
        await self._db.rollback()

        db_result = await self._db.execute(
            select(PreviewSession.workspace_id)
            .where(
                PreviewSession.status.in_(NON_TERMINAL_STATUSES),
                PreviewSession.expires_at < utcnow(),
            )
            .distinct()
        )
        workspace_ids = list(db_result.scalars().all())

        self._log.info("sweep.expired_session.found", count=len(workspace_ids))

        for workspace_id in workspace_ids:
            try:
                stopped = await self._manager.stop_expired(workspace_id)
            except Exception as e:
                self._log.exception(
                    "sweep.expired_session.item_error",
                    workspace_id=workspace_id,
                    error=str(e),
                )
                result.add_error(f"workspace {workspace_id}: {e}")
                continue

            if stopped:
                result.cleaned_count += stopped
            else:
                self._log.debug("sweep.expired_session.skip.extended", workspace_id=workspace_id)
                result.skipped_count += 1

        return result
