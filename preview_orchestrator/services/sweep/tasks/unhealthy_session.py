"""UnhealthySessionSweep - demote sessions whose VM stopped answering."""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from preview_orchestrator.models.session import PreviewSession, PreviewStatus
from preview_orchestrator.services.sweep.base import SweepResult, SweepTask
from preview_orchestrator.utils.datetime import utcnow

if TYPE_CHECKING:
    from preview_orchestrator.config import SessionConfig
    from preview_orchestrator.managers.preview import PreviewManager

logger = structlog.get_logger()


class UnhealthySessionSweep(SweepTask):
    """Sweep task for sessions that are `running` or `starting` in name only.

    Trigger conditions:
        - status = running AND consecutive_failures >= failure_threshold:
          VM gone per the provisioner, or no answer on the agent's /health
          -> error, VM destroyed
        - status = starting AND created_at older than the start timeout:
          the starting process died -> error
    """

    def __init__(
        self,
        manager: "PreviewManager",
        db_session: AsyncSession,
        config: "SessionConfig",
    ) -> None:
        self._manager = manager
        self._db = db_session
        self._config = config
        self._log = logger.bind(sweep_task="unhealthy_session")

    @property
    def name(self) -> str:
        return "unhealthy_session"

    async def run(self) -> SweepResult:
        result = SweepResult(task_name=self.name)
        await self._db.rollback()

        failing = await self._db.execute(
            select(PreviewSession.id).where(
                PreviewSession.status == PreviewStatus.RUNNING,
                PreviewSession.consecutive_failures >= self._config.failure_threshold,
            )
        )
        failing_ids = list(failing.scalars().all())

        stale_before = utcnow() - timedelta(seconds=self._config.start_timeout_seconds)
        stale = await self._db.execute(
            select(PreviewSession.id).where(
                PreviewSession.status == PreviewStatus.STARTING,
                PreviewSession.created_at < stale_before,
            )
        )
        stale_ids = list(stale.scalars().all())

        self._log.info(
            "sweep.unhealthy_session.found",
            failing=len(failing_ids),
            stale_starting=len(stale_ids),
        )

        for session_id in failing_ids:
            await self._process(result, session_id, self._manager.check_unhealthy)
        for session_id in stale_ids:
            await self._process(result, session_id, self._manager.fail_stale_start)

        return result

    async def _process(self, result: SweepResult, session_id: str, action) -> None:
        try:
            demoted = await action(session_id)
        except Exception as e:
            self._log.exception(
                "sweep.unhealthy_session.item_error",
                session_id=session_id,
                error=str(e),
            )
            result.add_error(f"session {session_id}: {e}")
            return

        if demoted:
            result.cleaned_count += 1
        else:
            result.skipped_count += 1
