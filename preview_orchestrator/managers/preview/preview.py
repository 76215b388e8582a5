"""PreviewManager - manages preview session lifecycle.

One workspace has at most one active preview session (status starting or
running, not past ``expires_at``). Every mutation runs under the
workspace's in-memory lock and re-reads its rows inside a fresh transaction
(``rollback()`` then ``SELECT ... FOR UPDATE``), so concurrent requests for
one workspace are serialized while distinct workspaces proceed in parallel.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from preview_protocol import FileSnapshot
from preview_orchestrator.adapters.sync_agent import SyncAgentClient
from preview_orchestrator.concurrency.locks import get_workspace_lock
from preview_orchestrator.config import SessionConfig, get_settings
from preview_orchestrator.errors import (
    NoActiveSessionError,
    NotFoundError,
    PreviewError,
    ProvisioningError,
    RequestTimeoutError,
    StartTimeoutError,
    SyncAgentError,
    ValidationError,
)
from preview_orchestrator.models.session import (
    NON_TERMINAL_STATUSES,
    LIVE_STATUSES,
    PreviewSession,
    PreviewStatus,
)
from preview_orchestrator.provisioners.base import ProvisionerError, VMState
from preview_orchestrator.utils.datetime import utcnow
from preview_orchestrator.validators import validate_relative_path, validate_snapshot

if TYPE_CHECKING:
    from preview_orchestrator.provisioners.base import Provisioner
    from preview_orchestrator.services.content import ContentStore

logger = structlog.get_logger()

AgentFactory = Callable[[str], SyncAgentClient]

# Provisioner states in which the session's VM can no longer serve it
VM_GONE_STATES = frozenset(
    {VMState.NOT_FOUND, VMState.DESTROYED, VMState.FAILED, VMState.STOPPED}
)


@dataclass(frozen=True, slots=True)
class StartResult:
    session: PreviewSession
    preview_url: str | None
    sync_url: str | None
    created: bool


@dataclass(frozen=True, slots=True)
class SyncResult:
    synced_at: datetime
    file_count: int


@dataclass(frozen=True, slots=True)
class UpdateResult:
    path: str
    updated_at: datetime


@dataclass
class _StartProgress:
    """What a start attempt has acquired so far, for cleanup on failure."""

    vm_id: str | None = None

    def record_vm(self, vm_id: str) -> None:
        self.vm_id = vm_id


class PreviewManager:
    """Manages preview session lifecycle."""

    def __init__(
        self,
        provisioner: "Provisioner",
        content_store: "ContentStore",
        db_session: AsyncSession,
        *,
        config: SessionConfig | None = None,
        agent_factory: AgentFactory | None = None,
    ) -> None:
        self._provisioner = provisioner
        self._content_store = content_store
        self._db = db_session
        self._config = config or get_settings().session
        self._agent_factory = agent_factory or SyncAgentClient
        self._log = logger.bind(manager="preview")

    # ---- Reads ----

    async def get_active_session(self, workspace_id: str) -> PreviewSession | None:
        """Return the workspace's active session, if any.

        Expired sessions are never returned, even before the sweep has
        reclaimed them.
        """
        _require_workspace_id(workspace_id)
        result = await self._db.execute(
            select(PreviewSession)
            .where(
                PreviewSession.workspace_id == workspace_id,
                PreviewSession.status.in_(LIVE_STATUSES),
                PreviewSession.expires_at > utcnow(),
            )
            .order_by(PreviewSession.created_at.desc())
        )
        return result.scalars().first()

    async def get_session(self, session_id: str) -> PreviewSession:
        result = await self._db.execute(
            select(PreviewSession).where(PreviewSession.id == session_id)
        )
        session = result.scalars().first()
        if session is None:
            raise NotFoundError(f"Preview session not found: {session_id}")
        return session

    # ---- Start ----

    async def start_preview(self, workspace_id: str) -> StartResult:
        """Start (or return) the workspace's preview session.

        Idempotent: while an active session exists it is returned and no VM
        is provisioned. Stale non-terminal sessions are stopped first.

        Raises:
            StartTimeoutError: If the start sequence exceeds the start timeout
            ProvisioningError: If any step of the start sequence fails
        """
        _require_workspace_id(workspace_id)

        lock = await get_workspace_lock(workspace_id)
        async with lock:
            await self._db.rollback()
            now = utcnow()
            sessions = await self._locked_non_terminal(workspace_id)

            for session in sessions:
                if session.is_active(now):
                    self._log.info(
                        "preview.start.reuse",
                        workspace_id=workspace_id,
                        session_id=session.id,
                        status=session.status.value,
                    )
                    return StartResult(
                        session=session,
                        preview_url=session.preview_url,
                        sync_url=session.sync_url,
                        created=False,
                    )

            for session in sessions:
                await self._stop_session(session, reason="stale")

            session = PreviewSession(
                id=f"prev-{uuid.uuid4().hex[:12]}",
                workspace_id=workspace_id,
                status=PreviewStatus.STARTING,
                expires_at=now + timedelta(seconds=self._config.ttl_seconds),
                last_activity_at=now,
                created_at=now,
                updated_at=now,
            )
            self._db.add(session)
            await self._db.commit()

            session_id = session.id
            self._log.info("preview.start", workspace_id=workspace_id, session_id=session_id)

            progress = _StartProgress()
            try:
                file_count, synced_at = await asyncio.wait_for(
                    self._provision(session, progress),
                    timeout=self._config.start_timeout_seconds,
                )
            except asyncio.TimeoutError as e:
                error: ProvisioningError = StartTimeoutError(
                    f"Preview start timed out after {self._config.start_timeout_seconds:g}s",
                    details={"session_id": session_id},
                )
                await self._fail_start(session_id, progress, error)
                raise error from e
            except Exception as e:
                error = ProvisioningError(
                    f"Failed to start preview: {_describe(e)}",
                    details={"session_id": session_id},
                )
                await self._fail_start(session_id, progress, error)
                raise error from e

            now = utcnow()
            session.status = PreviewStatus.RUNNING
            session.error_message = None
            session.file_count = file_count
            session.files_synced_at = synced_at
            session.last_activity_at = now
            session.expires_at = now + timedelta(seconds=self._config.ttl_seconds)
            session.consecutive_failures = 0
            session.touch(now)
            await self._db.commit()
            await self._db.refresh(session)

            self._log.info(
                "preview.started",
                workspace_id=workspace_id,
                session_id=session_id,
                vm_id=session.vm_id,
                file_count=file_count,
            )
            return StartResult(
                session=session,
                preview_url=session.preview_url,
                sync_url=session.sync_url,
                created=True,
            )

    async def _provision(
        self,
        session: PreviewSession,
        progress: _StartProgress,
    ) -> tuple[int, datetime | None]:
        """VM -> endpoints -> agent ready -> first push.

        Returns the pushed file count and push time (None when the content
        store had nothing to push).
        """
        vm = await self._provisioner.ensure_vm(session.workspace_id, on_vm_id=progress.record_vm)
        progress.vm_id = vm.vm_id

        session.vm_id = vm.vm_id
        session.vm_address = vm.address
        session.region = vm.region
        session.sync_url = vm.sync_url
        session.preview_url = vm.preview_url
        session.touch()
        await self._db.commit()

        self._log.info(
            "preview.vm_ready",
            session_id=session.id,
            vm_id=vm.vm_id,
            provisioner=self._provisioner.name,
        )

        agent = self._agent_factory(vm.sync_url)
        await agent.wait_until_ready(max_wait_seconds=self._config.ready_timeout_seconds)

        snapshot = await self._content_store.get_snapshot(session.workspace_id)
        if not snapshot:
            self._log.info("preview.start.empty_snapshot", session_id=session.id)
            return 0, None

        snapshot = validate_snapshot(snapshot)
        response = await agent.sync_files(snapshot, timeout=self._config.sync_timeout_seconds)
        return response.file_count, utcnow()

    async def _fail_start(
        self,
        session_id: str,
        progress: _StartProgress,
        error: ProvisioningError,
    ) -> None:
        self._log.error(
            "preview.start_failed",
            session_id=session_id,
            vm_id=progress.vm_id,
            code=error.code,
            error=error.message,
        )

        # The start sequence may have been cancelled mid-transaction
        await self._db.rollback()

        if progress.vm_id is not None:
            await self._destroy_vm_best_effort(progress.vm_id, session_id=session_id)

        result = await self._db.execute(
            select(PreviewSession).where(PreviewSession.id == session_id).with_for_update()
        )
        session = result.scalars().first()
        if session is None:
            return

        now = utcnow()
        session.status = PreviewStatus.ERROR
        session.error_message = error.message
        session.vm_id = None
        session.touch(now)
        await self._db.commit()

    # ---- File mutations ----

    async def sync_files(
        self,
        workspace_id: str,
        files: FileSnapshot | None = None,
    ) -> SyncResult:
        """Push a full snapshot to the workspace's running session.

        With ``files`` omitted the content store's current snapshot is used.
        Never starts a session.

        Raises:
            NotFoundError: If files were omitted and the store has none
            NoActiveSessionError: If no running session exists
            SyncAgentError / RequestTimeoutError: If the agent call fails
        """
        _require_workspace_id(workspace_id)

        if files is None:
            files = await self._content_store.get_snapshot(workspace_id)
            if not files:
                raise NotFoundError(
                    "No files found for workspace",
                    details={"workspace_id": workspace_id},
                )
        snapshot = validate_snapshot(files)

        lock = await get_workspace_lock(workspace_id)
        async with lock:
            await self._db.rollback()
            session = await self._locked_running(workspace_id)
            agent = self._agent(session.sync_url)

            try:
                response = await agent.sync_files(
                    snapshot, timeout=self._config.sync_timeout_seconds
                )
            except (SyncAgentError, RequestTimeoutError) as e:
                await self._record_failure(session, e)
                raise

            now = utcnow()
            session.file_count = response.file_count
            session.files_synced_at = now
            session.last_activity_at = now
            session.consecutive_failures = 0
            session.touch(now)
            await self._db.commit()

            self._log.info(
                "preview.synced",
                workspace_id=workspace_id,
                session_id=session.id,
                file_count=response.file_count,
                installed=response.installed,
            )
            return SyncResult(synced_at=now, file_count=response.file_count)

    async def update_file(self, workspace_id: str, path: str, content: str) -> UpdateResult:
        """Write a single file on the running session's VM.

        Leaves file_count, files_synced_at and last_activity_at untouched;
        those track full snapshots only.
        """
        _require_workspace_id(workspace_id)
        normalized = validate_relative_path(path)

        lock = await get_workspace_lock(workspace_id)
        async with lock:
            await self._db.rollback()
            session = await self._locked_running(workspace_id)
            agent = self._agent(session.sync_url)

            try:
                response = await agent.update_file(
                    normalized, content, timeout=self._config.update_timeout_seconds
                )
            except (SyncAgentError, RequestTimeoutError) as e:
                await self._record_failure(session, e)
                raise

            now = utcnow()
            if session.consecutive_failures:
                session.consecutive_failures = 0
            session.touch(now)
            await self._db.commit()

            self._log.info(
                "preview.file_updated",
                workspace_id=workspace_id,
                session_id=session.id,
                path=response.path,
            )
            return UpdateResult(path=response.path, updated_at=now)

    # ---- Lifetime ----

    async def extend_session(self, workspace_id: str) -> PreviewSession:
        """Push the active session's deadline out by the extend increment.

        ``expires_at = max(expires_at, now) + extend``. No VM interaction.
        """
        _require_workspace_id(workspace_id)

        lock = await get_workspace_lock(workspace_id)
        async with lock:
            await self._db.rollback()
            now = utcnow()
            session = next(
                (s for s in await self._locked_non_terminal(workspace_id) if s.is_active(now)),
                None,
            )
            if session is None:
                raise NoActiveSessionError(details={"workspace_id": workspace_id})

            base = session.expires_at if session.expires_at > now else now
            session.expires_at = base + timedelta(seconds=self._config.extend_seconds)
            session.last_activity_at = now
            session.touch(now)
            await self._db.commit()
            await self._db.refresh(session)

            self._log.info(
                "preview.extended",
                workspace_id=workspace_id,
                session_id=session.id,
                expires_at=session.expires_at.isoformat(),
            )
            return session

    async def stop_preview(self, workspace_id: str) -> bool:
        """Stop every non-terminal session of the workspace.

        Idempotent: returns False when there was nothing to stop.
        """
        _require_workspace_id(workspace_id)

        lock = await get_workspace_lock(workspace_id)
        async with lock:
            await self._db.rollback()
            sessions = await self._locked_non_terminal(workspace_id)
            for session in sessions:
                await self._stop_session(session, reason="requested")
            return bool(sessions)

    # ---- Sweep entry points ----

    async def stop_expired(self, workspace_id: str) -> int:
        """Stop the workspace's non-terminal sessions that are past expiry.

        Re-checks under the lock: a session extended in the meantime is left
        alone. Returns the number of sessions stopped.
        """
        lock = await get_workspace_lock(workspace_id)
        async with lock:
            await self._db.rollback()
            now = utcnow()
            stopped = 0
            for session in await self._locked_non_terminal(workspace_id):
                if session.is_expired(now):
                    await self._stop_session(session, reason="expired")
                    stopped += 1
            return stopped

    async def check_unhealthy(self, session_id: str) -> bool:
        """Re-check a running session with repeated agent failures.

        The provisioner is asked first: a VM that is gone demotes the session
        without contacting the agent. Otherwise a session whose agent does not answer
        /health is marked ``error`` and its VM destroyed. A healthy agent
        resets the failure counter.
        Returns whether the session was demoted.
        """
        session = await self.get_session(session_id)
        lock = await get_workspace_lock(session.workspace_id)
        async with lock:
            await self._db.rollback()
            session = await self._locked_by_id(session_id)
            if (
                session is None
                or session.status != PreviewStatus.RUNNING
                or session.consecutive_failures < self._config.failure_threshold
            ):
                return False

            vm_state = await self._vm_state(session)
            if vm_state in VM_GONE_STATES:
                await self._mark_error(session, f"Preview VM is {vm_state.value}")
                return True

            if await self._agent_answers(session):
                self._log.info(
                    "preview.health.recovered",
                    session_id=session_id,
                    failures=session.consecutive_failures,
                )
                session.consecutive_failures = 0
                session.touch()
                await self._db.commit()
                return False

            await self._mark_error(
                session,
                f"Sync agent unhealthy after {session.consecutive_failures} consecutive failures",
            )
            return True

    async def _vm_state(self, session: PreviewSession) -> VMState | None:
        """Provisioner view of the session's VM; None when it cannot tell."""
        if not session.vm_id:
            return None
        try:
            return await self._provisioner.status(session.vm_id)
        except ProvisionerError as e:
            self._log.warning(
                "preview.health.vm_status_failed",
                session_id=session.id,
                vm_id=session.vm_id,
                error=str(e),
            )
            return None

    async def _agent_answers(self, session: PreviewSession) -> bool:
        if not session.sync_url:
            return False
        try:
            health = await self._agent(session.sync_url).get_health()
        except (SyncAgentError, RequestTimeoutError) as e:
            self._log.info("preview.health.check_failed", session_id=session.id, error=e.message)
            return False
        if not health.vite_running:
            self._log.warning("preview.health.dev_server_down", session_id=session.id)
        return True

    async def fail_stale_start(self, session_id: str) -> bool:
        """Mark a session stuck in ``starting`` past the start timeout as error."""
        session = await self.get_session(session_id)
        lock = await get_workspace_lock(session.workspace_id)
        async with lock:
            await self._db.rollback()
            session = await self._locked_by_id(session_id)
            if session is None or session.status != PreviewStatus.STARTING:
                return False

            deadline = session.created_at + timedelta(seconds=self._config.start_timeout_seconds)
            if utcnow() < deadline:
                return False

            await self._mark_error(session, "Preview start did not complete")
            return True

    # ---- Internals ----

    def _agent(self, sync_url: str | None) -> SyncAgentClient:
        if not sync_url:
            raise SyncAgentError("Preview session has no sync endpoint")
        return self._agent_factory(sync_url)

    async def _locked_non_terminal(self, workspace_id: str) -> list[PreviewSession]:
        result = await self._db.execute(
            select(PreviewSession)
            .where(
                PreviewSession.workspace_id == workspace_id,
                PreviewSession.status.in_(NON_TERMINAL_STATUSES),
            )
            .order_by(PreviewSession.created_at.desc())
            .with_for_update()
        )
        return list(result.scalars().all())

    async def _locked_by_id(self, session_id: str) -> PreviewSession | None:
        result = await self._db.execute(
            select(PreviewSession).where(PreviewSession.id == session_id).with_for_update()
        )
        return result.scalars().first()

    async def _locked_running(self, workspace_id: str) -> PreviewSession:
        now = utcnow()
        for session in await self._locked_non_terminal(workspace_id):
            if not session.is_active(now):
                continue
            if session.status == PreviewStatus.RUNNING and session.sync_url:
                return session
            raise NoActiveSessionError(
                "Preview session is still starting",
                details={"workspace_id": workspace_id, "session_id": session.id},
            )
        raise NoActiveSessionError(details={"workspace_id": workspace_id})

    async def _stop_session(self, session: PreviewSession, *, reason: str) -> None:
        self._log.info(
            "preview.stop",
            workspace_id=session.workspace_id,
            session_id=session.id,
            reason=reason,
        )
        session.status = PreviewStatus.STOPPING
        session.touch()
        await self._db.commit()

        if session.vm_id:
            await self._destroy_vm_best_effort(session.vm_id, session_id=session.id)

        now = utcnow()
        session.status = PreviewStatus.STOPPED
        session.stopped_at = now
        session.touch(now)
        await self._db.commit()
        self._log.info("preview.stopped", session_id=session.id, reason=reason)

    async def _mark_error(self, session: PreviewSession, message: str) -> None:
        self._log.warning(
            "preview.error",
            workspace_id=session.workspace_id,
            session_id=session.id,
            error=message,
        )
        if session.vm_id:
            await self._destroy_vm_best_effort(session.vm_id, session_id=session.id)

        session.status = PreviewStatus.ERROR
        session.error_message = message
        session.vm_id = None
        session.touch()
        await self._db.commit()

    async def _record_failure(self, session: PreviewSession, error: PreviewError) -> None:
        now = utcnow()
        session.consecutive_failures += 1
        session.last_failure_at = now
        session.touch(now)
        await self._db.commit()
        self._log.warning(
            "preview.agent_failure",
            session_id=session.id,
            failures=session.consecutive_failures,
            code=error.code,
            error=error.message,
        )

    async def _destroy_vm_best_effort(self, vm_id: str, *, session_id: str) -> None:
        try:
            await self._provisioner.destroy_vm(vm_id)
        except Exception as e:
            self._log.warning(
                "preview.vm_destroy_failed",
                session_id=session_id,
                vm_id=vm_id,
                error=str(e),
            )


def _require_workspace_id(workspace_id: str) -> None:
    if not workspace_id or not workspace_id.strip():
        raise ValidationError("workspaceId is required", details={"field": "workspaceId"})


def _describe(error: Exception) -> str:
    if isinstance(error, PreviewError):
        return error.message
    return str(error) or type(error).__name__
