"""Unit tests for PreviewManager.

Tests the session state machine using FakeProvisioner, FakeContentStore,
FakeSyncAgent and file-backed SQLite.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from preview_orchestrator.config import SessionConfig
from preview_orchestrator.errors import (
    InvalidPathError,
    NoActiveSessionError,
    NotFoundError,
    ProvisioningError,
    RequestTimeoutError,
    StartTimeoutError,
    SyncAgentError,
    ValidationError,
)
from preview_orchestrator.managers.preview import PreviewManager
from preview_orchestrator.models.session import PreviewSession, PreviewStatus
from preview_orchestrator.provisioners.base import ProvisionerError
from preview_orchestrator.utils.datetime import utcnow
from tests.fakes import FakeContentStore, FakeProvisioner, FakeSyncAgent

WS1_FILES = {
    "package.json": '{"name": "ws1", "scripts": {"dev": "vite"}}',
    "src/App.tsx": "export default function App() { return null }",
}


@pytest.fixture
def fake_provisioner() -> FakeProvisioner:
    return FakeProvisioner()


@pytest.fixture
def fake_store() -> FakeContentStore:
    return FakeContentStore({"ws1": dict(WS1_FILES)})


@pytest.fixture
def fake_agent() -> FakeSyncAgent:
    return FakeSyncAgent()


@pytest.fixture
def preview_manager(
    fake_provisioner: FakeProvisioner,
    fake_store: FakeContentStore,
    fake_agent: FakeSyncAgent,
    db_session: AsyncSession,
    session_config: SessionConfig,
) -> PreviewManager:
    return PreviewManager(
        provisioner=fake_provisioner,
        content_store=fake_store,
        db_session=db_session,
        config=session_config,
        agent_factory=fake_agent.factory,
    )


async def _all_sessions(db_session: AsyncSession, workspace_id: str) -> list[PreviewSession]:
    await db_session.rollback()
    result = await db_session.execute(
        select(PreviewSession)
        .where(PreviewSession.workspace_id == workspace_id)
        .order_by(PreviewSession.created_at)
    )
    return list(result.scalars().all())


async def _expire(db_session: AsyncSession, session: PreviewSession) -> None:
    session.expires_at = utcnow() - timedelta(seconds=1)
    await db_session.commit()


class TestStartPreview:
    async def test_start_provisions_vm_and_pushes_snapshot(
        self,
        preview_manager: PreviewManager,
        fake_provisioner: FakeProvisioner,
        fake_agent: FakeSyncAgent,
    ):
        result = await preview_manager.start_preview("ws1")

        session = result.session
        assert result.created is True
        assert session.id.startswith("prev-")
        assert session.status == PreviewStatus.RUNNING
        assert session.file_count == 2
        assert session.files_synced_at is not None
        assert session.vm_id == "fake-vm-1"
        assert result.preview_url == "https://fake-vm-1.preview.test"
        assert result.sync_url == "http://fake-vm-1.internal:3001"

        assert fake_provisioner.ensure_calls == ["ws1"]
        vm = fake_agent.vm(result.sync_url)
        assert vm.files == WS1_FILES
        assert vm.restarts == 1

    async def test_start_sets_expiry_from_ttl(
        self,
        preview_manager: PreviewManager,
        session_config: SessionConfig,
    ):
        before = utcnow()
        result = await preview_manager.start_preview("ws1")
        after = utcnow()

        ttl = timedelta(seconds=session_config.ttl_seconds)
        assert before + ttl <= result.session.expires_at <= after + ttl

    async def test_start_is_idempotent_while_active(
        self,
        preview_manager: PreviewManager,
        fake_provisioner: FakeProvisioner,
    ):
        first = await preview_manager.start_preview("ws1")
        second = await preview_manager.start_preview("ws1")

        assert second.created is False
        assert second.session.id == first.session.id
        assert second.preview_url == first.preview_url
        assert fake_provisioner.ensure_calls == ["ws1"]

    async def test_concurrent_starts_create_single_session(
        self,
        session_factory,
        fake_store: FakeContentStore,
        fake_agent: FakeSyncAgent,
        session_config: SessionConfig,
        db_session: AsyncSession,
    ):
        """Two callers racing on one workspace get the same session and one VM."""
        provisioner = FakeProvisioner(delay=0.05)

        async def start():
            async with session_factory() as session:
                manager = PreviewManager(
                    provisioner=provisioner,
                    content_store=fake_store,
                    db_session=session,
                    config=session_config,
                    agent_factory=fake_agent.factory,
                )
                result = await manager.start_preview("ws1")
                return result.session.id

        first_id, second_id = await asyncio.gather(start(), start())

        assert first_id == second_id
        assert provisioner.ensure_calls == ["ws1"]
        sessions = await _all_sessions(db_session, "ws1")
        assert [s.status for s in sessions] == [PreviewStatus.RUNNING]

    async def test_distinct_workspaces_get_distinct_sessions(
        self,
        preview_manager: PreviewManager,
        fake_provisioner: FakeProvisioner,
        fake_store: FakeContentStore,
    ):
        fake_store.snapshots["ws2"] = {"index.html": "<html></html>"}

        first = await preview_manager.start_preview("ws1")
        # The next start rolls back the db session, expiring loaded rows
        first_id, first_vm = first.session.id, first.session.vm_id
        second = await preview_manager.start_preview("ws2")

        assert first_id != second.session.id
        assert first_vm != second.session.vm_id
        assert fake_provisioner.ensure_calls == ["ws1", "ws2"]

    async def test_start_with_empty_snapshot_still_runs(
        self,
        preview_manager: PreviewManager,
        fake_agent: FakeSyncAgent,
    ):
        result = await preview_manager.start_preview("ws-empty")

        assert result.session.status == PreviewStatus.RUNNING
        assert result.session.file_count == 0
        assert result.session.files_synced_at is None
        assert fake_agent.vm(result.sync_url).sync_calls == []

    async def test_provisioner_failure_marks_error(
        self,
        preview_manager: PreviewManager,
        fake_provisioner: FakeProvisioner,
        db_session: AsyncSession,
    ):
        fake_provisioner.ensure_exception = ProvisionerError("no capacity in region")

        with pytest.raises(ProvisioningError) as exc_info:
            await preview_manager.start_preview("ws1")

        assert "no capacity in region" in exc_info.value.message
        sessions = await _all_sessions(db_session, "ws1")
        assert len(sessions) == 1
        assert sessions[0].status == PreviewStatus.ERROR
        assert "no capacity in region" in sessions[0].error_message
        assert fake_provisioner.destroy_calls == []
        assert await preview_manager.get_active_session("ws1") is None

    async def test_agent_never_ready_destroys_vm(
        self,
        preview_manager: PreviewManager,
        fake_provisioner: FakeProvisioner,
        fake_agent: FakeSyncAgent,
        db_session: AsyncSession,
    ):
        fake_agent.ready_exception = RequestTimeoutError("Sync agent failed to become ready")

        with pytest.raises(ProvisioningError):
            await preview_manager.start_preview("ws1")

        assert fake_provisioner.destroy_calls == ["fake-vm-1"]
        sessions = await _all_sessions(db_session, "ws1")
        assert sessions[0].status == PreviewStatus.ERROR
        assert sessions[0].vm_id is None

    async def test_first_push_failure_is_provisioning_error(
        self,
        preview_manager: PreviewManager,
        fake_provisioner: FakeProvisioner,
        fake_agent: FakeSyncAgent,
    ):
        fake_agent.fail_next_calls(SyncAgentError("Sync agent request failed (500): npm ERR!"))

        with pytest.raises(ProvisioningError) as exc_info:
            await preview_manager.start_preview("ws1")

        assert not isinstance(exc_info.value, StartTimeoutError)
        assert "npm ERR!" in exc_info.value.message
        assert fake_provisioner.destroy_calls == ["fake-vm-1"]

    async def test_start_timeout(
        self,
        fake_store: FakeContentStore,
        fake_agent: FakeSyncAgent,
        db_session: AsyncSession,
    ):
        provisioner = FakeProvisioner(delay=1.0)
        manager = PreviewManager(
            provisioner=provisioner,
            content_store=fake_store,
            db_session=db_session,
            config=SessionConfig(start_timeout_seconds=0.05),
            agent_factory=fake_agent.factory,
        )

        with pytest.raises(StartTimeoutError) as exc_info:
            await manager.start_preview("ws1")

        assert exc_info.value.code == "start_timeout"
        sessions = await _all_sessions(db_session, "ws1")
        assert sessions[0].status == PreviewStatus.ERROR
        assert sessions[0].vm_id is None
        # The VM created before the timeout is not left behind
        assert provisioner.destroy_calls == ["fake-vm-1"]
        assert provisioner.live_vms == []

    async def test_start_after_error_creates_new_session(
        self,
        preview_manager: PreviewManager,
        fake_provisioner: FakeProvisioner,
        db_session: AsyncSession,
    ):
        fake_provisioner.ensure_exception = ProvisionerError("boom")
        with pytest.raises(ProvisioningError):
            await preview_manager.start_preview("ws1")

        fake_provisioner.ensure_exception = None
        result = await preview_manager.start_preview("ws1")

        assert result.created is True
        sessions = await _all_sessions(db_session, "ws1")
        assert [s.status for s in sessions] == [PreviewStatus.ERROR, PreviewStatus.RUNNING]

    async def test_start_stops_expired_session_first(
        self,
        preview_manager: PreviewManager,
        fake_provisioner: FakeProvisioner,
        db_session: AsyncSession,
    ):
        old = (await preview_manager.start_preview("ws1")).session
        await _expire(db_session, old)

        new = (await preview_manager.start_preview("ws1")).session

        assert new.id != old.id
        assert fake_provisioner.destroy_calls == ["fake-vm-1"]
        sessions = await _all_sessions(db_session, "ws1")
        assert [s.status for s in sessions] == [PreviewStatus.STOPPED, PreviewStatus.RUNNING]
        assert sessions[0].stopped_at is not None

    async def test_blank_workspace_id_rejected(self, preview_manager: PreviewManager):
        with pytest.raises(ValidationError):
            await preview_manager.start_preview("  ")


class TestGetActiveSession:
    async def test_none_without_session(self, preview_manager: PreviewManager):
        assert await preview_manager.get_active_session("ws1") is None

    async def test_expired_session_is_hidden(
        self,
        preview_manager: PreviewManager,
        db_session: AsyncSession,
    ):
        session = (await preview_manager.start_preview("ws1")).session
        assert (await preview_manager.get_active_session("ws1")).id == session.id

        await _expire(db_session, session)

        assert await preview_manager.get_active_session("ws1") is None


class TestSyncFiles:
    async def test_sync_requires_running_session(
        self,
        preview_manager: PreviewManager,
        fake_provisioner: FakeProvisioner,
    ):
        with pytest.raises(NoActiveSessionError):
            await preview_manager.sync_files("ws1", {"a.txt": "a"})

        # Never starts a session implicitly
        assert fake_provisioner.ensure_calls == []

    async def test_sync_updates_counters(
        self,
        preview_manager: PreviewManager,
        fake_agent: FakeSyncAgent,
    ):
        started = (await preview_manager.start_preview("ws1")).session
        synced_before = started.files_synced_at

        result = await preview_manager.sync_files(
            "ws1",
            {"src/a.ts": "a", "src/b.ts": "b", "src/c.ts": "c"},
        )

        session = await preview_manager.get_active_session("ws1")
        assert result.file_count == 3
        assert session.file_count == 3
        assert session.files_synced_at == result.synced_at
        assert session.files_synced_at >= synced_before
        assert session.last_activity_at == result.synced_at

    async def test_sync_is_additive(
        self,
        preview_manager: PreviewManager,
        fake_agent: FakeSyncAgent,
    ):
        result = await preview_manager.start_preview("ws1")
        await preview_manager.sync_files("ws1", {"src/new.ts": "new"})

        files = fake_agent.vm(result.sync_url).files
        assert set(files) == {"package.json", "src/App.tsx", "src/new.ts"}

    async def test_sync_without_files_uses_content_store(
        self,
        preview_manager: PreviewManager,
        fake_store: FakeContentStore,
        fake_agent: FakeSyncAgent,
    ):
        result = await preview_manager.start_preview("ws1")
        fake_store.snapshots["ws1"]["README.md"] = "# ws1"

        synced = await preview_manager.sync_files("ws1")

        assert synced.file_count == 3
        assert fake_agent.vm(result.sync_url).files["README.md"] == "# ws1"

    async def test_sync_without_files_and_empty_store_is_not_found(
        self,
        preview_manager: PreviewManager,
    ):
        await preview_manager.start_preview("ws-empty")

        with pytest.raises(NotFoundError):
            await preview_manager.sync_files("ws-empty")

    async def test_sync_rejects_unsafe_paths_before_agent(
        self,
        preview_manager: PreviewManager,
        fake_agent: FakeSyncAgent,
    ):
        result = await preview_manager.start_preview("ws1")

        with pytest.raises(InvalidPathError):
            await preview_manager.sync_files("ws1", {"../../etc/passwd": "x"})

        assert len(fake_agent.vm(result.sync_url).sync_calls) == 1

    async def test_sync_rejects_empty_snapshot(self, preview_manager: PreviewManager):
        await preview_manager.start_preview("ws1")

        with pytest.raises(ValidationError):
            await preview_manager.sync_files("ws1", {})

    async def test_agent_failure_counts_but_keeps_running(
        self,
        preview_manager: PreviewManager,
        fake_agent: FakeSyncAgent,
    ):
        await preview_manager.start_preview("ws1")
        fake_agent.fail_next_calls()

        with pytest.raises(SyncAgentError):
            await preview_manager.sync_files("ws1", {"a.txt": "a"})
        with pytest.raises(SyncAgentError):
            await preview_manager.sync_files("ws1", {"a.txt": "a"})

        session = await preview_manager.get_active_session("ws1")
        assert session.status == PreviewStatus.RUNNING
        assert session.consecutive_failures == 2
        assert session.last_failure_at is not None

        fake_agent.fail_with = None
        await preview_manager.sync_files("ws1", {"a.txt": "a"})
        session = await preview_manager.get_active_session("ws1")
        assert session.consecutive_failures == 0

    async def test_sync_on_expired_session_is_rejected(
        self,
        preview_manager: PreviewManager,
        db_session: AsyncSession,
    ):
        session = (await preview_manager.start_preview("ws1")).session
        await _expire(db_session, session)

        with pytest.raises(NoActiveSessionError):
            await preview_manager.sync_files("ws1", {"a.txt": "a"})


class TestUpdateFile:
    async def test_update_leaves_full_sync_fields_alone(
        self,
        preview_manager: PreviewManager,
        fake_agent: FakeSyncAgent,
    ):
        started = (await preview_manager.start_preview("ws1")).session
        file_count = started.file_count
        synced_at = started.files_synced_at
        last_activity = started.last_activity_at

        result = await preview_manager.update_file("ws1", "./src/App.tsx", "export default 2")

        session = await preview_manager.get_active_session("ws1")
        assert result.path == "src/App.tsx"
        assert session.file_count == file_count
        assert session.files_synced_at == synced_at
        assert session.last_activity_at == last_activity

        vm = fake_agent.vm(started.sync_url)
        assert vm.files["src/App.tsx"] == "export default 2"
        assert vm.restarts == 1

    async def test_update_requires_running_session(self, preview_manager: PreviewManager):
        with pytest.raises(NoActiveSessionError):
            await preview_manager.update_file("ws1", "src/App.tsx", "x")

    @pytest.mark.parametrize("path", ["", "/etc/passwd", "../outside.txt", "a/../../b"])
    async def test_update_rejects_unsafe_path(self, preview_manager: PreviewManager, path: str):
        await preview_manager.start_preview("ws1")

        with pytest.raises(InvalidPathError):
            await preview_manager.update_file("ws1", path, "x")

    async def test_update_timeout_counts_failure(
        self,
        preview_manager: PreviewManager,
        fake_agent: FakeSyncAgent,
    ):
        await preview_manager.start_preview("ws1")
        fake_agent.fail_next_calls(RequestTimeoutError("Sync agent request timed out: /update"))

        with pytest.raises(RequestTimeoutError):
            await preview_manager.update_file("ws1", "src/App.tsx", "x")

        session = await preview_manager.get_active_session("ws1")
        assert session.consecutive_failures == 1


class TestExtendSession:
    async def test_extend_moves_only_deadline_and_activity(
        self,
        preview_manager: PreviewManager,
        session_config: SessionConfig,
        fake_provisioner: FakeProvisioner,
    ):
        started = (await preview_manager.start_preview("ws1")).session
        old_expires = started.expires_at
        old_count = started.file_count

        session = await preview_manager.extend_session("ws1")

        assert session.expires_at == old_expires + timedelta(seconds=session_config.extend_seconds)
        assert session.status == PreviewStatus.RUNNING
        assert session.file_count == old_count
        assert session.last_activity_at >= started.last_activity_at
        assert fake_provisioner.ensure_calls == ["ws1"]

    async def test_extend_without_session(self, preview_manager: PreviewManager):
        with pytest.raises(NoActiveSessionError):
            await preview_manager.extend_session("ws1")

    async def test_extend_expired_session_is_rejected(
        self,
        preview_manager: PreviewManager,
        db_session: AsyncSession,
    ):
        session = (await preview_manager.start_preview("ws1")).session
        await _expire(db_session, session)

        with pytest.raises(NoActiveSessionError):
            await preview_manager.extend_session("ws1")


class TestStopPreview:
    async def test_stop_is_idempotent(
        self,
        preview_manager: PreviewManager,
        fake_provisioner: FakeProvisioner,
        db_session: AsyncSession,
    ):
        await preview_manager.start_preview("ws1")

        assert await preview_manager.stop_preview("ws1") is True
        assert await preview_manager.stop_preview("ws1") is False

        assert fake_provisioner.destroy_calls == ["fake-vm-1"]
        assert fake_provisioner.live_vms == []
        sessions = await _all_sessions(db_session, "ws1")
        assert [s.status for s in sessions] == [PreviewStatus.STOPPED]
        assert await preview_manager.get_active_session("ws1") is None

    async def test_stop_without_session(self, preview_manager: PreviewManager):
        assert await preview_manager.stop_preview("ws1") is False

    async def test_stop_survives_destroy_failure(
        self,
        preview_manager: PreviewManager,
        fake_provisioner: FakeProvisioner,
        db_session: AsyncSession,
    ):
        await preview_manager.start_preview("ws1")
        fake_provisioner.destroy_exception = ProvisionerError("api down")

        assert await preview_manager.stop_preview("ws1") is True

        sessions = await _all_sessions(db_session, "ws1")
        assert sessions[0].status == PreviewStatus.STOPPED


class TestEndToEnd:
    async def test_ws1_scenario(
        self,
        preview_manager: PreviewManager,
        fake_agent: FakeSyncAgent,
    ):
        started = await preview_manager.start_preview("ws1")
        assert started.session.status == PreviewStatus.RUNNING
        assert started.session.file_count == 2
        vm = fake_agent.vm(started.sync_url)
        synced_at = started.session.files_synced_at
        last_activity = started.session.last_activity_at

        await preview_manager.update_file("ws1", "src/App.tsx", "export default () => 'v2'")

        session = await preview_manager.get_active_session("ws1")
        assert session.file_count == 2
        assert session.files_synced_at == synced_at
        assert session.last_activity_at == last_activity
        assert vm.restarts == 1

        await preview_manager.sync_files(
            "ws1",
            {
                "package.json": WS1_FILES["package.json"],
                "src/App.tsx": "export default () => 'v3'",
                "src/main.tsx": "import App from './App'",
            },
        )

        session = await preview_manager.get_active_session("ws1")
        assert session.file_count == 3
        assert vm.restarts == 2
        assert vm.files["src/App.tsx"] == "export default () => 'v3'"
