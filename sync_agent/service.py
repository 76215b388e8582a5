"""Sync service - applies snapshots and single-file updates.

One lock serializes every state transition of the VM:
write files -> maybe install -> kill old dev server -> spawn new one.
Health reads never take it.
File-system work runs in worker threads so /health keeps answering during a
large sync.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import structlog

from sync_agent.config import AgentSettings
from sync_agent.installer import DependencyInstaller
from sync_agent.supervisor import DevServerSupervisor
from sync_agent.workspace import ProjectWorkspace

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class SyncOutcome:
    file_count: int
    installed: bool
    restarted: bool


class SyncService:
    def __init__(
        self,
        workspace: ProjectWorkspace,
        installer: DependencyInstaller,
        supervisor: DevServerSupervisor,
    ) -> None:
        self._workspace = workspace
        self._installer = installer
        self._supervisor = supervisor
        self._lock = asyncio.Lock()
        self._log = logger.bind(component="sync_service")

    @classmethod
    def from_settings(cls, settings: AgentSettings) -> "SyncService":
        env = {"FORCE_COLOR": "1"} if settings.force_color else None
        return cls(
            workspace=ProjectWorkspace(
                settings.project_root,
                manifest_files=settings.manifest_files,
            ),
            installer=DependencyInstaller(
                settings.install_command,
                cwd=settings.project_root,
                timeout=settings.install_timeout,
            ),
            supervisor=DevServerSupervisor(
                settings.dev_command,
                cwd=settings.project_root,
                env=env,
            ),
        )

    @property
    def workspace(self) -> ProjectWorkspace:
        return self._workspace

    @property
    def supervisor(self) -> DevServerSupervisor:
        return self._supervisor

    async def apply_snapshot(self, files: dict[str, str]) -> SyncOutcome:
        """Apply a full snapshot and restart the dev server.

        If the dependency install fails the exception propagates before the
        running dev server is touched, so it keeps serving the previous tree.
        """
        async with self._lock:
            file_count = await asyncio.to_thread(self._workspace.write_snapshot, files)

            installed = False
            if await asyncio.to_thread(self._workspace.needs_install):
                await self._installer.install()
                await asyncio.to_thread(self._workspace.mark_installed)
                installed = True

            await self._supervisor.replace()

            self._log.info(
                "agent.sync.complete",
                file_count=file_count,
                installed=installed,
            )
            return SyncOutcome(file_count=file_count, installed=installed, restarted=True)

    async def apply_update(self, path: str, content: str) -> str:
        """Write one file; the dev server's watcher picks it up."""
        async with self._lock:
            return await asyncio.to_thread(self._workspace.write_file, path, content)
