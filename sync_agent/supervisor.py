"""Dev-server process supervisor.

Owns at most one dev-server child process. The only way to start one is
``replace()``, which signals the previous process and installs the new
handle under a lock, so the agent never holds two live handles.

Replacement is terminate-then-spawn-without-waiting: the old process gets
SIGTERM and a reaper task collects its exit in the background. Exit or
error noise from a superseded process is logged at debug level and
otherwise ignored.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import structlog

from sync_agent.errors import DevServerSpawnError

logger = structlog.get_logger()


class DevServerSupervisor:
    """Supervises the single dev-server process of this VM."""

    def __init__(
        self,
        command: list[str],
        *,
        cwd: str | Path,
        env: dict[str, str] | None = None,
    ) -> None:
        self._command = list(command)
        self._cwd = str(cwd)
        self._env = env
        self._process: asyncio.subprocess.Process | None = None
        self._lock = asyncio.Lock()
        self._watchers: set[asyncio.Task] = set()
        self._log = logger.bind(component="supervisor")

    @property
    def process(self) -> asyncio.subprocess.Process | None:
        return self._process

    @property
    def is_running(self) -> bool:
        """Whether a process handle is held.

        This does not probe the dev server itself; a crashed process keeps
        its handle until the next replace() or shutdown.
        """
        return self._process is not None

    async def replace(self) -> asyncio.subprocess.Process:
        """Terminate the current process (if any) and spawn a fresh one.

        Raises:
            DevServerSpawnError: if the new process cannot be started; the
                supervisor then holds no handle.
        """
        async with self._lock:
            previous = self._process
            self._process = None
            if previous is not None:
                self._log.info("agent.dev_server.terminating", pid=previous.pid)
                _terminate(previous)

            try:
                process = await asyncio.create_subprocess_exec(
                    *self._command,
                    cwd=self._cwd,
                    env=self._build_env(),
                )
            except OSError as e:
                self._log.error(
                    "agent.dev_server.spawn_failed",
                    command=self._command,
                    error=str(e),
                )
                raise DevServerSpawnError(f"Failed to start dev server: {e}") from e

            self._process = process
            self._watch(process)
            self._log.info("agent.dev_server.started", pid=process.pid, command=self._command)
            return process

    def terminate_nowait(self) -> None:
        """Send SIGTERM to the current process without waiting.

        Synchronous so it can run from a signal handler. The handle is kept:
        ``shutdown()`` still waits for the exit and escalates to SIGKILL.
        """
        process = self._process
        if process is not None:
            self._log.info("agent.dev_server.terminating", pid=process.pid)
            _terminate(process)

    async def shutdown(self, *, grace_period: float = 5.0) -> None:
        """Stop the current process, escalating to SIGKILL after the grace period."""
        async with self._lock:
            process = self._process
            self._process = None
            if process is None:
                return

            _terminate(process)
            try:
                await asyncio.wait_for(process.wait(), timeout=grace_period)
            except asyncio.TimeoutError:
                self._log.warning("agent.dev_server.kill", pid=process.pid)
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()
            self._log.info("agent.dev_server.stopped", pid=process.pid, returncode=process.returncode)

    def _build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        if self._env:
            env.update(self._env)
        return env

    def _watch(self, process: asyncio.subprocess.Process) -> None:
        task = asyncio.create_task(self._reap(process))
        self._watchers.add(task)
        task.add_done_callback(self._watchers.discard)

    async def _reap(self, process: asyncio.subprocess.Process) -> None:
        try:
            returncode = await process.wait()
        except Exception as e:
            self._log.debug("agent.dev_server.reap_error", pid=process.pid, error=str(e))
            return

        if process is self._process:
            # Handle is kept so health keeps reporting what was last started
            self._log.warning(
                "agent.dev_server.exited_unexpectedly",
                pid=process.pid,
                returncode=returncode,
            )
        else:
            self._log.debug(
                "agent.dev_server.superseded_exit",
                pid=process.pid,
                returncode=returncode,
            )


def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        pass
