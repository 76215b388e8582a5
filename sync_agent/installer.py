"""Dependency installer.

Runs the configured install command (``npm install`` by default) to
completion before a dev server is (re)started against the new tree.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import structlog

from sync_agent.errors import DependencyInstallError

logger = structlog.get_logger()

# Keep error payloads small; npm output can be very long
_OUTPUT_TAIL_CHARS = 2000


class DependencyInstaller:
    def __init__(self, command: list[str], *, cwd: str | Path, timeout: float) -> None:
        self._command = list(command)
        self._cwd = str(cwd)
        self._timeout = timeout
        self._log = logger.bind(component="installer")

    async def install(self) -> None:
        """Run the install command.

        Raises:
            DependencyInstallError: non-zero exit, timeout, or missing binary
        """
        self._log.info("agent.install.start", command=self._command, cwd=self._cwd)
        loop = asyncio.get_running_loop()
        started = loop.time()

        try:
            process = await asyncio.create_subprocess_exec(
                *self._command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=self._cwd,
            )
        except FileNotFoundError as e:
            raise DependencyInstallError(f"Install command not found: {self._command[0]}") from e

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError:
            try:
                process.kill()
                await process.wait()
            except ProcessLookupError:
                pass
            self._log.error("agent.install.timeout", timeout=self._timeout)
            raise DependencyInstallError(f"Dependency install timed out after {self._timeout}s")

        output = (stdout or b"").decode("utf-8", errors="replace")
        exit_code = process.returncode or 0
        elapsed_ms = int((loop.time() - started) * 1000)

        if exit_code != 0:
            tail = output[-_OUTPUT_TAIL_CHARS:]
            self._log.error(
                "agent.install.failed",
                exit_code=exit_code,
                elapsed_ms=elapsed_ms,
                output=tail,
            )
            raise DependencyInstallError(
                f"Dependency install failed with exit code {exit_code}",
                exit_code=exit_code,
                output=tail,
            )

        self._log.info("agent.install.complete", elapsed_ms=elapsed_ms)
