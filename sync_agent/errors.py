"""Sync agent errors.

Every error raised while applying a snapshot is reported to the orchestrator
as ``500 {"error": message}``; path problems are client errors (400) and are
signalled with ``preview_protocol.UnsafePathError`` instead.
"""

from __future__ import annotations


class AgentError(Exception):
    """Base error for sync agent failures."""

    status_code: int = 500


class WorkspaceWriteError(AgentError):
    """Writing a file under the project root failed."""


class DependencyInstallError(AgentError):
    """The dependency install command failed or timed out."""

    def __init__(self, message: str, *, exit_code: int | None = None, output: str = "") -> None:
        self.exit_code = exit_code
        self.output = output
        super().__init__(message)


class DevServerSpawnError(AgentError):
    """The dev-server process could not be started."""
