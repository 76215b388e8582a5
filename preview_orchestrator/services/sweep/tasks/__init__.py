"""Sweep tasks for reclaiming preview sessions."""

from preview_orchestrator.services.sweep.tasks.expired_session import ExpiredSessionSweep
from preview_orchestrator.services.sweep.tasks.unhealthy_session import UnhealthySessionSweep

__all__ = [
    "ExpiredSessionSweep",
    "UnhealthySessionSweep",
]
