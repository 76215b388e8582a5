"""Background sweep for preview sessions.

This module reclaims:
- Expired sessions (ExpiredSessionSweep)
- Sessions whose agent stopped answering, and stale starts (UnhealthySessionSweep)
"""

from preview_orchestrator.services.sweep.base import SweepResult, SweepTask
from preview_orchestrator.services.sweep.scheduler import SweepScheduler

__all__ = [
    "SweepResult",
    "SweepScheduler",
    "SweepTask",
]
