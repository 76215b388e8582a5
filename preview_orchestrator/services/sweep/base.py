"""Building blocks shared by the sweep tasks."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass
class SweepResult:
    """Outcome of one task in one cycle.

    ``cleaned_count`` counts sessions the task changed, ``skipped_count`` those
    that no longer qualified once their workspace lock was held.
    """

    task_name: str = ""
    cleaned_count: int = 0
    skipped_count: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def add_error(self, error: str) -> None:
        self.errors.append(error)


class SweepTask(ABC):
    """One kind of reclamation, run once per sweep cycle.

    A failure on one session goes into ``SweepResult.errors`` and the task
    moves on to the next session.
    """

    @property
    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    async def run(self) -> SweepResult: ...
