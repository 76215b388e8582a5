"""Sweep scheduler - periodic background reclamation."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import structlog

from preview_orchestrator.services.sweep.base import SweepResult, SweepTask

if TYPE_CHECKING:
    from preview_orchestrator.config import SweepConfig

logger = structlog.get_logger()


class SweepScheduler:
    """Runs sweep tasks serially, once per interval.

    Usage:
        scheduler = SweepScheduler(tasks=[...], config=settings.sweep)
        await scheduler.run_once()  # one cycle now
        await scheduler.start()     # background loop
        await scheduler.stop()
    """

    def __init__(self, tasks: list[SweepTask], config: "SweepConfig") -> None:
        self._tasks = tasks
        self._config = config
        self._log = logger.bind(service="sweep_scheduler")

        self._stopping = asyncio.Event()
        self._task: asyncio.Task | None = None

        # Prevents run_once / background loop overlap
        self._run_lock = asyncio.Lock()
        self._last_results: list[SweepResult] = []

    @property
    def is_running(self) -> bool:
        """Whether the background loop is running."""
        return self._task is not None and not self._task.done()

    @property
    def is_cycle_in_progress(self) -> bool:
        return self._run_lock.locked()

    @property
    def last_results(self) -> list[SweepResult]:
        return list(self._last_results)

    @property
    def task_names(self) -> list[str]:
        return [task.name for task in self._tasks]

    @asynccontextmanager
    async def _cycle_tasks(self) -> AsyncIterator[list[SweepTask]]:
        """Yield the tasks of one cycle; subclasses may build them per cycle."""
        yield self._tasks

    async def run_once(self, only: set[str] | None = None) -> list[SweepResult]:
        """Execute one sweep cycle, optionally restricted to the named tasks.

        If another cycle is in progress, this call waits for it first.
        """
        async with self._run_lock, self._cycle_tasks() as cycle_tasks:
            tasks = [t for t in cycle_tasks if only is None or t.name in only]
            self._log.info("sweep.cycle.start", tasks=[t.name for t in tasks])
            results = [await self._run_task(task) for task in tasks]
            self._log.info(
                "sweep.cycle.complete",
                total_cleaned=sum(r.cleaned_count for r in results),
                total_errors=sum(len(r.errors) for r in results),
            )
        self._last_results = results
        return results

    async def _run_task(self, task: SweepTask) -> SweepResult:
        """Execute a single task; a crash becomes an error result."""
        self._log.debug("sweep.task.start", task=task.name)

        try:
            result = await task.run()
        except Exception as e:
            self._log.exception("sweep.task.failed", task=task.name, error=str(e))
            result = SweepResult(task_name=task.name)
            result.add_error(f"Task failed: {e}")
            return result

        result.task_name = task.name
        self._log.info(
            "sweep.task.complete",
            task=task.name,
            cleaned=result.cleaned_count,
            skipped=result.skipped_count,
            errors=len(result.errors),
        )
        for error in result.errors:
            self._log.warning("sweep.task.item_error", task=task.name, error=error)
        return result

    async def start(self) -> None:
        """Start the background loop (every config.interval_seconds)."""
        if self._task is not None:
            self._log.warning("sweep.scheduler.already_running")
            return

        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._background_loop(), name="preview-sweep")
        self._log.info(
            "sweep.scheduler.started",
            interval_seconds=self._config.interval_seconds,
        )

    async def stop(self, timeout: float = 10.0) -> None:
        """Ask the loop to exit and wait for the current cycle to finish.

        A cycle that outlives ``timeout`` is cancelled.
        """
        task, self._task = self._task, None
        if task is None:
            return

        self._log.info("sweep.scheduler.stopping")
        self._stopping.set()
        try:
            await asyncio.wait_for(task, timeout=timeout)
        except asyncio.TimeoutError:
            self._log.warning("sweep.scheduler.stop_timeout", timeout=timeout)
        self._log.info("sweep.scheduler.stopped")

    async def _background_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except Exception as e:
                self._log.exception("sweep.scheduler.cycle_error", error=str(e))

            # Sleeps for the interval unless stop() wakes it first
            try:
                await asyncio.wait_for(
                    self._stopping.wait(), timeout=self._config.interval_seconds
                )
            except asyncio.TimeoutError:
                continue
