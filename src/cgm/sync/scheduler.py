"""Background sync scheduler.

Runs one cycle immediately on ``start()`` and then every ``interval_seconds``,
measured from the start of each cycle.  A cycle that overruns the interval
delays the next one, so scheduled cycles never overlap.  ``run_now()`` runs an
extra manual cycle alongside the schedule.

Cycle-level failures (e.g. the database is unreachable) are logged and the
loop carries on with the next tick.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime

from src.cgm.sync.orchestrator import CycleResult, SyncOrchestrator
from src.models.base import utc_now

logger = logging.getLogger("guardianview.cgm.sync.scheduler")


@dataclass
class SchedulerStatus:
    """Snapshot returned by ``SyncScheduler.status()``."""

    running: bool
    interval_seconds: float
    cycles_run: int
    last_started_at: datetime | None
    last_result: CycleResult | None
    last_error: str | None


class SyncScheduler:
    """Repeat ``orchestrator.run_cycle()`` on a fixed interval.

    Usage::

        scheduler = SyncScheduler(orchestrator, interval_seconds=60)
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(self, orchestrator: SyncOrchestrator, interval_seconds: float = 60.0) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._orchestrator = orchestrator
        self._interval = interval_seconds
        self._task: asyncio.Task | None = None
        self._cycles_run = 0
        self._last_started_at: datetime | None = None
        self._last_result: CycleResult | None = None
        self._last_error: str | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Launch the background loop.  No-op if already running."""
        if self.running:
            return
        logger.info("Starting background sync (%gs interval)", self._interval)
        self._task = asyncio.create_task(self._loop(), name="guardianview-sync")

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Background sync stopped")

    async def run_now(self) -> CycleResult:
        """Run one extra cycle immediately and return its result.

        Cycle-level errors propagate to the caller.
        """
        return await self._run("manual")

    def status(self) -> SchedulerStatus:
        return SchedulerStatus(
            running=self.running,
            interval_seconds=self._interval,
            cycles_run=self._cycles_run,
            last_started_at=self._last_started_at,
            last_result=self._last_result,
            last_error=self._last_error,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _loop(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            started = loop.time()
            try:
                await self._run("scheduled")
            except Exception:
                logger.exception("Sync cycle failed; retrying next tick")
            elapsed = loop.time() - started
            await asyncio.sleep(max(0.0, self._interval - elapsed))

    async def _run(self, trigger: str) -> CycleResult:
        self._last_started_at = utc_now()
        try:
            result = await self._orchestrator.run_cycle(trigger)
        except Exception as exc:
            self._last_error = str(exc) or exc.__class__.__name__
            raise
        self._cycles_run += 1
        self._last_result = result
        self._last_error = None
        return result
