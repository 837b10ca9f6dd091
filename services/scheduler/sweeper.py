from __future__ import annotations

import asyncio
from typing import Callable, List, Optional

import structlog

logger = structlog.get_logger(__name__)


class SweepTimer:
    """Runs ``jobs`` in a worker thread every ``interval_seconds``.

    A job that raises is logged and the loop carries on at the next tick.
    """

    def __init__(self, jobs: List[Callable[[], object]], interval_seconds: float = 60.0) -> None:
        self.jobs = jobs
        self.interval_seconds = interval_seconds
        self.ticks = 0
        self._task: Optional[asyncio.Task] = None

    def tick(self) -> None:
        for job in self.jobs:
            try:
                job()
            except Exception:
                logger.exception("sweep_job_failed", job=getattr(job, "__name__", repr(job)))
        self.ticks += 1

    async def run(self, iterations: Optional[int] = None) -> None:
        remaining = iterations
        while remaining is None or remaining > 0:
            await asyncio.sleep(self.interval_seconds)
            await asyncio.to_thread(self.tick)
            if remaining is not None:
                remaining -= 1

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="escalation-sweep")
            logger.info("sweep_timer_started", interval_seconds=self.interval_seconds)
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("sweep_timer_stopped", ticks=self.ticks)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
