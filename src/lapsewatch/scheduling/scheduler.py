from __future__ import annotations

import asyncio
from typing import Generic, TypeVar

import structlog

from lapsewatch.core.errors import RunInProgress
from lapsewatch.domain.models import RunTrigger
from lapsewatch.scheduling.single_flight import SingleFlight

logger = structlog.get_logger()

T = TypeVar("T")


class AnalysisScheduler(Generic[T]):
    """Fires the pipeline on a fixed interval and on demand.

    Both paths go through the same SingleFlight, so overlapping triggers are
    skipped rather than queued. Runs owned by another process are refused by
    the pipeline itself and count as skipped here.
    """

    def __init__(self, flight: SingleFlight[T], interval_seconds: float) -> None:
        self._flight = flight
        self._interval = interval_seconds
        self._stopping = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[T | None]] = set()
        self.ticks = 0

    @property
    def interval_seconds(self) -> float:
        return self._interval

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def in_progress(self) -> bool:
        return self._flight.in_progress

    def refresh_in_background(self) -> asyncio.Task[T | None] | None:
        """Start a manual run without waiting for it; None if one is already running."""
        if not self._flight.try_acquire(RunTrigger.manual):
            return None
        task = asyncio.create_task(self._run_guarded(RunTrigger.manual, reserved=True))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _run_guarded(self, trigger: RunTrigger, *, reserved: bool = False) -> T | None:
        try:
            if reserved:
                return await self._flight.run_reserved(trigger)
            return await self._flight.run(trigger)
        except RunInProgress as exc:
            logger.info("run_skipped_in_progress", trigger=trigger.value, **exc.details)
            return None
        except Exception:
            logger.exception("run_crashed", trigger=trigger.value)
            return None

    async def tick(self) -> T | None:
        self.ticks += 1
        return await self._run_guarded(RunTrigger.scheduled)

    async def run_forever(self) -> None:
        logger.info("scheduler_started", interval_seconds=self._interval)
        while not self._stopping.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue
        logger.info("scheduler_stopped", ticks=self.ticks)

    def start(self) -> asyncio.Task[None]:
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self) -> None:
        """Stop after the run in progress, if any, finishes."""
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
