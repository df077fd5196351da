from __future__ import annotations

from typing import Awaitable, Callable, Generic, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """Runs at most one job at a time; triggers arriving meanwhile are skipped.

    Scheduled and manual triggers share one instance, so a manual refresh
    during a scheduled run returns ``None`` instead of queueing.

    ``try_acquire`` reserves the flight synchronously. Callers that hand the
    job to a background task reserve first and then call ``run_reserved``, so
    two back-to-back requests can never both be accepted.
    """

    def __init__(self, job: Callable[[str], Awaitable[T]]) -> None:
        self._job = job
        self._running: str | None = None

    @property
    def in_progress(self) -> bool:
        return self._running is not None

    @property
    def current_trigger(self) -> str | None:
        return self._running

    def try_acquire(self, trigger: str) -> bool:
        if self._running is not None:
            logger.info("run_skipped_in_progress", trigger=trigger, running=self._running)
            return False
        self._running = trigger
        return True

    def release(self) -> None:
        self._running = None

    async def run_reserved(self, trigger: str) -> T:
        """Run the job under a reservation taken with ``try_acquire``."""
        try:
            return await self._job(trigger)
        finally:
            self.release()

    async def run(self, trigger: str) -> T | None:
        if not self.try_acquire(trigger):
            return None
        return await self.run_reserved(trigger)
