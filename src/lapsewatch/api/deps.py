from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from lapsewatch.config import get_settings
from lapsewatch.db.session import get_session
from lapsewatch.domain.models import RunReport
from lapsewatch.orchestration.runtime import Runtime
from lapsewatch.scheduling.clock import Clock, SystemClock
from lapsewatch.scheduling.scheduler import AnalysisScheduler


async def session_dependency() -> AsyncIterator[AsyncSession]:
    async for session in get_session():
        yield session


def get_clock() -> Clock:
    return SystemClock()


def get_runtime(request: Request) -> Runtime:
    """The runtime the application was started with."""
    runtime: Runtime | None = getattr(request.app.state, "runtime", None)
    if runtime is None:
        runtime = Runtime(get_settings())
        request.app.state.runtime = runtime
    return runtime


def get_scheduler(
    runtime: Runtime = Depends(get_runtime),  # noqa: B008
) -> AnalysisScheduler[RunReport]:
    """Manual refreshes share the scheduled runs' single-flight guard."""
    return runtime.scheduler
