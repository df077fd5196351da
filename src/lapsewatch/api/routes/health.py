from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lapsewatch.api.deps import get_scheduler, session_dependency
from lapsewatch.db.repositories import AnalysisRunRepository
from lapsewatch.domain.models import RunReport
from lapsewatch.scheduling.scheduler import AnalysisScheduler

router = APIRouter()


class HealthResponse(BaseModel):
    status: str
    version: str = "0.1.0"
    analysis_in_progress: bool


class ReadinessResponse(BaseModel):
    status: str
    database: str
    last_successful_run_at: datetime | None = None


@router.get("/health", response_model=HealthResponse)
async def health_check(
    scheduler: AnalysisScheduler[RunReport] = Depends(get_scheduler),  # noqa: B008
) -> HealthResponse:
    return HealthResponse(status="healthy", analysis_in_progress=scheduler.in_progress)


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
) -> ReadinessResponse:
    """Ready once the run log is readable; a missing first run does not block readiness."""
    try:
        last = await AnalysisRunRepository(session).latest_successful()
    except (SQLAlchemyError, ConnectionError, TimeoutError, OSError):
        return ReadinessResponse(status="not_ready", database="disconnected")

    return ReadinessResponse(
        status="ready",
        database="connected",
        last_successful_run_at=last.finished_at if last else None,
    )
