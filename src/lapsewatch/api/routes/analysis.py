from __future__ import annotations

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from lapsewatch.api.deps import get_clock, get_scheduler, session_dependency
from lapsewatch.api.schemas import RunReportResponse, SummaryResponse
from lapsewatch.config import Settings, get_settings
from lapsewatch.core.errors import RunInProgress
from lapsewatch.db.repositories import AccountAnalysisRepository, AnalysisRunRepository
from lapsewatch.domain.models import RunReport
from lapsewatch.scheduling.clock import Clock
from lapsewatch.scheduling.scheduler import AnalysisScheduler

router = APIRouter()
logger = structlog.get_logger()


class RefreshResponse(BaseModel):
    status: str


class AnalysisStatusResponse(BaseModel):
    in_progress: bool
    last_run: RunReportResponse | None = None
    last_successful_run_at: datetime | None = None
    last_analyzed_at: datetime | None = None
    summary: SummaryResponse


@router.post(
    "/analysis/refresh",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=RefreshResponse,
)
async def refresh_analysis(
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
    settings: Settings = Depends(get_settings),  # noqa: B008
    clock: Clock = Depends(get_clock),  # noqa: B008
    scheduler: AnalysisScheduler[RunReport] = Depends(get_scheduler),  # noqa: B008
) -> RefreshResponse:
    active = await AnalysisRunRepository(session).active_run(clock.now(), settings.run_stale_after)
    if active is not None:
        raise RunInProgress(
            "Analysis already in progress",
            {"run_id": active.run_id, "started_at": active.started_at.isoformat()},
        )
    task = scheduler.refresh_in_background()
    if task is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Analysis already in progress"
        )
    logger.info("manual_refresh_accepted")
    return RefreshResponse(status="started")


@router.get("/analysis/status", response_model=AnalysisStatusResponse)
async def analysis_status(
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
    scheduler: AnalysisScheduler[RunReport] = Depends(get_scheduler),  # noqa: B008
) -> AnalysisStatusResponse:
    runs = AnalysisRunRepository(session)
    analysis = AccountAnalysisRepository(session)
    last_run = await runs.latest()
    last_successful = await runs.latest_successful()

    return AnalysisStatusResponse(
        in_progress=scheduler.in_progress,
        last_run=RunReportResponse.from_domain(last_run) if last_run else None,
        last_successful_run_at=last_successful.finished_at if last_successful else None,
        last_analyzed_at=await analysis.last_analyzed(),
        summary=SummaryResponse.from_domain(await analysis.totals()),
    )


@router.get("/analysis/runs", response_model=list[RunReportResponse])
async def list_runs(
    limit: int = Query(default=20, ge=1, le=200),
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
) -> list[RunReportResponse]:
    runs = await AnalysisRunRepository(session).recent(limit)
    return [RunReportResponse.from_domain(run) for run in runs]
