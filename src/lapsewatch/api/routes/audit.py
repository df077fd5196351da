from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from lapsewatch.api.deps import session_dependency
from lapsewatch.api.schemas import AuditEntryResponse, AuditStatsResponse
from lapsewatch.core.errors import NotFoundError
from lapsewatch.db.repositories import AuditRepository

router = APIRouter()


@router.get("/audit/records/{record_ref}", response_model=list[AuditEntryResponse])
async def record_history(
    record_ref: str,
    limit: int = Query(default=100, ge=1, le=1000),
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
) -> list[AuditEntryResponse]:
    """Ledger entries for a record, by record id or record name, newest first."""
    entries = await AuditRepository(session).history(record_ref, limit)
    if not entries:
        raise NotFoundError("no audit entries for record", {"record": record_ref})
    return [AuditEntryResponse.from_domain(entry) for entry in entries]


@router.get("/audit/status-changes", response_model=list[AuditEntryResponse])
async def status_changes(
    since: datetime | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
) -> list[AuditEntryResponse]:
    if since is not None and since.tzinfo is not None:
        since = since.astimezone(timezone.utc).replace(tzinfo=None)
    entries = await AuditRepository(session).status_changes(since, limit)
    return [AuditEntryResponse.from_domain(entry) for entry in entries]


@router.get("/audit/stats", response_model=AuditStatsResponse)
async def audit_stats(
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
) -> AuditStatsResponse:
    return AuditStatsResponse.from_domain(await AuditRepository(session).stats())
