from __future__ import annotations

from datetime import date

import structlog
from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from lapsewatch.analysis.inventory import InventoryService
from lapsewatch.analysis.rollup import ExtensionMatchPolicy
from lapsewatch.api.deps import get_clock, session_dependency
from lapsewatch.api.schemas import EntitlementResponse, GhostAccountResponse, GhostSummaryResponse
from lapsewatch.config import Settings, get_settings
from lapsewatch.core.errors import NotFoundError
from lapsewatch.db.repositories import GhostAccountRepository
from lapsewatch.scheduling.clock import Clock

router = APIRouter()
logger = structlog.get_logger()


class GhostAccountListResponse(BaseModel):
    items: list[GhostAccountResponse]
    total: int
    limit: int
    offset: int
    summary: GhostSummaryResponse


class ReviewRequest(BaseModel):
    reviewed_by: str = Field(min_length=1, max_length=255)
    notes: str | None = None


class GhostProductsResponse(BaseModel):
    account_id: str
    products: list[EntitlementResponse]


@router.get("/ghost-accounts", response_model=GhostAccountListResponse)
async def list_ghost_accounts(
    is_reviewed: bool | None = None,
    account_search: str | None = Query(default=None, max_length=255),
    expiry_before: date | None = None,
    expiry_after: date | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
) -> GhostAccountListResponse:
    repo = GhostAccountRepository(session)
    items, total = await repo.list_candidates(
        is_reviewed=is_reviewed,
        account_search=account_search,
        expiry_before=expiry_before,
        expiry_after=expiry_after,
        limit=limit,
        offset=offset,
    )
    return GhostAccountListResponse(
        items=[GhostAccountResponse.from_domain(item) for item in items],
        total=total,
        limit=limit,
        offset=offset,
        summary=GhostSummaryResponse.from_domain(await repo.summary()),
    )


@router.get("/ghost-accounts/{account_id}", response_model=GhostAccountResponse)
async def get_ghost_account(
    account_id: str,
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
) -> GhostAccountResponse:
    candidate = await GhostAccountRepository(session).get(account_id)
    if candidate is None:
        raise NotFoundError("ghost account not found", {"account_id": account_id})
    return GhostAccountResponse.from_domain(candidate)


@router.get("/ghost-accounts/{account_id}/products", response_model=GhostProductsResponse)
async def get_ghost_account_products(
    account_id: str,
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
    settings: Settings = Depends(get_settings),  # noqa: B008
    clock: Clock = Depends(get_clock),  # noqa: B008
) -> GhostProductsResponse:
    if await GhostAccountRepository(session).get(account_id) is None:
        raise NotFoundError("ghost account not found", {"account_id": account_id})

    inventory = InventoryService(
        session,
        ExtensionMatchPolicy.from_names(settings.extension_match_attributes),
        settings.at_risk_days,
    )
    products = await inventory.expired_products(account_id, clock.today())
    return GhostProductsResponse(
        account_id=account_id,
        products=[EntitlementResponse.from_domain(item) for item in products],
    )


@router.post("/ghost-accounts/{account_id}/review", response_model=GhostAccountResponse)
async def review_ghost_account(
    account_id: str,
    payload: ReviewRequest,
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
    clock: Clock = Depends(get_clock),  # noqa: B008
) -> GhostAccountResponse:
    candidate = await GhostAccountRepository(session).mark_reviewed(
        account_id, payload.reviewed_by, clock.now(), payload.notes
    )
    await session.commit()
    logger.info("ghost_account_reviewed", account_id=account_id, reviewed_by=payload.reviewed_by)
    return GhostAccountResponse.from_domain(candidate)


@router.delete("/ghost-accounts/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_ghost_account(
    account_id: str,
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
) -> None:
    removed = await GhostAccountRepository(session).remove(account_id)
    if not removed:
        raise NotFoundError("ghost account not found", {"account_id": account_id})
    await session.commit()
    logger.info("ghost_account_deleted", account_id=account_id)
