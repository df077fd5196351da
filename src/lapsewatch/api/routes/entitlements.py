from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from lapsewatch.analysis.inventory import ExpiredAccount, ExpiredQuery, InventoryService
from lapsewatch.analysis.rollup import ExtensionMatchPolicy
from lapsewatch.api.deps import get_clock, session_dependency
from lapsewatch.api.schemas import EntitlementResponse, SummaryResponse
from lapsewatch.config import Settings, get_settings
from lapsewatch.db.repositories import AccountAnalysisRepository
from lapsewatch.domain.models import EntitlementCategory, LifecycleState
from lapsewatch.scheduling.clock import Clock

router = APIRouter()


class ExpiredAccountResponse(BaseModel):
    account_id: str
    account_name: str | None = None
    is_ghost_account: bool
    expired_products: list[EntitlementResponse]

    @classmethod
    def from_domain(cls, group: ExpiredAccount) -> ExpiredAccountResponse:
        return cls(
            account_id=group.account_id,
            account_name=group.account_name,
            is_ghost_account=group.is_ghost_account,
            expired_products=[EntitlementResponse.from_domain(i) for i in group.expired_products],
        )


class ExpiredSummaryResponse(BaseModel):
    total_accounts: int
    total_expired_products: int
    ghost_accounts: int
    regular_accounts: int


class ExpiredProductsResponse(BaseModel):
    accounts: list[ExpiredAccountResponse]
    summary: ExpiredSummaryResponse


class AccountEntitlementsResponse(BaseModel):
    account_id: str
    account_name: str | None = None
    window_days: int
    summary: SummaryResponse
    entitlements: list[EntitlementResponse]


def _inventory(session: AsyncSession, settings: Settings) -> InventoryService:
    return InventoryService(
        session,
        ExtensionMatchPolicy.from_names(settings.extension_match_attributes),
        settings.at_risk_days,
    )


@router.get("/entitlements/expiring", response_model=list[EntitlementResponse])
async def list_expiring(
    window_days: int | None = Query(default=None, ge=0, le=3650),
    urgency: str | None = Query(default=None, pattern="^(at-risk|upcoming)$"),
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
    settings: Settings = Depends(get_settings),  # noqa: B008
    clock: Clock = Depends(get_clock),  # noqa: B008
) -> list[EntitlementResponse]:
    """Expiring entitlements that no later request has extended.

    Without ``window_days`` the results of the last analysis run are served;
    with it the inventory is recomputed from the ledger for that window.
    """
    if window_days is None:
        items = await AccountAnalysisRepository(session).list_states(
            state=LifecycleState.expiring_soon, include_extended=False
        )
    else:
        items = await _inventory(session, settings).expiring(
            clock.today(), timedelta(days=window_days)
        )
    if urgency is not None:
        items = [item for item in items if item.urgency == urgency]
    return [EntitlementResponse.from_domain(item) for item in items]


@router.get("/entitlements/expired", response_model=ExpiredProductsResponse)
async def list_expired(
    category: EntitlementCategory | None = None,
    account: str | None = Query(default=None, min_length=1),
    product: str | None = Query(default=None, min_length=1),
    exclude_product: str | None = Query(default=None, min_length=1),
    ghost_accounts_only: bool = False,
    limit: int = Query(default=100, ge=1, le=1000),
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
    settings: Settings = Depends(get_settings),  # noqa: B008
) -> ExpiredProductsResponse:
    """Expired, non-extended products from the last analysis run, grouped by account."""
    groups = await _inventory(session, settings).expired(
        ExpiredQuery(
            category=category,
            account=account,
            product=product,
            exclude_product=exclude_product,
            ghost_accounts_only=ghost_accounts_only,
            limit=limit,
        )
    )
    ghosts = sum(1 for group in groups if group.is_ghost_account)
    return ExpiredProductsResponse(
        accounts=[ExpiredAccountResponse.from_domain(group) for group in groups],
        summary=ExpiredSummaryResponse(
            total_accounts=len(groups),
            total_expired_products=sum(len(group.expired_products) for group in groups),
            ghost_accounts=ghosts,
            regular_accounts=len(groups) - ghosts,
        ),
    )


@router.get(
    "/accounts/{account_id}/entitlements",
    response_model=AccountEntitlementsResponse,
)
async def account_entitlements(
    account_id: str,
    window_days: int | None = Query(default=None, ge=0, le=3650),
    include_extended: bool = True,
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
    settings: Settings = Depends(get_settings),  # noqa: B008
    clock: Clock = Depends(get_clock),  # noqa: B008
) -> AccountEntitlementsResponse:
    days = settings.expiration_window_days if window_days is None else window_days
    inventory = await _inventory(session, settings).account(
        account_id, clock.today(), timedelta(days=days)
    )
    if not inventory.entitlements:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")

    entitlements = [
        item for item in inventory.entitlements if include_extended or not item.is_extended
    ]
    return AccountEntitlementsResponse(
        account_id=account_id,
        account_name=inventory.account_name,
        window_days=days,
        summary=SummaryResponse.from_domain(inventory.summary),
        entitlements=[EntitlementResponse.from_domain(item) for item in entitlements],
    )
