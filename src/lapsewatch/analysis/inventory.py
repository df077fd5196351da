"""Live entitlement inventory computed from the ledger for an arbitrary window."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from lapsewatch.analysis.classifier import (
    DEFAULT_AT_RISK_DAYS,
    alerting_view,
    classify_all,
    expiring_view,
    summarize,
)
from lapsewatch.analysis.rollup import ExtensionMatchPolicy, roll_up
from lapsewatch.db.repositories import (
    AccountAnalysisRepository,
    AuditRepository,
    GhostAccountRepository,
)
from lapsewatch.domain.models import (
    ClassifiedEntitlement,
    EntitlementCategory,
    InventorySummary,
    LifecycleState,
)


@dataclass(frozen=True)
class AccountInventory:
    account_id: str
    account_name: str | None
    entitlements: list[ClassifiedEntitlement]
    summary: InventorySummary


@dataclass(frozen=True)
class ExpiredQuery:
    """Filters for the expired-products view.

    ``account`` matches the account id or name, ``product`` and
    ``exclude_product`` match the product code or name; all case-insensitive
    substrings. ``limit`` caps the number of products, not accounts.
    """

    category: EntitlementCategory | None = None
    account: str | None = None
    product: str | None = None
    exclude_product: str | None = None
    ghost_accounts_only: bool = False
    limit: int = 100


@dataclass
class ExpiredAccount:
    account_id: str
    account_name: str | None
    is_ghost_account: bool
    expired_products: list[ClassifiedEntitlement] = field(default_factory=list)


def _contains(needle: str, *haystack: str | None) -> bool:
    needle = needle.casefold()
    return any(value is not None and needle in value.casefold() for value in haystack)


def _matches(item: ClassifiedEntitlement, query: ExpiredQuery, ghost_ids: set[str]) -> bool:
    rolled = item.rolled_up
    if query.category is not None and rolled.category is not query.category:
        return False
    if query.account and not _contains(query.account, rolled.account_id, rolled.account_name):
        return False
    if query.product and not _contains(query.product, rolled.product_code, rolled.product_name):
        return False
    if query.exclude_product and _contains(
        query.exclude_product, rolled.product_code, rolled.product_name
    ):
        return False
    if query.ghost_accounts_only and rolled.account_id not in ghost_ids:
        return False
    return True


def expired_by_account(
    classified: Iterable[ClassifiedEntitlement],
    ghost_ids: set[str],
    query: ExpiredQuery | None = None,
) -> list[ExpiredAccount]:
    """Group non-extended expired entitlements by account, ordered by account then product."""
    query = query or ExpiredQuery()
    expired = [
        item
        for item in alerting_view(classified)
        if item.state is LifecycleState.expired and _matches(item, query, ghost_ids)
    ]
    expired.sort(
        key=lambda i: (
            (i.rolled_up.account_name or "").casefold(),
            i.rolled_up.account_id,
            i.rolled_up.product_code,
        )
    )

    accounts: dict[str, ExpiredAccount] = {}
    for item in expired[: query.limit]:
        rolled = item.rolled_up
        group = accounts.get(rolled.account_id)
        if group is None:
            group = accounts[rolled.account_id] = ExpiredAccount(
                account_id=rolled.account_id,
                account_name=rolled.account_name,
                is_ghost_account=rolled.account_id in ghost_ids,
            )
        group.expired_products.append(item)
    return list(accounts.values())


class InventoryService:
    def __init__(
        self,
        session: AsyncSession,
        policy: ExtensionMatchPolicy | None = None,
        at_risk_days: int = DEFAULT_AT_RISK_DAYS,
    ) -> None:
        self._session = session
        self._audit = AuditRepository(session)
        self._policy = policy or ExtensionMatchPolicy()
        self._at_risk_days = at_risk_days

    async def account(self, account_id: str, today: date, window: timedelta) -> AccountInventory:
        records = await self._audit.latest_for_account(account_id)
        classified = classify_all(
            roll_up(records, self._policy), today, window, at_risk_days=self._at_risk_days
        )
        account_name = records[0].account_name if records else None
        return AccountInventory(account_id, account_name, classified, summarize(classified))

    async def expiring(self, today: date, window: timedelta) -> list[ClassifiedEntitlement]:
        """Non-extended entitlements expiring within the window, soonest first."""
        items: list[ClassifiedEntitlement] = []
        for ref in await self._audit.list_accounts():
            inventory = await self.account(ref.account_id, today, window)
            items.extend(expiring_view(inventory.entitlements))
        items.sort(
            key=lambda i: (i.days_until_expiry, i.rolled_up.account_id, i.rolled_up.product_code)
        )
        return items

    async def expired(self, query: ExpiredQuery | None = None) -> list[ExpiredAccount]:
        """Expired products as of the last analysis run, grouped by account."""
        states = await AccountAnalysisRepository(self._session).list_states(
            state=LifecycleState.expired, include_extended=False
        )
        ghost_ids = await GhostAccountRepository(self._session).account_ids()
        return expired_by_account(states, ghost_ids, query)

    async def expired_products(self, account_id: str, today: date) -> list[ClassifiedEntitlement]:
        inventory = await self.account(account_id, today, timedelta(0))
        return [
            item
            for item in inventory.entitlements
            if item.state is LifecycleState.expired and not item.is_extended
        ]
