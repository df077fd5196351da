"""
Expiration classifier.

Pure functions of (rolled-up entitlement, today, window); the caller owns the
clock.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import Iterable

from lapsewatch.domain.models import (
    ClassifiedEntitlement,
    InventorySummary,
    LifecycleState,
    RolledUpEntitlement,
)

DEFAULT_AT_RISK_DAYS = 7


def classify(
    rolled_up: RolledUpEntitlement,
    today: date,
    window: timedelta,
    *,
    at_risk_days: int = DEFAULT_AT_RISK_DAYS,
) -> ClassifiedEntitlement:
    end = rolled_up.effective_end_date
    if end is None:
        state = LifecycleState.active
    elif end < today:
        state = LifecycleState.expired
    elif end <= today + window:
        state = LifecycleState.expiring_soon
    else:
        state = LifecycleState.active

    return ClassifiedEntitlement(
        rolled_up=rolled_up,
        state=state,
        days_until_expiry=None if end is None else (end - today).days,
        at_risk_days=at_risk_days,
    )


def classify_all(
    rolled_up: Iterable[RolledUpEntitlement],
    today: date,
    window: timedelta,
    *,
    at_risk_days: int = DEFAULT_AT_RISK_DAYS,
) -> list[ClassifiedEntitlement]:
    return [classify(item, today, window, at_risk_days=at_risk_days) for item in rolled_up]


def alerting_view(classified: Iterable[ClassifiedEntitlement]) -> list[ClassifiedEntitlement]:
    """Expiring and expired entitlements that have not been extended elsewhere."""
    return [item for item in classified if item.is_alerting]


def expiring_view(classified: Iterable[ClassifiedEntitlement]) -> list[ClassifiedEntitlement]:
    return [
        item
        for item in alerting_view(classified)
        if item.state is LifecycleState.expiring_soon
    ]


def summarize(classified: Iterable[ClassifiedEntitlement]) -> InventorySummary:
    """Count states for the inventory view.

    Extended entries are counted only under ``extended`` so that a renewed
    product is not reported as both active and expired.
    """
    active = expiring = expired = extended = 0
    for item in classified:
        if item.is_extended:
            extended += 1
        elif item.state is LifecycleState.active:
            active += 1
        elif item.state is LifecycleState.expiring_soon:
            expiring += 1
        else:
            expired += 1
    return InventorySummary(active=active, expiring=expiring, expired=expired, extended=extended)
