"""Tests for expiry classification and inventory summaries."""

from datetime import date, timedelta

import pytest
from factories import make_line, make_record

from lapsewatch.analysis.classifier import (
    alerting_view,
    classify,
    classify_all,
    expiring_view,
    summarize,
)
from lapsewatch.analysis.rollup import roll_up
from lapsewatch.domain.models import EntitlementCategory, LifecycleState, RolledUpEntitlement

TODAY = date(2025, 10, 1)
WINDOW = timedelta(days=30)


def _entitlement(end: date | None, **kwargs) -> RolledUpEntitlement:
    return RolledUpEntitlement(
        account_id="001ACME",
        product_code="X",
        category=EntitlementCategory.model,
        effective_end_date=end,
        contributing_record_id="R1",
        contributing_record_name="PS-R1",
        **kwargs,
    )


@pytest.mark.parametrize(
    "end,state,days",
    [
        (date(2025, 9, 30), LifecycleState.expired, -1),
        (date(2025, 10, 1), LifecycleState.expiring_soon, 0),
        (date(2025, 10, 31), LifecycleState.expiring_soon, 30),
        (date(2025, 11, 1), LifecycleState.active, 31),
    ],
)
def test_window_boundaries(end, state, days):
    result = classify(_entitlement(end), TODAY, WINDOW)

    assert result.state is state
    assert result.days_until_expiry == days


def test_perpetual_entitlement_is_active():
    result = classify(_entitlement(None), TODAY, WINDOW)

    assert result.state is LifecycleState.active
    assert result.days_until_expiry is None
    assert result.urgency is None
    assert not result.is_alerting


def test_zero_window_only_separates_expired_from_active():
    same_day = classify(_entitlement(TODAY), TODAY, timedelta(0))
    next_day = classify(_entitlement(date(2025, 10, 2)), TODAY, timedelta(0))

    assert same_day.state is LifecycleState.expiring_soon
    assert next_day.state is LifecycleState.active


@pytest.mark.parametrize(
    "end,urgency",
    [
        (date(2025, 10, 8), "at-risk"),
        (date(2025, 10, 9), "upcoming"),
        (date(2025, 11, 1), None),
        (date(2025, 9, 1), None),
    ],
)
def test_urgency(end, urgency):
    assert classify(_entitlement(end), TODAY, WINDOW, at_risk_days=7).urgency == urgency


def test_extended_entries_never_alert():
    records = [
        make_record("R1", (make_line("X", date(2025, 9, 1)),)),
        make_record("R2", (make_line("X", date(2027, 1, 1)),)),
    ]
    classified = classify_all(roll_up(records), TODAY, WINDOW)

    superseded = next(item for item in classified if item.is_extended)
    assert superseded.state is LifecycleState.expired
    assert not superseded.is_alerting
    assert alerting_view(classified) == []


def test_expiring_view_excludes_expired():
    classified = classify_all(
        [_entitlement(date(2025, 9, 1)), _entitlement(date(2025, 10, 15))], TODAY, WINDOW
    )

    assert [item.state for item in alerting_view(classified)] == [
        LifecycleState.expired,
        LifecycleState.expiring_soon,
    ]
    assert [item.rolled_up.effective_end_date for item in expiring_view(classified)] == [
        date(2025, 10, 15)
    ]


def test_summary_counts_extended_separately():
    records = [
        make_record(
            "R1",
            (
                make_line("X", date(2025, 9, 1)),
                make_line("Y", date(2025, 10, 10)),
                make_line("Z", date(2026, 6, 1)),
            ),
        ),
        make_record("R2", (make_line("X", date(2025, 9, 20)),)),
    ]

    summary = summarize(classify_all(roll_up(records), TODAY, WINDOW))

    assert summary.expired == 1
    assert summary.expiring == 1
    assert summary.active == 1
    assert summary.extended == 1
    assert summary.total == 3
