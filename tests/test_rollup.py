"""Tests for entitlement roll-up across provisioning records."""

from datetime import date, datetime

import pytest
from factories import make_line, make_record

from lapsewatch.analysis.rollup import ExtensionMatchPolicy, roll_up
from lapsewatch.core.errors import ConfigurationError
from lapsewatch.domain.models import EntitlementCategory


def _primary(rolled, code):
    return next(r for r in rolled if r.product_code == code and not r.is_extended)


def test_later_record_extends_earlier_grant():
    r1 = make_record("R1", (make_line("X", date(2025, 10, 24)),))
    r2 = make_record("R2", (make_line("X", date(2027, 10, 24)),), created_at=datetime(2025, 9, 1))

    rolled = roll_up([r1, r2])

    primary = _primary(rolled, "X")
    assert primary.effective_end_date == date(2027, 10, 24)
    assert primary.contributing_record_id == "R2"

    superseded = [r for r in rolled if r.is_extended]
    assert len(superseded) == 1
    assert superseded[0].contributing_record_id == "R1"
    assert superseded[0].effective_end_date == date(2025, 10, 24)
    assert superseded[0].extended_by_record_id == "R2"
    assert superseded[0].extended_end_date == date(2027, 10, 24)


def test_result_does_not_depend_on_record_order():
    r1 = make_record("R1", (make_line("X", date(2025, 10, 24)),))
    r2 = make_record("R2", (make_line("X", date(2027, 10, 24)),))

    assert roll_up([r1, r2]) == roll_up([r2, r1])


def test_within_record_maximum_is_used():
    record = make_record(
        "R1",
        (make_line("X", date(2025, 1, 1)), make_line("X", date(2026, 1, 1))),
    )

    rolled = roll_up([record])

    assert len(rolled) == 1
    assert rolled[0].effective_end_date == date(2026, 1, 1)
    assert not rolled[0].is_extended


def test_tie_prefers_most_recently_created_record():
    older = make_record("R1", (make_line("X", date(2026, 1, 1)),), created_at=datetime(2024, 1, 1))
    newer = make_record("R2", (make_line("X", date(2026, 1, 1)),), created_at=datetime(2024, 6, 1))

    rolled = roll_up([newer, older])

    assert len(rolled) == 1
    assert rolled[0].contributing_record_id == "R2"


def test_tie_with_same_creation_time_is_deterministic():
    a = make_record("RA", (make_line("X", date(2026, 1, 1)),))
    b = make_record("RB", (make_line("X", date(2026, 1, 1)),))

    assert roll_up([a, b])[0].contributing_record_id == roll_up([b, a])[0].contributing_record_id


def test_distinct_products_roll_up_independently():
    record = make_record(
        "R1",
        (
            make_line("X", date(2026, 1, 1)),
            make_line("Y", date(2024, 1, 1), category=EntitlementCategory.data),
        ),
    )

    rolled = roll_up([record])

    assert {r.product_code for r in rolled} == {"X", "Y"}
    assert _primary(rolled, "Y").category is EntitlementCategory.data


def test_default_policy_matches_on_product_code_only():
    r1 = make_record("R1", (make_line("X", date(2025, 1, 1), modifier="BASIC"),))
    r2 = make_record("R2", (make_line("X", date(2026, 1, 1), modifier="PRO"),))

    rolled = roll_up([r1, r2])

    assert [r.is_extended for r in rolled] == [False, True]


def test_modifier_policy_keeps_different_modifiers_apart():
    policy = ExtensionMatchPolicy.from_names(["modifier"])
    r1 = make_record("R1", (make_line("X", date(2025, 1, 1), modifier="BASIC"),))
    r2 = make_record("R2", (make_line("X", date(2026, 1, 1), modifier="PRO"),))

    rolled = roll_up([r1, r2], policy)

    assert len(rolled) == 2
    assert not any(r.is_extended for r in rolled)


def test_region_policy_uses_record_region():
    policy = ExtensionMatchPolicy.from_names(["region"])
    r1 = make_record("R1", (make_line("X", date(2025, 1, 1)),), region="us")
    r2 = make_record("R2", (make_line("X", date(2026, 1, 1)),), region="eu")
    r3 = make_record("R3", (make_line("X", date(2027, 1, 1)),), region="us")

    rolled = roll_up([r1, r2, r3], policy)

    extended = [r for r in rolled if r.is_extended]
    assert [(r.contributing_record_id, r.extended_by_record_id) for r in extended] == [("R1", "R3")]


def test_policy_order_is_canonical():
    assert ExtensionMatchPolicy.from_names(["region", "category"]).attributes == (
        "category",
        "region",
    )


def test_unknown_policy_attribute_is_rejected():
    with pytest.raises(ConfigurationError):
        ExtensionMatchPolicy.from_names(["peril"])


def test_empty_account_rolls_up_to_nothing():
    assert roll_up([]) == []


def test_perpetual_grant_outlasts_dated_grants():
    r1 = make_record("R1", (make_line("X", date(2099, 1, 1)),), created_at=datetime(2025, 1, 1))
    r2 = make_record("R2", (make_line("X", None),), created_at=datetime(2024, 1, 1))

    rolled = roll_up([r1, r2])

    primary = _primary(rolled, "X")
    assert primary.contributing_record_id == "R2"
    assert primary.effective_end_date is None

    superseded = [r for r in rolled if r.is_extended]
    assert [r.contributing_record_id for r in superseded] == ["R1"]
    assert superseded[0].extended_by_record_id == "R2"
    assert superseded[0].extended_end_date is None


def test_perpetual_line_wins_within_record():
    record = make_record("R1", (make_line("X", date(2026, 1, 1)), make_line("X", None)))

    rolled = roll_up([record])

    assert len(rolled) == 1
    assert rolled[0].effective_end_date is None
