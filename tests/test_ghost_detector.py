"""Tests for ghost account detection."""

from datetime import date, datetime, timedelta

from factories import make_line, make_record

from lapsewatch.analysis.classifier import classify_all
from lapsewatch.analysis.ghosts import GhostAccountDetector
from lapsewatch.analysis.rollup import roll_up
from lapsewatch.domain.models import RequestType

TODAY = date(2024, 6, 1)
CHECKED_AT = datetime(2024, 6, 1, 8, 0, 0)
WINDOW = timedelta(days=30)


def _evaluate(records):
    classified = classify_all(roll_up(records), TODAY, WINDOW)
    return GhostAccountDetector().evaluate("001ACME", "Acme", classified, records, CHECKED_AT)


def test_fully_expired_account_is_ghost():
    verdict = _evaluate([make_record("R1", (make_line("APP-1", date(2024, 1, 1)),))])

    assert verdict.is_ghost
    assert verdict.reason == "ghost"
    assert verdict.candidate.total_expired_products == 1
    assert verdict.candidate.latest_expiry_date == date(2024, 1, 1)
    assert verdict.candidate.last_checked == CHECKED_AT
    assert verdict.candidate.is_reviewed is False


def test_deprovision_after_expiry_suppresses_ghost():
    records = [
        make_record("R1", (make_line("APP-1", date(2024, 1, 1)),)),
        make_record(
            "R2",
            request_type=RequestType.deprovision,
            created_at=datetime(2024, 2, 15, 10, 0, 0),
        ),
    ]

    verdict = _evaluate(records)

    assert not verdict.is_ghost
    assert verdict.reason == "deprovision_acknowledged"
    assert verdict.deprovision_record == "PS-R2"


def test_deprovision_before_expiry_does_not_suppress():
    records = [
        make_record("R1", (make_line("APP-1", date(2024, 1, 1)),)),
        make_record(
            "R2",
            request_type=RequestType.deprovision,
            created_at=datetime(2023, 12, 1, 10, 0, 0),
        ),
    ]

    assert _evaluate(records).is_ghost


def test_deprovision_later_on_expiry_day_counts():
    records = [
        make_record("R1", (make_line("APP-1", date(2024, 1, 1)),)),
        make_record(
            "R2",
            request_type=RequestType.deprovision,
            created_at=datetime(2024, 1, 1, 0, 0, 1),
        ),
    ]

    assert not _evaluate(records).is_ghost


def test_any_live_entitlement_blocks_ghost():
    records = [
        make_record(
            "R1",
            (make_line("APP-1", date(2024, 1, 1)), make_line("APP-2", date(2024, 6, 20))),
        )
    ]

    verdict = _evaluate(records)

    assert not verdict.is_ghost
    assert verdict.reason == "has_live_entitlement"


def test_perpetual_entitlement_blocks_ghost():
    records = [
        make_record(
            "R1",
            (make_line("APP-1", date(2024, 1, 1)), make_line("APP-PERPETUAL", None)),
        )
    ]

    verdict = _evaluate(records)

    assert not verdict.is_ghost
    assert verdict.reason == "has_live_entitlement"


def test_account_without_entitlements_is_not_ghost():
    verdict = _evaluate([make_record("R1")])

    assert not verdict.is_ghost
    assert verdict.reason == "no_expired_products"


def test_extended_grants_are_not_double_counted():
    records = [
        make_record("R1", (make_line("APP-1", date(2023, 6, 1)),)),
        make_record("R2", (make_line("APP-1", date(2024, 1, 1)),)),
        make_record("R3", (make_line("APP-2", date(2023, 12, 1)),)),
    ]

    verdict = _evaluate(records)

    assert verdict.candidate.total_expired_products == 2
    assert verdict.candidate.latest_expiry_date == date(2024, 1, 1)


def test_detect_returns_candidate_only():
    records = [make_record("R1", (make_line("APP-1", date(2024, 1, 1)),))]
    classified = classify_all(roll_up(records), TODAY, WINDOW)

    candidate = GhostAccountDetector().detect("001ACME", "Acme", classified, records, CHECKED_AT)

    assert candidate is not None
    assert candidate.account_name == "Acme"
