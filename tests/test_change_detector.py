"""Tests for snapshot change detection."""

from dataclasses import replace
from datetime import date, datetime

import pytest
from factories import make_raw_record, model_line

from lapsewatch.analysis.changes import ChangeDetector, diff_records
from lapsewatch.analysis.normalizer import normalize_record
from lapsewatch.domain.models import ChangeType, ProvisioningRecord
from lapsewatch.scheduling.clock import FixedClock


@pytest.fixture
def detector():
    return ChangeDetector(FixedClock(datetime(2025, 10, 1, 6, 0, 0)).now)


@pytest.fixture
def record():
    return normalize_record(
        make_raw_record(
            models=[model_line("IC-A", "2026-01-01"), model_line("IC-B", "2026-06-01")]
        )
    )


def test_first_capture_is_initial(detector, record):
    entry = detector.detect(record, None)

    assert entry is not None
    assert entry.change_type is ChangeType.initial
    assert entry.record_id == record.id
    assert entry.previous_status is None
    assert entry.fields_snapshot["name"] == "PS-1001"
    assert "lines" in entry.changed_fields


def test_unchanged_record_produces_nothing(detector, record):
    assert detector.detect(record, record) is None


def test_reordered_lines_are_not_a_change(detector, record):
    reordered = replace(record, lines=tuple(reversed(record.lines)))

    assert diff_records(record, reordered) == []
    assert detector.detect(reordered, record) is None


def test_duplicate_line_is_a_change(record):
    duplicated = replace(record, lines=record.lines + (record.lines[0],))

    changes = diff_records(record, duplicated)
    assert [change.field for change in changes] == ["lines"]


def test_status_change_records_previous_status(detector, record):
    updated = replace(record, status="Deprovisioned")

    entry = detector.detect(updated, record)

    assert entry.change_type is ChangeType.status_change
    assert entry.previous_status == "Provisioning Complete"
    assert entry.changed_fields == frozenset({"status"})
    assert entry.changes[0].before == "Provisioning Complete"
    assert entry.changes[0].after == "Deprovisioned"


def test_non_status_change_is_update(detector, record):
    extended = replace(
        record,
        lines=(replace(record.lines[0], end_date=date(2027, 1, 1)),) + record.lines[1:],
    )

    entry = detector.detect(extended, record)

    assert entry.change_type is ChangeType.update
    assert entry.previous_status is None
    assert entry.changed_fields == frozenset({"lines"})


def test_successive_captures_get_distinct_timestamps(detector, record):
    first = detector.detect(record, None)
    second = detector.detect(replace(record, status="Other"), record)

    assert second.captured_at > first.captured_at


def test_snapshot_round_trips_through_ledger_format(record):
    restored = ProvisioningRecord.from_snapshot(record.to_snapshot())

    assert diff_records(record, restored) == []
