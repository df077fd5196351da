"""
Change detection between successive captures of the same record.

The detector is pure: it decides whether a new audit entry is due and what
it contains. Appending it is the capture service's job.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime
from typing import Any, Callable

import structlog

from lapsewatch.domain.models import (
    AuditEntry,
    ChangeType,
    EntitlementLine,
    FieldChange,
    ProvisioningRecord,
)

logger = structlog.get_logger()

# Fields compared between snapshots, in reporting order. ``lines`` is compared
# as a multiset so that a reordering of identical lines is not a change.
TRACKED_FIELDS: tuple[str, ...] = (
    "name",
    "account_id",
    "account_name",
    "status",
    "request_type",
    "raw_request_type",
    "created_at",
    "last_modified_at",
    "region",
    "tenant_name",
    "lines",
    "parse_warning",
    "raw_payload",
)


def _line_multiset(lines: tuple[EntitlementLine, ...]) -> Counter[tuple[Any, ...]]:
    return Counter(line.sort_key() for line in lines)


def _render(field_name: str, value: Any) -> Any:
    if field_name == "lines":
        return [line.to_dict() for line in sorted(value, key=EntitlementLine.sort_key)]
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return value


def diff_records(before: ProvisioningRecord, after: ProvisioningRecord) -> list[FieldChange]:
    """Return one FieldChange per tracked field that differs."""
    changes: list[FieldChange] = []
    for field_name in TRACKED_FIELDS:
        old = getattr(before, field_name)
        new = getattr(after, field_name)
        if field_name == "lines":
            differs = _line_multiset(old) != _line_multiset(new)
        else:
            differs = old != new
        if differs:
            changes.append(
                FieldChange(
                    field=field_name,
                    before=_render(field_name, old),
                    after=_render(field_name, new),
                )
            )
    return changes


class ChangeDetector:
    """Decides whether a freshly normalized record warrants a new ledger entry."""

    def __init__(self, clock: Callable[[], datetime]) -> None:
        self._clock = clock

    def detect(
        self,
        record: ProvisioningRecord,
        prior_snapshot: ProvisioningRecord | None,
    ) -> AuditEntry | None:
        captured_at = self._clock()

        if prior_snapshot is None:
            return AuditEntry(
                record_id=record.id,
                captured_at=captured_at,
                fields_snapshot=record.to_snapshot(),
                changed_fields=frozenset(TRACKED_FIELDS),
                change_type=ChangeType.initial,
            )

        changes = diff_records(prior_snapshot, record)
        if not changes:
            return None

        changed_fields = frozenset(change.field for change in changes)
        if "status" in changed_fields:
            change_type = ChangeType.status_change
            previous_status = prior_snapshot.status
            logger.info(
                "status_change_detected",
                record_id=record.id,
                record_name=record.name,
                previous_status=previous_status,
                status=record.status,
            )
        else:
            change_type = ChangeType.update
            previous_status = None

        return AuditEntry(
            record_id=record.id,
            captured_at=captured_at,
            fields_snapshot=record.to_snapshot(),
            changed_fields=changed_fields,
            change_type=change_type,
            previous_status=previous_status,
            changes=tuple(changes),
        )
