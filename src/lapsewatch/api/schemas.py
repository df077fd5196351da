"""Response and request bodies shared by the API routers."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel

from lapsewatch.db.repositories import AuditStats, GhostSummary
from lapsewatch.domain.models import (
    AuditEntry,
    ClassifiedEntitlement,
    GhostAccountCandidate,
    InventorySummary,
    RunReport,
)


class RunReportResponse(BaseModel):
    run_id: str
    trigger: str
    status: str
    started_at: datetime
    finished_at: datetime | None = None
    duration_seconds: float = 0.0
    records_fetched: int = 0
    records_skipped: int = 0
    snapshots_created: int = 0
    status_changes: int = 0
    accounts_analyzed: int = 0
    accounts_failed: int = 0
    accounts_deferred: int = 0
    errored: int = 0
    ghosts_flagged: int = 0
    ghosts_removed: int = 0
    warnings: list[str] = []
    error: str | None = None

    @classmethod
    def from_domain(cls, report: RunReport) -> RunReportResponse:
        return cls(
            run_id=report.run_id,
            trigger=report.trigger.value,
            status=report.status.value,
            started_at=report.started_at,
            finished_at=report.finished_at,
            duration_seconds=report.duration_seconds,
            records_fetched=report.records_fetched,
            records_skipped=report.records_skipped,
            snapshots_created=report.snapshots_created,
            status_changes=report.status_changes,
            accounts_analyzed=report.accounts_analyzed,
            accounts_failed=report.accounts_failed,
            accounts_deferred=report.accounts_deferred,
            errored=report.errored,
            ghosts_flagged=report.ghosts_flagged,
            ghosts_removed=report.ghosts_removed,
            warnings=list(report.warnings),
            error=report.error,
        )


class SummaryResponse(BaseModel):
    active: int
    expiring: int
    expired: int
    extended: int
    total: int

    @classmethod
    def from_domain(cls, summary: InventorySummary) -> SummaryResponse:
        return cls(
            active=summary.active,
            expiring=summary.expiring,
            expired=summary.expired,
            extended=summary.extended,
            total=summary.total,
        )


class EntitlementResponse(BaseModel):
    account_id: str
    account_name: str | None = None
    product_code: str
    product_name: str | None = None
    category: str
    state: str
    effective_end_date: date | None = None
    days_until_expiry: int | None = None
    urgency: str | None = None
    contributing_record_id: str
    contributing_record_name: str
    is_extended: bool = False
    extended_by_record_id: str | None = None
    extended_by_record_name: str | None = None
    extended_end_date: date | None = None

    @classmethod
    def from_domain(cls, item: ClassifiedEntitlement) -> EntitlementResponse:
        rolled = item.rolled_up
        return cls(
            account_id=rolled.account_id,
            account_name=rolled.account_name,
            product_code=rolled.product_code,
            product_name=rolled.product_name,
            category=rolled.category.value,
            state=item.state.value,
            effective_end_date=rolled.effective_end_date,
            days_until_expiry=item.days_until_expiry,
            urgency=item.urgency,
            contributing_record_id=rolled.contributing_record_id,
            contributing_record_name=rolled.contributing_record_name,
            is_extended=rolled.is_extended,
            extended_by_record_id=rolled.extended_by_record_id,
            extended_by_record_name=rolled.extended_by_record_name,
            extended_end_date=rolled.extended_end_date,
        )


class GhostAccountResponse(BaseModel):
    account_id: str
    account_name: str
    total_expired_products: int
    latest_expiry_date: date
    last_checked: datetime
    is_reviewed: bool
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    notes: str | None = None

    @classmethod
    def from_domain(cls, candidate: GhostAccountCandidate) -> GhostAccountResponse:
        return cls(
            account_id=candidate.account_id,
            account_name=candidate.account_name,
            total_expired_products=candidate.total_expired_products,
            latest_expiry_date=candidate.latest_expiry_date,
            last_checked=candidate.last_checked,
            is_reviewed=candidate.is_reviewed,
            reviewed_by=candidate.reviewed_by,
            reviewed_at=candidate.reviewed_at,
            notes=candidate.notes,
        )


class GhostSummaryResponse(BaseModel):
    total: int
    reviewed: int
    unreviewed: int

    @classmethod
    def from_domain(cls, summary: GhostSummary) -> GhostSummaryResponse:
        return cls(total=summary.total, reviewed=summary.reviewed, unreviewed=summary.unreviewed)


class AuditEntryResponse(BaseModel):
    record_id: str
    record_name: str
    captured_at: datetime
    change_type: str
    previous_status: str | None = None
    status: str | None = None
    changed_fields: list[str]
    changes: list[dict[str, Any]] = []
    parse_warning: str | None = None
    snapshot: dict[str, Any]

    @classmethod
    def from_domain(cls, entry: AuditEntry) -> AuditEntryResponse:
        return cls(
            record_id=entry.record_id,
            record_name=entry.record_name,
            captured_at=entry.captured_at,
            change_type=entry.change_type.value,
            previous_status=entry.previous_status,
            status=entry.fields_snapshot.get("status"),
            changed_fields=sorted(entry.changed_fields),
            changes=[
                {"field": c.field, "before": c.before, "after": c.after} for c in entry.changes
            ],
            parse_warning=entry.parse_warning,
            snapshot=entry.fields_snapshot,
        )


class AuditStatsResponse(BaseModel):
    total_records: int
    total_snapshots: int
    status_changes: int
    earliest_capture: datetime | None = None
    latest_capture: datetime | None = None

    @classmethod
    def from_domain(cls, stats: AuditStats) -> AuditStatsResponse:
        return cls(
            total_records=stats.total_records,
            total_snapshots=stats.total_snapshots,
            status_changes=stats.status_changes,
            earliest_capture=stats.earliest_capture,
            latest_capture=stats.latest_capture,
        )
