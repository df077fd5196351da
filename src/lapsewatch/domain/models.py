"""
Entitlement lifecycle domain models.

Engine types are immutable; a later capture of the same record produces a new
ProvisioningRecord rather than mutating the previous one.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import StrEnum
from typing import Any, Mapping


class RequestType(StrEnum):
    """What a provisioning request asks the platform to do."""

    new = "new"
    update = "update"
    deprovision = "deprovision"
    other = "other"

    @classmethod
    def parse(cls, raw: str | None) -> RequestType:
        value = (raw or "").strip().lower()
        if "deprovision" in value:
            return cls.deprovision
        if value.startswith("new") or value in {"create", "provision"}:
            return cls.new
        if value.startswith("update") or value in {"modify", "change", "renewal", "extend"}:
            return cls.update
        return cls.other


class EntitlementCategory(StrEnum):
    model = "model"
    data = "data"
    app = "app"


class LifecycleState(StrEnum):
    active = "active"
    expiring_soon = "expiring_soon"
    expired = "expired"


class ChangeType(StrEnum):
    initial = "initial"
    status_change = "status_change"
    update = "update"


class RunStatus(StrEnum):
    """Enumeration of analysis run states."""

    running = "running"
    succeeded = "succeeded"
    partial = "partial"
    failed = "failed"


class RunTrigger(StrEnum):
    scheduled = "scheduled"
    manual = "manual"


def _iso_date(value: date | None) -> str | None:
    return value.isoformat() if value is not None else None


def _iso_datetime(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_date(value: Any) -> date | None:
    if value in (None, ""):
        return None
    return date.fromisoformat(str(value))


def _parse_datetime(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromisoformat(str(value))


@dataclass(frozen=True)
class EntitlementLine:
    """One product grant within a provisioning record.

    ``end_date`` is ``None`` for a perpetual grant, which never expires.
    """

    product_code: str
    category: EntitlementCategory
    end_date: date | None
    start_date: date | None = None
    modifier: str | None = None
    quantity: int | None = None
    package_name: str | None = None
    product_name: str | None = None

    @property
    def is_perpetual(self) -> bool:
        return self.end_date is None

    @property
    def has_inverted_window(self) -> bool:
        # The source does not guarantee start <= end; callers flag, never reject.
        if self.start_date is None or self.end_date is None:
            return False
        return self.start_date > self.end_date

    def sort_key(self) -> tuple[Any, ...]:
        return (
            self.category.value,
            self.product_code,
            self.end_date or date.max,
            self.start_date or date.min,
            self.modifier or "",
            self.quantity if self.quantity is not None else -1,
            self.package_name or "",
            self.product_name or "",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_code": self.product_code,
            "category": self.category.value,
            "modifier": self.modifier,
            "start_date": _iso_date(self.start_date),
            "end_date": _iso_date(self.end_date),
            "quantity": self.quantity,
            "package_name": self.package_name,
            "product_name": self.product_name,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> EntitlementLine:
        return cls(
            product_code=data["product_code"],
            category=EntitlementCategory(data["category"]),
            modifier=data.get("modifier"),
            start_date=_parse_date(data.get("start_date")),
            end_date=_parse_date(data.get("end_date")),
            quantity=data.get("quantity"),
            package_name=data.get("package_name"),
            product_name=data.get("product_name"),
        )


@dataclass(frozen=True)
class ProvisioningRecord:
    """A PS request as captured at one point in time."""

    id: str
    name: str
    account_id: str
    account_name: str
    status: str | None
    request_type: RequestType
    created_at: datetime | None
    last_modified_at: datetime | None
    lines: tuple[EntitlementLine, ...] = ()
    raw_request_type: str | None = None
    region: str | None = None
    tenant_name: str | None = None
    parse_warning: str | None = None
    raw_payload: str | None = None
    data_quality_flags: tuple[str, ...] = ()

    @property
    def is_deprovision(self) -> bool:
        return self.request_type is RequestType.deprovision

    def to_snapshot(self) -> dict[str, Any]:
        """JSON-safe representation stored in the audit ledger."""
        snapshot: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "account_id": self.account_id,
            "account_name": self.account_name,
            "status": self.status,
            "request_type": self.request_type.value,
            "raw_request_type": self.raw_request_type,
            "created_at": _iso_datetime(self.created_at),
            "last_modified_at": _iso_datetime(self.last_modified_at),
            "region": self.region,
            "tenant_name": self.tenant_name,
            "lines": [line.to_dict() for line in self.lines],
            "data_quality_flags": list(self.data_quality_flags),
        }
        if self.parse_warning is not None:
            snapshot["parse_warning"] = self.parse_warning
            snapshot["raw_payload"] = self.raw_payload
        return snapshot

    @classmethod
    def from_snapshot(cls, data: Mapping[str, Any]) -> ProvisioningRecord:
        return cls(
            id=data["id"],
            name=data["name"],
            account_id=data["account_id"],
            account_name=data["account_name"],
            status=data.get("status"),
            request_type=RequestType(data.get("request_type") or RequestType.other.value),
            raw_request_type=data.get("raw_request_type"),
            created_at=_parse_datetime(data.get("created_at")),
            last_modified_at=_parse_datetime(data.get("last_modified_at")),
            region=data.get("region"),
            tenant_name=data.get("tenant_name"),
            lines=tuple(EntitlementLine.from_dict(line) for line in data.get("lines", [])),
            parse_warning=data.get("parse_warning"),
            raw_payload=data.get("raw_payload"),
            data_quality_flags=tuple(data.get("data_quality_flags", [])),
        )


@dataclass(frozen=True)
class FieldChange:
    field: str
    before: Any
    after: Any


@dataclass(frozen=True)
class AuditEntry:
    """Append-only ledger row produced by the change detector."""

    record_id: str
    captured_at: datetime
    fields_snapshot: dict[str, Any]
    changed_fields: frozenset[str]
    change_type: ChangeType
    previous_status: str | None = None
    changes: tuple[FieldChange, ...] = ()

    @property
    def record_name(self) -> str:
        return self.fields_snapshot.get("name", "")

    @property
    def parse_warning(self) -> str | None:
        return self.fields_snapshot.get("parse_warning")


@dataclass(frozen=True)
class RolledUpEntitlement:
    """Effective entitlement window for one product key of one account.

    Primary entries carry the global maximum end date. Superseded entries
    describe an earlier record's grant that a later record already extended;
    for those ``effective_end_date`` is the earlier record's own maximum.
    ``effective_end_date`` is ``None`` when the winning grant is perpetual.
    """

    account_id: str
    product_code: str
    category: EntitlementCategory
    effective_end_date: date | None
    contributing_record_id: str
    contributing_record_name: str
    match_key: tuple[str, ...] = ()
    product_name: str | None = None
    account_name: str | None = None
    is_extended: bool = False
    extended_by_record_id: str | None = None
    extended_by_record_name: str | None = None
    extended_end_date: date | None = None


@dataclass(frozen=True)
class ClassifiedEntitlement:
    rolled_up: RolledUpEntitlement
    state: LifecycleState
    days_until_expiry: int | None
    at_risk_days: int = 7

    @property
    def is_extended(self) -> bool:
        return self.rolled_up.is_extended

    @property
    def is_alerting(self) -> bool:
        """Whether this entitlement belongs in expiring/expired alert views."""
        return not self.is_extended and self.state is not LifecycleState.active

    @property
    def urgency(self) -> str | None:
        if self.state is not LifecycleState.expiring_soon:
            return None
        if self.days_until_expiry is not None and self.days_until_expiry <= self.at_risk_days:
            return "at-risk"
        return "upcoming"


@dataclass
class GhostAccountCandidate:
    account_id: str
    account_name: str
    total_expired_products: int
    latest_expiry_date: date
    last_checked: datetime
    is_reviewed: bool = False
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    notes: str | None = None

    def computed_fields(self) -> dict[str, Any]:
        """Fields an analysis run owns; review fields are never included."""
        return {
            "account_name": self.account_name,
            "total_expired_products": self.total_expired_products,
            "latest_expiry_date": self.latest_expiry_date,
            "last_checked": self.last_checked,
        }


REVIEW_FIELDS = frozenset({"is_reviewed", "reviewed_by", "reviewed_at", "notes"})


@dataclass(frozen=True)
class InventorySummary:
    active: int = 0
    expiring: int = 0
    expired: int = 0
    extended: int = 0

    @property
    def total(self) -> int:
        return self.active + self.expiring + self.expired


@dataclass
class RunReport:
    """Outcome of one capture → classify → detect run."""

    run_id: str
    trigger: RunTrigger
    started_at: datetime
    status: RunStatus = RunStatus.running
    finished_at: datetime | None = None
    records_fetched: int = 0
    records_skipped: int = 0
    snapshots_created: int = 0
    status_changes: int = 0
    accounts_analyzed: int = 0
    accounts_failed: int = 0
    accounts_deferred: int = 0
    ghosts_flagged: int = 0
    ghosts_removed: int = 0
    next_cursor: str | None = None
    capture_watermark: datetime | None = None
    # When the paged query chain this run belongs to was first issued.
    chain_started_at: datetime | None = None
    warnings: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def errored(self) -> int:
        return self.records_skipped + self.accounts_failed

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()
