from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from lapsewatch.domain.models import ChangeType, LifecycleState, RunStatus, RunTrigger


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class AuditEntryRow(Base):
    """Append-only ledger of record snapshots."""

    __tablename__ = "audit_entries"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    record_id: Mapped[str] = mapped_column(String(64), nullable=False)
    record_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    account_name: Mapped[str | None] = mapped_column(String(255))
    status: Mapped[str | None] = mapped_column(String(100))
    request_type: Mapped[str | None] = mapped_column(String(50))
    change_type: Mapped[str] = mapped_column(
        Enum(ChangeType, name="change_type", native_enum=False), nullable=False
    )
    previous_status: Mapped[str | None] = mapped_column(String(100))
    changed_fields: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    field_changes: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    snapshot: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    parse_warning: Mapped[str | None] = mapped_column(Text)
    captured_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("record_id", "captured_at", name="uq_audit_record_captured"),
        Index("idx_audit_record_captured", "record_id", "captured_at"),
        Index("idx_audit_change_type_captured", "change_type", "captured_at"),
    )


class LatestSnapshot(Base):
    """Latest ledger entry per record id."""

    __tablename__ = "latest_snapshots"

    record_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    audit_entry_id: Mapped[int] = mapped_column(
        ForeignKey("audit_entries.id", ondelete="CASCADE"), nullable=False
    )
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    captured_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class AccountAnalysis(Base):
    __tablename__ = "account_analysis"

    account_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_name: Mapped[str | None] = mapped_column(String(255))
    last_analyzed_at: Mapped[datetime | None] = mapped_column(DateTime, index=True)
    active_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    expiring_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    expired_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    extended_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class EntitlementState(Base):
    """Classified entitlement for the configured default window."""

    __tablename__ = "entitlement_states"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    account_name: Mapped[str | None] = mapped_column(String(255))
    product_code: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str] = mapped_column(String(20), nullable=False)
    product_name: Mapped[str | None] = mapped_column(String(500))
    state: Mapped[str] = mapped_column(
        Enum(LifecycleState, name="lifecycle_state", native_enum=False), nullable=False
    )
    effective_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    days_until_expiry: Mapped[int | None] = mapped_column(Integer, nullable=True)
    contributing_record_id: Mapped[str] = mapped_column(String(64), nullable=False)
    contributing_record_name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_extended: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    extended_by_record_id: Mapped[str | None] = mapped_column(String(64))
    extended_by_record_name: Mapped[str | None] = mapped_column(String(255))
    extended_end_date: Mapped[date | None] = mapped_column(Date)
    computed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (Index("idx_entitlement_state_end", "state", "effective_end_date"),)


class GhostAccount(Base):
    __tablename__ = "ghost_accounts"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    account_name: Mapped[str] = mapped_column(String(255), nullable=False)
    total_expired_products: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    latest_expiry_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    last_checked: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    is_reviewed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(255))
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)


class AnalysisRun(Base):
    __tablename__ = "analysis_runs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    trigger: Mapped[str] = mapped_column(
        Enum(RunTrigger, name="run_trigger", native_enum=False), nullable=False
    )
    status: Mapped[str] = mapped_column(
        Enum(RunStatus, name="run_status", native_enum=False), nullable=False, index=True
    )
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime)
    duration_seconds: Mapped[float | None] = mapped_column(Float)
    records_fetched: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    records_skipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    snapshots_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status_changes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    accounts_analyzed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    accounts_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    accounts_deferred: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    ghosts_flagged: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    ghosts_removed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    warnings: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    error: Mapped[str | None] = mapped_column(Text)
    next_cursor: Mapped[str | None] = mapped_column(Text)
    capture_watermark: Mapped[datetime | None] = mapped_column(DateTime)
    chain_started_at: Mapped[datetime | None] = mapped_column(DateTime)
