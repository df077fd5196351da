from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Iterable, Mapping

import structlog
from sqlalchemy import case, delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from lapsewatch.core.errors import (
    NotFoundError,
    PersistenceConflict,
    ReviewStatePreservationViolation,
)
from lapsewatch.db import models as db_models
from lapsewatch.domain.models import (
    REVIEW_FIELDS,
    AuditEntry,
    ChangeType,
    ClassifiedEntitlement,
    EntitlementCategory,
    FieldChange,
    GhostAccountCandidate,
    InventorySummary,
    LifecycleState,
    ProvisioningRecord,
    RolledUpEntitlement,
    RunReport,
    RunStatus,
    RunTrigger,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class AuditStats:
    total_records: int
    total_snapshots: int
    status_changes: int
    earliest_capture: datetime | None
    latest_capture: datetime | None


@dataclass(frozen=True)
class GhostSummary:
    total: int
    reviewed: int
    unreviewed: int


@dataclass(frozen=True)
class AccountRef:
    account_id: str
    account_name: str
    last_analyzed_at: datetime | None = None


@dataclass(slots=True)
class AuditRepository:
    """Append-only access to the snapshot ledger. Rows are never updated or deleted."""

    session: AsyncSession

    async def append(self, entry: AuditEntry) -> None:
        snapshot = entry.fields_snapshot
        row = db_models.AuditEntryRow(
            record_id=entry.record_id,
            record_name=snapshot.get("name") or entry.record_id,
            account_id=snapshot["account_id"],
            account_name=snapshot.get("account_name"),
            status=snapshot.get("status"),
            request_type=snapshot.get("request_type"),
            change_type=entry.change_type.value,
            previous_status=entry.previous_status,
            changed_fields=sorted(entry.changed_fields),
            field_changes=[
                {"field": c.field, "before": c.before, "after": c.after} for c in entry.changes
            ],
            snapshot=snapshot,
            parse_warning=snapshot.get("parse_warning"),
            captured_at=entry.captured_at,
        )
        self.session.add(row)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            raise PersistenceConflict(
                "snapshot already captured at this instant",
                {"record_id": entry.record_id, "captured_at": entry.captured_at.isoformat()},
            ) from exc

        latest = await self.session.get(db_models.LatestSnapshot, entry.record_id)
        if latest is None:
            self.session.add(
                db_models.LatestSnapshot(
                    record_id=entry.record_id,
                    audit_entry_id=row.id,
                    account_id=row.account_id,
                    captured_at=entry.captured_at,
                )
            )
        elif latest.captured_at <= entry.captured_at:
            latest.audit_entry_id = row.id
            latest.account_id = row.account_id
            latest.captured_at = entry.captured_at

    async def latest_snapshot(self, record_id: str) -> ProvisioningRecord | None:
        stmt = (
            select(db_models.AuditEntryRow.snapshot)
            .join(
                db_models.LatestSnapshot,
                db_models.LatestSnapshot.audit_entry_id == db_models.AuditEntryRow.id,
            )
            .where(db_models.LatestSnapshot.record_id == record_id)
        )
        snapshot = (await self.session.execute(stmt)).scalar_one_or_none()
        return ProvisioningRecord.from_snapshot(snapshot) if snapshot else None

    async def latest_for_account(self, account_id: str) -> list[ProvisioningRecord]:
        stmt = (
            select(db_models.AuditEntryRow.snapshot)
            .join(
                db_models.LatestSnapshot,
                db_models.LatestSnapshot.audit_entry_id == db_models.AuditEntryRow.id,
            )
            .where(db_models.LatestSnapshot.account_id == account_id)
            .order_by(db_models.LatestSnapshot.record_id)
        )
        result = await self.session.execute(stmt)
        return [ProvisioningRecord.from_snapshot(s) for s in result.scalars()]

    async def list_accounts(self) -> list[AccountRef]:
        stmt = (
            select(
                db_models.AuditEntryRow.account_id,
                func.max(db_models.AuditEntryRow.account_name),
            )
            .join(
                db_models.LatestSnapshot,
                db_models.LatestSnapshot.audit_entry_id == db_models.AuditEntryRow.id,
            )
            .group_by(db_models.AuditEntryRow.account_id)
            .order_by(db_models.AuditEntryRow.account_id)
        )
        result = await self.session.execute(stmt)
        return [AccountRef(account_id, name or account_id) for account_id, name in result.all()]

    async def history(self, record_ref: str, limit: int = 100) -> list[AuditEntry]:
        """Ledger entries for a record, newest first, looked up by id or name."""
        stmt = (
            select(db_models.AuditEntryRow)
            .where(
                or_(
                    db_models.AuditEntryRow.record_id == record_ref,
                    db_models.AuditEntryRow.record_name == record_ref,
                )
            )
            .order_by(db_models.AuditEntryRow.captured_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [self._to_domain(row) for row in result.scalars()]

    async def status_changes(
        self, since: datetime | None = None, limit: int = 100
    ) -> list[AuditEntry]:
        stmt = select(db_models.AuditEntryRow).where(
            db_models.AuditEntryRow.change_type == ChangeType.status_change.value
        )
        if since is not None:
            stmt = stmt.where(db_models.AuditEntryRow.captured_at >= since)
        stmt = stmt.order_by(db_models.AuditEntryRow.captured_at.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return [self._to_domain(row) for row in result.scalars()]

    async def stats(self) -> AuditStats:
        row = (
            await self.session.execute(
                select(
                    func.count(func.distinct(db_models.AuditEntryRow.record_id)),
                    func.count(db_models.AuditEntryRow.id),
                    func.min(db_models.AuditEntryRow.captured_at),
                    func.max(db_models.AuditEntryRow.captured_at),
                )
            )
        ).one()
        status_changes = (
            await self.session.execute(
                select(func.count(db_models.AuditEntryRow.id)).where(
                    db_models.AuditEntryRow.change_type == ChangeType.status_change.value
                )
            )
        ).scalar_one()
        return AuditStats(
            total_records=row[0],
            total_snapshots=row[1],
            status_changes=status_changes,
            earliest_capture=row[2],
            latest_capture=row[3],
        )

    @staticmethod
    def _to_domain(row: db_models.AuditEntryRow) -> AuditEntry:
        return AuditEntry(
            record_id=row.record_id,
            captured_at=row.captured_at,
            fields_snapshot=dict(row.snapshot),
            changed_fields=frozenset(row.changed_fields or []),
            change_type=ChangeType(row.change_type),
            previous_status=row.previous_status,
            changes=tuple(
                FieldChange(field=c["field"], before=c.get("before"), after=c.get("after"))
                for c in row.field_changes or []
            ),
        )


@dataclass(slots=True)
class AccountAnalysisRepository:
    """Per-account analysis bookkeeping and persisted entitlement states."""

    session: AsyncSession

    async def accounts_for_analysis(self) -> list[AccountRef]:
        """All known accounts, least recently analysed first."""
        accounts = await AuditRepository(self.session).list_accounts()
        result = await self.session.execute(
            select(db_models.AccountAnalysis.account_id, db_models.AccountAnalysis.last_analyzed_at)
        )
        analyzed = dict(result.all())
        refs = [
            AccountRef(a.account_id, a.account_name, analyzed.get(a.account_id)) for a in accounts
        ]
        refs.sort(key=lambda ref: (ref.last_analyzed_at or datetime.min, ref.account_id))
        return refs

    async def replace_states(
        self,
        account_id: str,
        account_name: str,
        classified: Iterable[ClassifiedEntitlement],
        summary: InventorySummary,
        analyzed_at: datetime,
    ) -> None:
        await self.session.execute(
            delete(db_models.EntitlementState).where(
                db_models.EntitlementState.account_id == account_id
            )
        )
        for item in classified:
            rolled = item.rolled_up
            self.session.add(
                db_models.EntitlementState(
                    account_id=account_id,
                    account_name=account_name,
                    product_code=rolled.product_code,
                    category=rolled.category.value,
                    product_name=rolled.product_name,
                    state=item.state.value,
                    effective_end_date=rolled.effective_end_date,
                    days_until_expiry=item.days_until_expiry,
                    contributing_record_id=rolled.contributing_record_id,
                    contributing_record_name=rolled.contributing_record_name,
                    is_extended=rolled.is_extended,
                    extended_by_record_id=rolled.extended_by_record_id,
                    extended_by_record_name=rolled.extended_by_record_name,
                    extended_end_date=rolled.extended_end_date,
                    computed_at=analyzed_at,
                )
            )

        row = await self.session.get(db_models.AccountAnalysis, account_id)
        if row is None:
            row = db_models.AccountAnalysis(account_id=account_id)
            self.session.add(row)
        row.account_name = account_name
        row.last_analyzed_at = analyzed_at
        row.active_count = summary.active
        row.expiring_count = summary.expiring
        row.expired_count = summary.expired
        row.extended_count = summary.extended

    async def list_states(
        self,
        account_id: str | None = None,
        state: LifecycleState | None = None,
        include_extended: bool = True,
    ) -> list[ClassifiedEntitlement]:
        stmt = select(db_models.EntitlementState)
        if account_id is not None:
            stmt = stmt.where(db_models.EntitlementState.account_id == account_id)
        if state is not None:
            stmt = stmt.where(db_models.EntitlementState.state == state.value)
        if not include_extended:
            stmt = stmt.where(db_models.EntitlementState.is_extended.is_(False))
        stmt = stmt.order_by(
            db_models.EntitlementState.effective_end_date.is_(None),
            db_models.EntitlementState.effective_end_date,
            db_models.EntitlementState.account_id,
            db_models.EntitlementState.product_code,
        )
        result = await self.session.execute(stmt)
        return [self._to_domain(row) for row in result.scalars()]

    async def last_analyzed(self) -> datetime | None:
        result = await self.session.execute(
            select(func.max(db_models.AccountAnalysis.last_analyzed_at))
        )
        return result.scalar_one_or_none()

    async def totals(self) -> InventorySummary:
        row = (
            await self.session.execute(
                select(
                    func.coalesce(func.sum(db_models.AccountAnalysis.active_count), 0),
                    func.coalesce(func.sum(db_models.AccountAnalysis.expiring_count), 0),
                    func.coalesce(func.sum(db_models.AccountAnalysis.expired_count), 0),
                    func.coalesce(func.sum(db_models.AccountAnalysis.extended_count), 0),
                )
            )
        ).one()
        return InventorySummary(
            active=int(row[0]), expiring=int(row[1]), expired=int(row[2]), extended=int(row[3])
        )

    @staticmethod
    def _to_domain(row: db_models.EntitlementState) -> ClassifiedEntitlement:
        return ClassifiedEntitlement(
            rolled_up=RolledUpEntitlement(
                account_id=row.account_id,
                account_name=row.account_name,
                product_code=row.product_code,
                category=EntitlementCategory(row.category),
                product_name=row.product_name,
                effective_end_date=row.effective_end_date,
                contributing_record_id=row.contributing_record_id,
                contributing_record_name=row.contributing_record_name,
                is_extended=row.is_extended,
                extended_by_record_id=row.extended_by_record_id,
                extended_by_record_name=row.extended_by_record_name,
                extended_end_date=row.extended_end_date,
            ),
            state=LifecycleState(row.state),
            days_until_expiry=row.days_until_expiry,
        )


@dataclass(slots=True)
class GhostAccountRepository:
    """Ghost candidates. Analysis owns the computed fields, reviewers own the rest."""

    session: AsyncSession

    async def _row(self, account_id: str) -> db_models.GhostAccount | None:
        result = await self.session.execute(
            select(db_models.GhostAccount).where(db_models.GhostAccount.account_id == account_id)
        )
        return result.scalar_one_or_none()

    async def get(self, account_id: str) -> GhostAccountCandidate | None:
        row = await self._row(account_id)
        return self._to_domain(row) if row else None

    async def upsert_candidate(self, candidate: GhostAccountCandidate) -> bool:
        """Insert a new candidate or refresh the computed fields of an existing one.

        Returns True when a new row was created.
        """
        row = await self._row(candidate.account_id)
        if row is None:
            self.session.add(
                db_models.GhostAccount(
                    account_id=candidate.account_id,
                    is_reviewed=False,
                    **candidate.computed_fields(),
                )
            )
            await self.session.flush()
            return True
        await self.update_computed_fields(
            candidate.account_id, candidate.computed_fields(), row=row
        )
        return False

    async def update_computed_fields(
        self,
        account_id: str,
        fields: Mapping[str, Any],
        *,
        row: db_models.GhostAccount | None = None,
    ) -> None:
        row = row or await self._row(account_id)
        if row is None:
            raise NotFoundError("ghost account not found", {"account_id": account_id})

        touched = REVIEW_FIELDS.intersection(fields)
        if touched and row.is_reviewed:
            logger.error(
                "review_state_violation",
                account_id=account_id,
                fields=sorted(touched),
            )
            raise ReviewStatePreservationViolation(
                "analysis update would overwrite review state",
                {"account_id": account_id, "fields": sorted(touched)},
            )

        for name, value in fields.items():
            setattr(row, name, value)

    async def mark_reviewed(
        self,
        account_id: str,
        reviewed_by: str,
        reviewed_at: datetime,
        notes: str | None = None,
    ) -> GhostAccountCandidate:
        row = await self._row(account_id)
        if row is None:
            raise NotFoundError("ghost account not found", {"account_id": account_id})
        row.is_reviewed = True
        row.reviewed_by = reviewed_by
        row.reviewed_at = reviewed_at
        row.notes = notes
        return self._to_domain(row)

    async def remove(self, account_id: str) -> bool:
        result = await self.session.execute(
            delete(db_models.GhostAccount).where(db_models.GhostAccount.account_id == account_id)
        )
        return bool(result.rowcount)  # type: ignore[attr-defined]

    def _filtered(
        self,
        stmt,
        is_reviewed: bool | None,
        account_search: str | None,
        expiry_before: date | None,
        expiry_after: date | None,
    ):
        if is_reviewed is not None:
            stmt = stmt.where(db_models.GhostAccount.is_reviewed.is_(is_reviewed))
        if account_search:
            stmt = stmt.where(db_models.GhostAccount.account_name.ilike(f"%{account_search}%"))
        if expiry_before is not None:
            stmt = stmt.where(db_models.GhostAccount.latest_expiry_date <= expiry_before)
        if expiry_after is not None:
            stmt = stmt.where(db_models.GhostAccount.latest_expiry_date >= expiry_after)
        return stmt

    async def list_candidates(
        self,
        *,
        is_reviewed: bool | None = None,
        account_search: str | None = None,
        expiry_before: date | None = None,
        expiry_after: date | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[GhostAccountCandidate], int]:
        """Return one page of candidates (latest expiry first) and the filtered total."""
        filters = (is_reviewed, account_search, expiry_before, expiry_after)
        count_stmt = self._filtered(select(func.count(db_models.GhostAccount.id)), *filters)
        total = (await self.session.execute(count_stmt)).scalar_one()

        stmt = self._filtered(select(db_models.GhostAccount), *filters)
        stmt = (
            stmt.order_by(
                db_models.GhostAccount.latest_expiry_date.desc(),
                db_models.GhostAccount.account_id,
            )
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return [self._to_domain(row) for row in result.scalars()], total

    async def account_ids(self) -> set[str]:
        result = await self.session.execute(select(db_models.GhostAccount.account_id))
        return set(result.scalars())

    async def summary(self) -> GhostSummary:
        row = (
            await self.session.execute(
                select(
                    func.count(db_models.GhostAccount.id),
                    func.coalesce(
                        func.sum(
                            case((db_models.GhostAccount.is_reviewed.is_(True), 1), else_=0)
                        ),
                        0,
                    ),
                )
            )
        ).one()
        total, reviewed = int(row[0]), int(row[1])
        return GhostSummary(total=total, reviewed=reviewed, unreviewed=total - reviewed)

    @staticmethod
    def _to_domain(row: db_models.GhostAccount) -> GhostAccountCandidate:
        return GhostAccountCandidate(
            account_id=row.account_id,
            account_name=row.account_name,
            total_expired_products=row.total_expired_products,
            latest_expiry_date=row.latest_expiry_date,
            last_checked=row.last_checked,
            is_reviewed=row.is_reviewed,
            reviewed_by=row.reviewed_by,
            reviewed_at=row.reviewed_at,
            notes=row.notes,
        )


@dataclass(slots=True)
class AnalysisRunRepository:
    """Persistence helpers for the run log."""

    session: AsyncSession

    async def create(self, report: RunReport) -> None:
        self.session.add(
            db_models.AnalysisRun(
                run_id=report.run_id,
                trigger=report.trigger.value,
                status=report.status.value,
                started_at=report.started_at,
                warnings=[],
            )
        )

    async def finish(self, report: RunReport) -> None:
        result = await self.session.execute(
            select(db_models.AnalysisRun).where(db_models.AnalysisRun.run_id == report.run_id)
        )
        row = result.scalar_one_or_none()
        if row is None:
            row = db_models.AnalysisRun(
                run_id=report.run_id, trigger=report.trigger.value, started_at=report.started_at
            )
            self.session.add(row)

        row.status = report.status.value
        row.finished_at = report.finished_at
        row.duration_seconds = report.duration_seconds
        row.records_fetched = report.records_fetched
        row.records_skipped = report.records_skipped
        row.snapshots_created = report.snapshots_created
        row.status_changes = report.status_changes
        row.accounts_analyzed = report.accounts_analyzed
        row.accounts_failed = report.accounts_failed
        row.accounts_deferred = report.accounts_deferred
        row.ghosts_flagged = report.ghosts_flagged
        row.ghosts_removed = report.ghosts_removed
        row.warnings = list(report.warnings)
        row.error = report.error
        row.next_cursor = report.next_cursor
        row.capture_watermark = report.capture_watermark
        row.chain_started_at = report.chain_started_at

    async def latest(self) -> RunReport | None:
        stmt = (
            select(db_models.AnalysisRun)
            .order_by(db_models.AnalysisRun.started_at.desc(), db_models.AnalysisRun.id.desc())
            .limit(1)
        )
        row = (await self.session.execute(stmt)).scalar_one_or_none()
        return self._to_domain(row) if row else None

    async def latest_successful(self) -> RunReport | None:
        stmt = (
            select(db_models.AnalysisRun)
            .where(
                db_models.AnalysisRun.status.in_(
                    [RunStatus.succeeded.value, RunStatus.partial.value]
                )
            )
            .order_by(db_models.AnalysisRun.started_at.desc(), db_models.AnalysisRun.id.desc())
            .limit(1)
        )
        row = (await self.session.execute(stmt)).scalar_one_or_none()
        return self._to_domain(row) if row else None

    async def active_run(self, now: datetime, stale_after: timedelta) -> RunReport | None:
        """The most recent run still marked running that started within ``stale_after``."""
        stmt = (
            select(db_models.AnalysisRun)
            .where(
                db_models.AnalysisRun.status == RunStatus.running.value,
                db_models.AnalysisRun.started_at >= now - stale_after,
            )
            .order_by(db_models.AnalysisRun.started_at.desc(), db_models.AnalysisRun.id.desc())
            .limit(1)
        )
        row = (await self.session.execute(stmt)).scalar_one_or_none()
        return self._to_domain(row) if row else None

    async def recent(self, limit: int = 20) -> list[RunReport]:
        stmt = (
            select(db_models.AnalysisRun)
            .order_by(db_models.AnalysisRun.started_at.desc(), db_models.AnalysisRun.id.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [self._to_domain(row) for row in result.scalars()]

    @staticmethod
    def _to_domain(row: db_models.AnalysisRun) -> RunReport:
        return RunReport(
            run_id=row.run_id,
            trigger=RunTrigger(row.trigger),
            started_at=row.started_at,
            status=RunStatus(row.status),
            finished_at=row.finished_at,
            records_fetched=row.records_fetched,
            records_skipped=row.records_skipped,
            snapshots_created=row.snapshots_created,
            status_changes=row.status_changes,
            accounts_analyzed=row.accounts_analyzed,
            accounts_failed=row.accounts_failed,
            accounts_deferred=row.accounts_deferred,
            ghosts_flagged=row.ghosts_flagged,
            ghosts_removed=row.ghosts_removed,
            next_cursor=row.next_cursor,
            capture_watermark=row.capture_watermark,
            chain_started_at=row.chain_started_at,
            warnings=list(row.warnings or []),
            error=row.error,
        )
