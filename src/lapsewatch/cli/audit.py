"""audit history | status-changes | stats."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from lapsewatch.cli.analysis import run_with_session
from lapsewatch.cli.ux import info, print_key_value, print_table
from lapsewatch.config import Settings
from lapsewatch.core.errors import ExitCode, NotFoundError
from lapsewatch.db.repositories import AuditRepository, AuditStats
from lapsewatch.domain.models import AuditEntry, ChangeType


def _ts(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def history_command(settings: Settings, record_ref: str, limit: int = 50) -> int:
    async def load(session: AsyncSession) -> list[AuditEntry]:
        return await AuditRepository(session).history(record_ref, limit)

    entries = run_with_session(settings, load)
    if not entries:
        raise NotFoundError("no audit entries for record", {"record": record_ref})

    print_table(
        f"Audit trail for {entries[0].record_name}",
        ["Captured", "Change", "Status", "Previous", "Changed fields"],
        [
            [
                _ts(entry.captured_at),
                entry.change_type.value,
                entry.fields_snapshot.get("status") or "",
                entry.previous_status or "",
                (
                    ", ".join(sorted(entry.changed_fields))
                    if entry.change_type is not ChangeType.initial
                    else ""
                ),
            ]
            for entry in entries
        ],
    )
    return ExitCode.SUCCESS


def status_changes_command(
    settings: Settings, since: datetime | None = None, limit: int = 50
) -> int:
    async def load(session: AsyncSession) -> list[AuditEntry]:
        return await AuditRepository(session).status_changes(since, limit)

    entries = run_with_session(settings, load)
    if not entries:
        info("No status changes recorded")
        return ExitCode.SUCCESS

    print_table(
        "Status changes",
        ["Captured", "Record", "Account", "From", "To"],
        [
            [
                _ts(entry.captured_at),
                entry.record_name,
                entry.fields_snapshot.get("account_name") or "",
                entry.previous_status or "",
                entry.fields_snapshot.get("status") or "",
            ]
            for entry in entries
        ],
    )
    return ExitCode.SUCCESS


def stats_command(settings: Settings) -> int:
    async def load(session: AsyncSession) -> AuditStats:
        return await AuditRepository(session).stats()

    stats = run_with_session(settings, load)
    print_key_value(
        {
            "Records tracked": str(stats.total_records),
            "Snapshots": str(stats.total_snapshots),
            "Status changes": str(stats.status_changes),
            "Earliest capture": _ts(stats.earliest_capture),
            "Latest capture": _ts(stats.latest_capture),
        },
        title="Audit trail",
    )
    return ExitCode.SUCCESS
