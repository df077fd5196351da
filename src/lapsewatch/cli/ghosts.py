"""ghosts list | review | remove."""

from __future__ import annotations

from datetime import date, datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from lapsewatch.cli.analysis import run_with_session
from lapsewatch.cli.ux import info, print_table, success
from lapsewatch.config import Settings
from lapsewatch.core.errors import ExitCode, NotFoundError
from lapsewatch.db.repositories import GhostAccountRepository, GhostSummary
from lapsewatch.domain.models import GhostAccountCandidate


def list_ghosts_command(
    settings: Settings,
    *,
    reviewed: bool | None = None,
    search: str | None = None,
    expiry_before: date | None = None,
    expiry_after: date | None = None,
    limit: int = 100,
) -> int:
    async def load(session: AsyncSession) -> tuple[list[GhostAccountCandidate], int, GhostSummary]:
        repo = GhostAccountRepository(session)
        items, total = await repo.list_candidates(
            is_reviewed=reviewed,
            account_search=search,
            expiry_before=expiry_before,
            expiry_after=expiry_after,
            limit=limit,
        )
        return items, total, await repo.summary()

    items, total, summary = run_with_session(settings, load)
    if not items:
        info("No ghost accounts match")
        return ExitCode.SUCCESS

    print_table(
        f"Ghost accounts ({len(items)} of {total})",
        ["Account", "Name", "Expired products", "Latest expiry", "Reviewed", "Reviewer"],
        [
            [
                item.account_id,
                item.account_name,
                str(item.total_expired_products),
                item.latest_expiry_date.isoformat(),
                "yes" if item.is_reviewed else "no",
                item.reviewed_by or "",
            ]
            for item in items
        ],
    )
    info(f"{summary.total} total, {summary.reviewed} reviewed, {summary.unreviewed} unreviewed")
    return ExitCode.SUCCESS


def review_ghost_command(
    settings: Settings, account_id: str, reviewed_by: str, notes: str | None = None
) -> int:
    async def review(session: AsyncSession) -> GhostAccountCandidate:
        reviewed_at = datetime.now(timezone.utc).replace(tzinfo=None)
        return await GhostAccountRepository(session).mark_reviewed(
            account_id, reviewed_by, reviewed_at, notes
        )

    candidate = run_with_session(settings, review)
    success(f"Marked {candidate.account_name} ({candidate.account_id}) reviewed by {reviewed_by}")
    return ExitCode.SUCCESS


def remove_ghost_command(settings: Settings, account_id: str) -> int:
    async def remove(session: AsyncSession) -> bool:
        return await GhostAccountRepository(session).remove(account_id)

    if not run_with_session(settings, remove):
        raise NotFoundError("ghost account not found", {"account_id": account_id})
    success(f"Removed ghost account {account_id}")
    return ExitCode.SUCCESS
