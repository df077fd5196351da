"""entitlements expired."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from lapsewatch.analysis.inventory import ExpiredAccount, ExpiredQuery, InventoryService
from lapsewatch.cli.analysis import run_with_session
from lapsewatch.cli.ux import info, print_table
from lapsewatch.config import Settings
from lapsewatch.core.errors import ExitCode


def expired_command(settings: Settings, query: ExpiredQuery) -> int:
    async def load(session: AsyncSession) -> list[ExpiredAccount]:
        return await InventoryService(session).expired(query)

    groups = run_with_session(settings, load)
    if not groups:
        info("No expired products match")
        return ExitCode.SUCCESS

    rows = []
    for group in groups:
        for item in group.expired_products:
            rolled = item.rolled_up
            end = rolled.effective_end_date
            rows.append(
                [
                    group.account_name or group.account_id,
                    "yes" if group.is_ghost_account else "no",
                    rolled.product_code,
                    rolled.category.value,
                    end.isoformat() if end else "",
                ]
            )
    print_table(
        "Expired products",
        ["Account", "Ghost", "Product", "Category", "Expired on"],
        rows,
    )
    ghosts = sum(1 for group in groups if group.is_ghost_account)
    info(f"{len(rows)} products across {len(groups)} accounts, {ghosts} ghost accounts")
    return ExitCode.SUCCESS
