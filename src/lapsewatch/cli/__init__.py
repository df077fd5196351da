"""
LapseWatch command line interface.

    lapsewatch refresh
    lapsewatch schedule [--interval SECONDS]
    lapsewatch status
    lapsewatch serve [--host HOST] [--port PORT]
    lapsewatch ghosts list [--reviewed | --unreviewed] [--search TEXT]
    lapsewatch ghosts review ACCOUNT_ID --by NAME [--notes TEXT]
    lapsewatch ghosts remove ACCOUNT_ID
    lapsewatch entitlements expired [--category C] [--account TEXT] [--ghosts-only]
    lapsewatch audit history RECORD
    lapsewatch audit status-changes [--since ISO]
    lapsewatch audit stats
"""

from __future__ import annotations

import argparse
import logging
from datetime import date, datetime
from typing import Sequence

from lapsewatch.analysis.inventory import ExpiredQuery
from lapsewatch.cli.analysis import refresh_command, schedule_command, status_command
from lapsewatch.cli.audit import history_command, stats_command, status_changes_command
from lapsewatch.cli.entitlements import expired_command
from lapsewatch.cli.ghosts import list_ghosts_command, remove_ghost_command, review_ghost_command
from lapsewatch.cli.serve import serve_command
from lapsewatch.cli.ux import error
from lapsewatch.config import get_settings
from lapsewatch.core.errors import LapseWatchError, format_error_message, main_with_error_handling
from lapsewatch.domain.models import EntitlementCategory
from lapsewatch.logging import configure_logging
from lapsewatch.orchestration.runtime import Runtime


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lapsewatch", description="Entitlement lifecycle analysis"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Log at DEBUG level")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("refresh", help="Capture records and run the analysis once")
    schedule_parser = subparsers.add_parser("schedule", help="Run the analysis on an interval")
    schedule_parser.add_argument("--interval", type=int, help="Seconds between runs")
    subparsers.add_parser("status", help="Show the last run and inventory totals")
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)

    ghosts_parser = subparsers.add_parser("ghosts", help="Ghost account review")
    ghosts_sub = ghosts_parser.add_subparsers(dest="ghosts_command")
    ghosts_list = ghosts_sub.add_parser("list", help="List ghost account candidates")
    reviewed = ghosts_list.add_mutually_exclusive_group()
    reviewed.add_argument("--reviewed", dest="reviewed", action="store_const", const=True)
    reviewed.add_argument("--unreviewed", dest="reviewed", action="store_const", const=False)
    ghosts_list.add_argument("--search", help="Substring of the account name")
    ghosts_list.add_argument("--expiry-before", type=date.fromisoformat)
    ghosts_list.add_argument("--expiry-after", type=date.fromisoformat)
    ghosts_list.add_argument("--limit", type=int, default=100)
    ghosts_review = ghosts_sub.add_parser("review", help="Mark a candidate reviewed")
    ghosts_review.add_argument("account_id")
    ghosts_review.add_argument("--by", dest="reviewed_by", required=True)
    ghosts_review.add_argument("--notes")
    ghosts_remove = ghosts_sub.add_parser("remove", help="Delete a candidate")
    ghosts_remove.add_argument("account_id")

    entitlements_parser = subparsers.add_parser("entitlements", help="Entitlement inventory")
    entitlements_sub = entitlements_parser.add_subparsers(dest="entitlements_command")
    expired = entitlements_sub.add_parser("expired", help="Expired products by account")
    expired.add_argument("--category", type=EntitlementCategory, choices=list(EntitlementCategory))
    expired.add_argument("--account", help="Substring of the account id or name")
    expired.add_argument("--product", help="Substring of the product code or name")
    expired.add_argument("--exclude-product", help="Skip products matching this substring")
    expired.add_argument("--ghosts-only", action="store_true", help="Only ghost accounts")
    expired.add_argument("--limit", type=int, default=100)

    audit_parser = subparsers.add_parser("audit", help="Provisioning record audit trail")
    audit_sub = audit_parser.add_subparsers(dest="audit_command")
    audit_history = audit_sub.add_parser("history", help="Snapshots of one record (id or name)")
    audit_history.add_argument("record")
    audit_history.add_argument("--limit", type=int, default=50)
    audit_changes = audit_sub.add_parser("status-changes", help="Recent status transitions")
    audit_changes.add_argument("--since", type=datetime.fromisoformat)
    audit_changes.add_argument("--limit", type=int, default=50)
    audit_sub.add_parser("stats", help="Ledger statistics")

    return parser


@main_with_error_handling()
def main(argv: Sequence[str] | None = None, *, runtime: Runtime | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(logging.DEBUG if args.verbose else logging.WARNING, json_output=False)
    settings = get_settings()
    runtime = runtime or Runtime(settings)

    try:
        if args.command == "refresh":
            return refresh_command(settings, runtime)
        if args.command == "schedule":
            return schedule_command(settings, runtime, args.interval)
        if args.command == "serve":
            return serve_command(settings, args.host, args.port)
        if args.command == "status":
            return status_command(settings)

        if args.command == "ghosts":
            if args.ghosts_command == "list":
                return list_ghosts_command(
                    settings,
                    reviewed=args.reviewed,
                    search=args.search,
                    expiry_before=args.expiry_before,
                    expiry_after=args.expiry_after,
                    limit=args.limit,
                )
            if args.ghosts_command == "review":
                return review_ghost_command(settings, args.account_id, args.reviewed_by, args.notes)
            if args.ghosts_command == "remove":
                return remove_ghost_command(settings, args.account_id)

        if args.command == "entitlements" and args.entitlements_command == "expired":
            return expired_command(
                settings,
                ExpiredQuery(
                    category=args.category,
                    account=args.account,
                    product=args.product,
                    exclude_product=args.exclude_product,
                    ghost_accounts_only=args.ghosts_only,
                    limit=args.limit,
                ),
            )

        if args.command == "audit":
            if args.audit_command == "history":
                return history_command(settings, args.record, args.limit)
            if args.audit_command == "status-changes":
                return status_changes_command(settings, args.since, args.limit)
            if args.audit_command == "stats":
                return stats_command(settings)
    except LapseWatchError as exc:
        error(format_error_message(exc))
        raise

    parser.print_help()
    return 0


__all__ = ["build_parser", "main"]
