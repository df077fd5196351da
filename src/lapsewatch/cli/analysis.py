"""refresh, schedule and status commands."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from lapsewatch.cli.ux import (
    console,
    error,
    header,
    info,
    print_key_value,
    styled,
    success,
    warning,
)
from lapsewatch.config import Settings
from lapsewatch.core.errors import ExitCode
from lapsewatch.db.repositories import AccountAnalysisRepository, AnalysisRunRepository
from lapsewatch.db.session import dispose_engine, get_session_factory, init_engine
from lapsewatch.domain.models import RunReport, RunStatus, RunTrigger
from lapsewatch.orchestration.runtime import Runtime, build_scheduler

T = TypeVar("T")


def run_with_session(settings: Settings, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
    """Run one coroutine against a fresh session, committing on success."""

    async def runner() -> T:
        init_engine(settings)
        try:
            async with get_session_factory()() as session:
                result = await work(session)
                await session.commit()
                return result
        finally:
            await dispose_engine()

    return asyncio.run(runner())


def _fmt(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "never"


def print_run_report(report: RunReport) -> None:
    print_key_value(
        {
            "Run": report.run_id,
            "Trigger": report.trigger.value,
            "Status": styled(report.status.value),
            "Duration": f"{report.duration_seconds:.1f}s",
            "Records fetched": str(report.records_fetched),
            "Snapshots created": str(report.snapshots_created),
            "Status changes": str(report.status_changes),
            "Accounts analysed": str(report.accounts_analyzed),
            "Skipped / errored": str(report.errored),
            "Deferred accounts": str(report.accounts_deferred),
            "Ghost accounts flagged": str(report.ghosts_flagged),
            "Ghost accounts cleared": str(report.ghosts_removed),
        },
        title="Run report",
    )
    for message in report.warnings:
        warning(message)


def exit_code_for(report: RunReport) -> int:
    if report.status is RunStatus.failed:
        return ExitCode.SOURCE_UNAVAILABLE
    if report.status is RunStatus.partial:
        return ExitCode.WARNING
    return ExitCode.SUCCESS


def refresh_command(settings: Settings, runtime: Runtime) -> int:
    async def run() -> RunReport:
        init_engine(settings)
        try:
            return await runtime.pipeline.run(RunTrigger.manual)
        finally:
            await dispose_engine()

    header("LapseWatch refresh")
    with console.status("Capturing and analysing provisioning records..."):
        report = asyncio.run(run())

    print_run_report(report)
    if report.status is RunStatus.failed:
        error(report.error or "run failed")
    elif report.status is RunStatus.succeeded:
        success("Analysis complete")
    return exit_code_for(report)


def schedule_command(settings: Settings, runtime: Runtime, interval: int | None = None) -> int:
    async def run() -> None:
        init_engine(settings)
        scheduler = build_scheduler(runtime.pipeline, settings, interval)
        try:
            await scheduler.run_forever()
        finally:
            await scheduler.stop()
            await dispose_engine()

    info(
        f"Scheduling analysis every {interval or settings.scheduler_interval_seconds}s "
        "(Ctrl+C to stop)"
    )
    asyncio.run(run())
    return ExitCode.SUCCESS


def status_command(settings: Settings) -> int:
    async def load(session: AsyncSession) -> tuple[Any, ...]:
        runs = AnalysisRunRepository(session)
        analysis = AccountAnalysisRepository(session)
        return (
            await runs.latest(),
            await runs.latest_successful(),
            await analysis.last_analyzed(),
            await analysis.totals(),
        )

    last_run, last_successful, last_analyzed, totals = run_with_session(settings, load)

    header("LapseWatch status")
    print_key_value(
        {
            "Last successful run": _fmt(last_successful.finished_at if last_successful else None),
            "Last analysed": _fmt(last_analyzed),
            "Active": str(totals.active),
            "Expiring soon": str(totals.expiring),
            "Expired": str(totals.expired),
            "Extended": str(totals.extended),
        }
    )
    if last_run is None:
        info("No analysis has run yet")
        return ExitCode.SUCCESS
    print_run_report(last_run)
    return ExitCode.SUCCESS
