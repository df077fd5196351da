"""
Analysis pipeline.

One run = a capture phase (fetch changed records, append ledger entries) and
an analysis phase (roll up, classify and check every known account for ghost
status). Each record and each account is its own unit of work: a failure in
one is counted and logged, and the run carries on.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Mapping
from uuid import uuid4

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from lapsewatch.analysis.changes import ChangeDetector
from lapsewatch.analysis.classifier import classify_all, summarize
from lapsewatch.analysis.ghosts import GhostAccountDetector
from lapsewatch.analysis.normalizer import normalize_record
from lapsewatch.analysis.rollup import ExtensionMatchPolicy, roll_up
from lapsewatch.config import Settings
from lapsewatch.core.errors import (
    MalformedRecord,
    PersistenceConflict,
    ReviewStatePreservationViolation,
    RunInProgress,
    SourceUnavailable,
)
from lapsewatch.db.repositories import (
    AccountAnalysisRepository,
    AccountRef,
    AnalysisRunRepository,
    AuditRepository,
    GhostAccountRepository,
)
from lapsewatch.domain.models import ChangeType, RunReport, RunStatus, RunTrigger
from lapsewatch.logging import bind_run_context, clear_run_context
from lapsewatch.scheduling.clock import Clock, SystemClock
from lapsewatch.scheduling.locks import KeyedLock
from lapsewatch.sources.base import RecordFilter, RecordSource, modified_since_for

logger = structlog.get_logger()


class AnalysisPipeline:
    def __init__(
        self,
        source: RecordSource,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        *,
        clock: Clock | None = None,
        policy: ExtensionMatchPolicy | None = None,
    ) -> None:
        self._source = source
        self._sessions = session_factory
        self._settings = settings
        self._clock = clock or SystemClock()
        self._policy = policy or ExtensionMatchPolicy.from_names(
            settings.extension_match_attributes
        )
        self._detector = ChangeDetector(self._clock.now)
        self._ghosts = GhostAccountDetector()
        self._record_locks = KeyedLock()

    @property
    def policy(self) -> ExtensionMatchPolicy:
        return self._policy

    async def run(self, trigger: RunTrigger | str = RunTrigger.manual) -> RunReport:
        report = RunReport(
            run_id=uuid4().hex,
            trigger=RunTrigger(trigger),
            started_at=self._clock.now(),
        )
        bind_run_context(report.run_id, report.trigger.value)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.run_soft_timeout_seconds

        def timed_out() -> bool:
            return loop.time() >= deadline

        try:
            async with self._sessions() as session:
                runs = AnalysisRunRepository(session)
                active = await runs.active_run(report.started_at, self._settings.run_stale_after)
                if active is not None:
                    raise RunInProgress(
                        "Analysis already in progress",
                        {"run_id": active.run_id, "started_at": active.started_at.isoformat()},
                    )
                previous = await runs.latest_successful()
                await runs.create(report)
                await session.commit()

            logger.info("run_started")
            try:
                await self._capture(report, previous, timed_out)
            except SourceUnavailable as exc:
                report.status = RunStatus.failed
                report.error = exc.message
                if previous is not None:
                    report.capture_watermark = previous.capture_watermark
                logger.error("run_aborted_source_unavailable", error=exc.message, **exc.details)
            except Exception as exc:
                report.status = RunStatus.failed
                report.error = str(exc)
                await self._finish(report)
                raise
            else:
                await self._analyze(report, timed_out)
                report.status = self._final_status(report)

            await self._finish(report)

            logger.info(
                "run_finished",
                status=report.status.value,
                records_fetched=report.records_fetched,
                records_skipped=report.records_skipped,
                snapshots_created=report.snapshots_created,
                accounts_analyzed=report.accounts_analyzed,
                accounts_failed=report.accounts_failed,
                accounts_deferred=report.accounts_deferred,
                ghosts_flagged=report.ghosts_flagged,
                ghosts_removed=report.ghosts_removed,
                duration_seconds=report.duration_seconds,
            )
            return report
        finally:
            clear_run_context()

    async def _finish(self, report: RunReport) -> None:
        report.finished_at = self._clock.now()
        async with self._sessions() as session:
            await AnalysisRunRepository(session).finish(report)
            await session.commit()

    @staticmethod
    def _final_status(report: RunReport) -> RunStatus:
        if (
            report.errored
            or report.accounts_deferred
            or report.next_cursor is not None
            or report.warnings
        ):
            return RunStatus.partial
        return RunStatus.succeeded

    async def _with_conflict_retry(
        self, unit: Callable[[], Awaitable[Any]]
    ) -> Any:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(PersistenceConflict),
            stop=stop_after_attempt(2),
            wait=wait_fixed(self._settings.persistence_retry_backoff_seconds),
            reraise=True,
        ):
            with attempt:
                return await unit()

    # Capture ----------------------------------------------------------------

    async def _capture(
        self,
        report: RunReport,
        previous: RunReport | None,
        timed_out: Callable[[], bool],
    ) -> None:
        settings = self._settings
        watermark = previous.capture_watermark if previous else None
        cursor = previous.next_cursor if previous else None
        resumed = cursor is not None
        # A resumed chain keeps the filter it was started with.
        chain_started_at = report.started_at
        if previous is not None and resumed and previous.chain_started_at is not None:
            chain_started_at = previous.chain_started_at
        report.chain_started_at = chain_started_at
        record_filter = RecordFilter(
            modified_since=modified_since_for(
                watermark,
                chain_started_at,
                settings.capture_lookback_days,
                settings.capture_overlap_minutes,
            ),
            name_prefix=settings.record_name_prefix or None,
        )
        logger.info(
            "capture_started",
            modified_since=record_filter.modified_since.isoformat()
            if record_filter.modified_since
            else None,
            resumed=resumed,
        )

        semaphore = asyncio.Semaphore(settings.capture_concurrency)
        pages = 0
        complete = False
        while pages < settings.source_max_pages_per_run:
            if timed_out():
                logger.warning("capture_soft_timeout", pages=pages)
                break
            page = await self._source.fetch_page(record_filter, cursor)
            pages += 1
            report.records_fetched += len(page.records)

            async def bounded(raw: Mapping[str, Any]) -> None:
                async with semaphore:
                    await self._capture_one(report, raw)

            await asyncio.gather(*(bounded(raw) for raw in page.records))
            cursor = page.next_cursor
            if cursor is None:
                complete = True
                break

        report.next_cursor = cursor
        if complete:
            report.capture_watermark = chain_started_at
        else:
            report.capture_watermark = watermark
            report.warnings.append(f"capture incomplete after {pages} page(s); resuming next run")
        logger.info("capture_finished", pages=pages, complete=complete)

    async def _capture_one(self, report: RunReport, raw: Mapping[str, Any]) -> None:
        try:
            record = normalize_record(raw)
        except MalformedRecord as exc:
            report.records_skipped += 1
            logger.warning("record_skipped_malformed", error=exc.message, **exc.details)
            return

        async def unit() -> ChangeType | None:
            async with self._record_locks.hold(record.id):
                async with self._sessions() as session:
                    audit = AuditRepository(session)
                    prior = await audit.latest_snapshot(record.id)
                    entry = self._detector.detect(record, prior)
                    if entry is None:
                        return None
                    await audit.append(entry)
                    try:
                        await session.commit()
                    except IntegrityError as exc:
                        raise PersistenceConflict(
                            "ledger write lost a race", {"record_id": record.id}
                        ) from exc
                    return entry.change_type

        try:
            change_type = await self._with_conflict_retry(unit)
        except PersistenceConflict as exc:
            report.warnings.append(f"persistence conflict on record {record.id}")
            logger.warning("record_persistence_conflict", error=exc.message, **exc.details)
            return
        except Exception:
            report.records_skipped += 1
            logger.exception("record_capture_failed", record_id=record.id)
            return

        if change_type is not None:
            report.snapshots_created += 1
            if change_type is ChangeType.status_change:
                report.status_changes += 1

    # Analysis ---------------------------------------------------------------

    async def _analyze(self, report: RunReport, timed_out: Callable[[], bool]) -> None:
        async with self._sessions() as session:
            accounts = await AccountAnalysisRepository(session).accounts_for_analysis()

        logger.info("analysis_started", accounts=len(accounts))
        semaphore = asyncio.Semaphore(self._settings.analysis_concurrency)
        tasks: list[asyncio.Task[None]] = []

        for index, account in enumerate(accounts):
            await semaphore.acquire()
            if timed_out():
                semaphore.release()
                report.accounts_deferred = len(accounts) - index
                logger.warning("analysis_soft_timeout", deferred=report.accounts_deferred)
                break
            tasks.append(asyncio.create_task(self._analyze_guarded(report, account, semaphore)))

        await asyncio.gather(*tasks)

    async def _analyze_guarded(
        self, report: RunReport, account: AccountRef, semaphore: asyncio.Semaphore
    ) -> None:
        try:
            await self._with_conflict_retry(lambda: self._analyze_account(report, account))
            report.accounts_analyzed += 1
        except PersistenceConflict as exc:
            report.accounts_failed += 1
            report.warnings.append(f"persistence conflict on account {account.account_id}")
            logger.warning("account_persistence_conflict", error=exc.message, **exc.details)
        except ReviewStatePreservationViolation as exc:
            report.accounts_failed += 1
            report.warnings.append(f"review state violation on account {account.account_id}")
            logger.error("account_review_state_violation", error=exc.message, **exc.details)
        except Exception:
            report.accounts_failed += 1
            logger.exception("account_analysis_failed", account_id=account.account_id)
        finally:
            semaphore.release()

    async def _analyze_account(self, report: RunReport, account: AccountRef) -> None:
        settings = self._settings
        now = self._clock.now()
        today = self._clock.today()
        log = logger.bind(account_id=account.account_id)

        async with self._sessions() as session:
            records = await AuditRepository(session).latest_for_account(account.account_id)
            rolled = roll_up(records, self._policy)
            classified = classify_all(
                rolled, today, settings.expiration_window, at_risk_days=settings.at_risk_days
            )
            summary = summarize(classified)
            await AccountAnalysisRepository(session).replace_states(
                account.account_id, account.account_name, classified, summary, now
            )

            ghosts = GhostAccountRepository(session)
            candidate = self._ghosts.detect(
                account.account_id, account.account_name, classified, records, now
            )
            created = removed = False
            if candidate is not None:
                created = await ghosts.upsert_candidate(candidate)
            else:
                removed = await ghosts.remove(account.account_id)

            try:
                await session.commit()
            except IntegrityError as exc:
                raise PersistenceConflict(
                    "account analysis write lost a race", {"account_id": account.account_id}
                ) from exc

        if candidate is not None:
            report.ghosts_flagged += 1
            if created:
                log.info(
                    "ghost_candidate_flagged",
                    expired_products=candidate.total_expired_products,
                    latest_expiry=candidate.latest_expiry_date.isoformat(),
                )
        elif removed:
            report.ghosts_removed += 1
            log.info("ghost_candidate_removed")
        log.debug(
            "account_analyzed",
            active=summary.active,
            expiring=summary.expiring,
            expired=summary.expired,
            extended=summary.extended,
        )
