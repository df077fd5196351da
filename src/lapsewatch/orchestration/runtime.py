from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lapsewatch.config import Settings
from lapsewatch.core.errors import ConfigurationError
from lapsewatch.db.session import get_session_factory
from lapsewatch.domain.models import RunReport
from lapsewatch.orchestration.pipeline import AnalysisPipeline
from lapsewatch.scheduling.clock import Clock
from lapsewatch.scheduling.scheduler import AnalysisScheduler
from lapsewatch.scheduling.single_flight import SingleFlight
from lapsewatch.sources.base import RecordSource
from lapsewatch.sources.memory import InMemoryRecordSource
from lapsewatch.sources.salesforce import SalesforceRecordSource


def build_source(settings: Settings) -> RecordSource:
    if settings.record_source_backend == "memory":
        return InMemoryRecordSource(page_size=settings.source_page_size)

    if settings.record_source_backend == "salesforce":
        return SalesforceRecordSource.from_settings(settings)

    raise ConfigurationError(
        f"Unsupported record source backend: {settings.record_source_backend}",
        {"setting": "LAPSEWATCH_RECORD_SOURCE_BACKEND"},
    )


def build_pipeline(
    settings: Settings,
    *,
    source: RecordSource | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    clock: Clock | None = None,
) -> AnalysisPipeline:
    return AnalysisPipeline(
        source or build_source(settings),
        session_factory or get_session_factory(),
        settings,
        clock=clock,
    )


def build_scheduler(
    pipeline: AnalysisPipeline, settings: Settings, interval_seconds: float | None = None
) -> AnalysisScheduler[RunReport]:
    flight: SingleFlight[RunReport] = SingleFlight(pipeline.run)
    return AnalysisScheduler(flight, interval_seconds or settings.scheduler_interval_seconds)


class Runtime:
    """The record source, pipeline and scheduler of one process.

    The API keeps one on ``app.state`` and every CLI invocation builds its
    own. Parts are built on first use, after the database engine exists.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        source: RecordSource | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.settings = settings
        self._source = source
        self._session_factory = session_factory
        self._clock = clock
        self._pipeline: AnalysisPipeline | None = None
        self._scheduler: AnalysisScheduler[RunReport] | None = None

    @property
    def source(self) -> RecordSource:
        if self._source is None:
            self._source = build_source(self.settings)
        return self._source

    @property
    def pipeline(self) -> AnalysisPipeline:
        if self._pipeline is None:
            self._pipeline = build_pipeline(
                self.settings,
                source=self.source,
                session_factory=self._session_factory,
                clock=self._clock,
            )
        return self._pipeline

    @property
    def scheduler(self) -> AnalysisScheduler[RunReport]:
        """Shared by scheduled ticks and manual API refreshes."""
        if self._scheduler is None:
            self._scheduler = build_scheduler(self.pipeline, self.settings)
        return self._scheduler
