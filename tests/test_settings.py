"""Tests for environment-driven settings and runtime wiring."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker

from lapsewatch.analysis.rollup import ExtensionMatchPolicy
from lapsewatch.config import Settings
from lapsewatch.core.errors import ConfigurationError
from lapsewatch.orchestration import runtime
from lapsewatch.scheduling.clock import FixedClock
from lapsewatch.sources.memory import InMemoryRecordSource
from lapsewatch.sources.salesforce import SalesforceRecordSource


def test_defaults():
    settings = Settings()

    assert settings.expiration_window == timedelta(days=30)
    assert settings.at_risk_days == 7
    assert settings.record_name_prefix == "PS-"
    assert settings.scheduler_enabled is False
    assert settings.extension_match_attributes == []


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("LAPSEWATCH_EXPIRATION_WINDOW_DAYS", "14")
    monkeypatch.setenv("LAPSEWATCH_EXTENSION_MATCH_ATTRIBUTES", '["modifier", "region"]')
    monkeypatch.setenv("LAPSEWATCH_RECORD_SOURCE_BACKEND", "memory")

    settings = Settings()

    assert settings.expiration_window == timedelta(days=14)
    assert ExtensionMatchPolicy.from_names(settings.extension_match_attributes).attributes == (
        "modifier",
        "region",
    )
    assert settings.record_source_backend == "memory"


def test_build_source_backends():
    memory = runtime.build_source(Settings(record_source_backend="memory", source_page_size=7))
    assert isinstance(memory, InMemoryRecordSource)
    assert memory._page_size == 7

    salesforce = runtime.build_source(
        Settings(
            record_source_backend="salesforce",
            salesforce_instance_url="https://acme.my.salesforce.com",
            salesforce_access_token="t",
        )
    )
    assert isinstance(salesforce, SalesforceRecordSource)


def test_unknown_backend_is_configuration_error():
    with pytest.raises(ConfigurationError):
        runtime.build_source(Settings(record_source_backend="csv"))


def test_pipeline_rejects_unknown_match_attribute(settings):
    bad = settings.model_copy(update={"extension_match_attributes": ["peril"]})

    with pytest.raises(ConfigurationError):
        runtime.build_pipeline(
            bad, source=InMemoryRecordSource(), session_factory=async_sessionmaker()
        )


def test_build_scheduler_uses_configured_interval(settings):
    pipeline = runtime.build_pipeline(
        settings,
        source=InMemoryRecordSource(),
        session_factory=async_sessionmaker(),
        clock=FixedClock(datetime(2025, 10, 1)),
    )

    scheduler = runtime.build_scheduler(pipeline, settings)

    assert scheduler.interval_seconds == settings.scheduler_interval_seconds
    assert runtime.build_scheduler(pipeline, settings, 5).interval_seconds == 5


def test_runtime_builds_each_part_once(settings):
    shared = runtime.Runtime(settings, session_factory=async_sessionmaker())

    assert shared.source is shared.source
    assert shared.pipeline is shared.pipeline
    assert shared.scheduler is shared.scheduler
    assert not shared.scheduler.in_progress


def test_runtimes_do_not_share_state(settings):
    first = runtime.Runtime(settings, session_factory=async_sessionmaker())
    second = runtime.Runtime(settings, session_factory=async_sessionmaker())

    assert first.source is not second.source
    assert first.scheduler is not second.scheduler
