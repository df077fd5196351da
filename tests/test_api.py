"""HTTP API tests against a real aiosqlite database."""

import asyncio
from collections.abc import AsyncIterator
from datetime import datetime

import pytest
from factories import make_raw_record, model_line
from httpx import ASGITransport, AsyncClient

from lapsewatch.api.deps import get_clock, get_scheduler, session_dependency
from lapsewatch.api.main import create_app
from lapsewatch.config import get_settings
from lapsewatch.db.repositories import AnalysisRunRepository
from lapsewatch.domain.models import RunReport, RunTrigger
from lapsewatch.orchestration.pipeline import AnalysisPipeline
from lapsewatch.scheduling import AnalysisScheduler, FixedClock, SingleFlight
from lapsewatch.sources.memory import InMemoryRecordSource

START = datetime(2024, 6, 1, 6, 0, 0)


class GatedJob:
    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, trigger: str) -> None:
        self.started.set()
        await self.release.wait()


@pytest.fixture
def clock():
    return FixedClock(START)


@pytest.fixture
def source():
    source = InMemoryRecordSource()
    source.put(
        make_raw_record(
            record_id="R1",
            name="PS-0001",
            account_name="Acme",
            apps=[{"productCode": "APP-1", "endDate": "2024-01-01"}],
        )
    )
    source.put(
        make_raw_record(
            record_id="R2",
            name="PS-0002",
            account_id="001GLOBEX",
            account_name="Globex",
            models=[model_line("MODEL-1", "2024-06-05"), model_line("MODEL-2", "2023-06-01")],
            data=[{"productCode": "DATA-1", "endDate": "2024-06-10"}],
        )
    )
    source.put(
        make_raw_record(
            record_id="R3",
            name="PS-0003",
            account_id="001GLOBEX",
            account_name="Globex",
            action="Update",
            models=[model_line("MODEL-2", "2026-01-01")],
        )
    )
    return source


@pytest.fixture
def pipeline(source, session_factory, settings, clock):
    return AnalysisPipeline(source, session_factory, settings, clock=clock)


@pytest.fixture
def scheduler(pipeline):
    return AnalysisScheduler(SingleFlight(pipeline.run), interval_seconds=300)


@pytest.fixture
def app(session_factory, settings, clock, scheduler):
    app = create_app()

    async def override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[session_dependency] = override_session
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_scheduler] = lambda: scheduler
    return app


@pytest.fixture
async def client(app) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
async def analysed(pipeline):
    return await pipeline.run()


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["analysis_in_progress"] is False


@pytest.mark.asyncio
async def test_ready_checks_database(client):
    response = await client.get("/ready")

    assert response.status_code == 200
    assert response.json() == {
        "status": "ready",
        "database": "connected",
        "last_successful_run_at": None,
    }


@pytest.mark.asyncio
async def test_ready_reports_last_successful_run(client, analysed):
    body = (await client.get("/ready")).json()

    assert body["last_successful_run_at"] == analysed.finished_at.isoformat()


@pytest.mark.asyncio
async def test_status_reports_last_run_and_totals(client, analysed):
    response = await client.get("/api/v1/analysis/status")

    assert response.status_code == 200
    body = response.json()
    assert body["in_progress"] is False
    assert body["last_run"]["run_id"] == analysed.run_id
    assert body["last_run"]["status"] == "succeeded"
    assert body["last_run"]["errored"] == 0
    assert body["last_successful_run_at"] is not None
    assert body["summary"] == {
        "active": 1,
        "expiring": 2,
        "expired": 1,
        "extended": 1,
        "total": 4,
    }


@pytest.mark.asyncio
async def test_status_before_any_run(client):
    body = (await client.get("/api/v1/analysis/status")).json()

    assert body["last_run"] is None
    assert body["last_successful_run_at"] is None
    assert body["summary"]["total"] == 0


@pytest.mark.asyncio
async def test_list_runs(client, analysed):
    response = await client.get("/api/v1/analysis/runs", params={"limit": 5})

    assert response.status_code == 200
    assert [run["run_id"] for run in response.json()] == [analysed.run_id]


@pytest.mark.asyncio
async def test_manual_refresh_is_single_flight(app, client):
    job = GatedJob()
    gated = AnalysisScheduler(SingleFlight(job), interval_seconds=300)
    app.dependency_overrides[get_scheduler] = lambda: gated

    first = await client.post("/api/v1/analysis/refresh")
    assert first.status_code == 202
    assert first.json() == {"status": "started"}

    await job.started.wait()
    second = await client.post("/api/v1/analysis/refresh")
    assert second.status_code == 409
    assert second.json()["detail"] == "Analysis already in progress"

    status = (await client.get("/api/v1/analysis/status")).json()
    assert status["in_progress"] is True

    job.release.set()
    while gated.in_progress:
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_manual_refresh_refused_while_run_log_shows_active_run(
    client, session_factory, clock, scheduler
):
    async with session_factory() as session:
        await AnalysisRunRepository(session).create(
            RunReport(run_id="other", trigger=RunTrigger.scheduled, started_at=clock.now())
        )
        await session.commit()

    response = await client.post("/api/v1/analysis/refresh")

    assert response.status_code == 409
    assert response.json()["detail"] == "Analysis already in progress"
    assert response.json()["run_id"] == "other"
    assert not scheduler.in_progress


@pytest.mark.asyncio
async def test_expiring_from_last_run(client, analysed):
    response = await client.get("/api/v1/entitlements/expiring")

    assert response.status_code == 200
    body = response.json()
    assert [item["product_code"] for item in body] == ["MODEL-1", "DATA-1"]
    assert [item["urgency"] for item in body] == ["at-risk", "upcoming"]
    assert all(item["is_extended"] is False for item in body)


@pytest.mark.asyncio
async def test_expiring_filtered_by_urgency(client, analysed):
    response = await client.get("/api/v1/entitlements/expiring", params={"urgency": "at-risk"})

    assert [item["product_code"] for item in response.json()] == ["MODEL-1"]


@pytest.mark.asyncio
async def test_expiring_with_custom_window(client, analysed):
    narrow = await client.get("/api/v1/entitlements/expiring", params={"window_days": 3})
    wider = await client.get("/api/v1/entitlements/expiring", params={"window_days": 5})

    assert narrow.json() == []
    assert [item["product_code"] for item in wider.json()] == ["MODEL-1"]


@pytest.mark.asyncio
async def test_expired_products_grouped_by_account(client, source, pipeline):
    source.put(
        make_raw_record(
            record_id="R4",
            name="PS-0004",
            account_id="001INITECH",
            account_name="Initech",
            data=[{"productCode": "DATA-OLD", "endDate": "2024-02-01"}],
            apps=[{"productCode": "APP-LIVE", "endDate": "2025-01-01"}],
        )
    )
    await pipeline.run()

    response = await client.get("/api/v1/entitlements/expired")

    assert response.status_code == 200
    body = response.json()
    assert [(a["account_name"], a["is_ghost_account"]) for a in body["accounts"]] == [
        ("Acme", True),
        ("Initech", False),
    ]
    assert [p["product_code"] for p in body["accounts"][1]["expired_products"]] == ["DATA-OLD"]
    assert body["summary"] == {
        "total_accounts": 2,
        "total_expired_products": 2,
        "ghost_accounts": 1,
        "regular_accounts": 1,
    }


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "params,accounts",
    [
        ({"ghost_accounts_only": "true"}, ["001ACME"]),
        ({"category": "data"}, ["001INITECH"]),
        ({"account": "initech"}, ["001INITECH"]),
        ({"product": "app-"}, ["001ACME"]),
        ({"exclude_product": "app-"}, ["001INITECH"]),
        ({"limit": 1}, ["001ACME"]),
    ],
)
async def test_expired_products_filters(client, source, pipeline, params, accounts):
    source.put(
        make_raw_record(
            record_id="R4",
            name="PS-0004",
            account_id="001INITECH",
            account_name="Initech",
            data=[{"productCode": "DATA-OLD", "endDate": "2024-02-01"}],
            apps=[{"productCode": "APP-LIVE", "endDate": "2025-01-01"}],
        )
    )
    await pipeline.run()

    body = (await client.get("/api/v1/entitlements/expired", params=params)).json()

    assert [a["account_id"] for a in body["accounts"]] == accounts


@pytest.mark.asyncio
async def test_expired_products_rejects_unknown_category(client, analysed):
    response = await client.get("/api/v1/entitlements/expired", params={"category": "peril"})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_account_entitlements(client, analysed):
    response = await client.get("/api/v1/accounts/001GLOBEX/entitlements")

    assert response.status_code == 200
    body = response.json()
    assert body["account_name"] == "Globex"
    assert body["window_days"] == 30
    assert body["summary"]["extended"] == 1
    extended = [e for e in body["entitlements"] if e["is_extended"]]
    assert extended[0]["product_code"] == "MODEL-2"
    assert extended[0]["extended_by_record_name"] == "PS-0003"

    without = await client.get(
        "/api/v1/accounts/001GLOBEX/entitlements", params={"include_extended": "false"}
    )
    assert all(not e["is_extended"] for e in without.json()["entitlements"])


@pytest.mark.asyncio
async def test_unknown_account_entitlements_is_404(client, analysed):
    response = await client.get("/api/v1/accounts/001NOPE/entitlements")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_ghost_account_listing_and_detail(client, analysed):
    listing = await client.get("/api/v1/ghost-accounts")

    assert listing.status_code == 200
    body = listing.json()
    assert body["total"] == 1
    assert body["summary"] == {"total": 1, "reviewed": 0, "unreviewed": 1}
    assert body["items"][0]["account_id"] == "001ACME"
    assert body["items"][0]["total_expired_products"] == 1

    searched = await client.get("/api/v1/ghost-accounts", params={"account_search": "glob"})
    assert searched.json()["total"] == 0

    detail = await client.get("/api/v1/ghost-accounts/001ACME")
    assert detail.json()["latest_expiry_date"] == "2024-01-01"

    products = await client.get("/api/v1/ghost-accounts/001ACME/products")
    assert [p["product_code"] for p in products.json()["products"]] == ["APP-1"]


@pytest.mark.asyncio
async def test_review_ghost_account(client, analysed):
    response = await client.post(
        "/api/v1/ghost-accounts/001ACME/review",
        json={"reviewed_by": "ops@example.com", "notes": "customer churned"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["is_reviewed"] is True
    assert body["reviewed_by"] == "ops@example.com"
    assert body["notes"] == "customer churned"

    reviewed = await client.get("/api/v1/ghost-accounts", params={"is_reviewed": "true"})
    assert reviewed.json()["total"] == 1


@pytest.mark.asyncio
async def test_review_requires_reviewer(client, analysed):
    response = await client.post("/api/v1/ghost-accounts/001ACME/review", json={"reviewed_by": ""})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_unknown_ghost_account_is_404(client, analysed):
    response = await client.get("/api/v1/ghost-accounts/001NOPE")

    assert response.status_code == 404
    assert response.json() == {"detail": "ghost account not found", "account_id": "001NOPE"}

    review = await client.post(
        "/api/v1/ghost-accounts/001NOPE/review", json={"reviewed_by": "me"}
    )
    assert review.status_code == 404


@pytest.mark.asyncio
async def test_delete_ghost_account(client, analysed):
    deleted = await client.delete("/api/v1/ghost-accounts/001ACME")
    again = await client.delete("/api/v1/ghost-accounts/001ACME")

    assert deleted.status_code == 204
    assert again.status_code == 404


@pytest.mark.asyncio
async def test_audit_endpoints(client, analysed):
    history = await client.get("/api/v1/audit/records/PS-0002")
    assert history.status_code == 200
    entries = history.json()
    assert len(entries) == 1
    assert entries[0]["record_id"] == "R2"
    assert entries[0]["change_type"] == "initial"

    missing = await client.get("/api/v1/audit/records/PS-9999")
    assert missing.status_code == 404

    changes = await client.get(
        "/api/v1/audit/status-changes", params={"since": "2024-01-01T00:00:00+02:00"}
    )
    assert changes.status_code == 200
    assert changes.json() == []

    stats = (await client.get("/api/v1/audit/stats")).json()
    assert stats["total_records"] == 3
    assert stats["total_snapshots"] == 3
    assert stats["status_changes"] == 0
