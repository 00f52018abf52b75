"""Tests for the FastAPI REST API module."""

from __future__ import annotations

from datetime import date
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from mandi_sync.api.app import create_app
from mandi_sync.core.config import (
    APIConfig,
    MandiSyncConfig,
    SourceConfig,
    StorageConfig,
)
from mandi_sync.core.models import (
    BackfillSummary,
    BulkImportResult,
    HourlySyncResult,
    SyncHealth,
    SyncResult,
    SyncStatus,
    SyncType,
)

DAY = date(2025, 11, 3)


# -- Fixtures --


def _make_config(tmp_path, api_key=None):
    """Create a test config."""
    return MandiSyncConfig(
        source=SourceConfig(api_key="test-key", base_url="https://api.test.local/x"),
        storage=StorageConfig(sqlite_path=str(tmp_path / "test.db")),
        api=APIConfig(api_key=api_key),
    )


@pytest.fixture
def config(tmp_path):
    return _make_config(tmp_path)


@pytest.fixture
def client(config):
    with TestClient(create_app(config=config)) as c:
        yield c


@pytest.fixture
def state(client):
    return client.app.state.app_state


@pytest.fixture
def sync_service(state):
    """Replace the live sync service with a mock."""
    service = AsyncMock()
    state.sync_service = service
    return service


@pytest.fixture
def bulk_importer(state):
    importer = AsyncMock()
    state.bulk_importer = importer
    return importer


@pytest.fixture
def authed_client(tmp_path):
    with TestClient(create_app(config=_make_config(tmp_path, "test-secret-key"))) as c:
        yield c


def _sync_result(**overrides) -> SyncResult:
    data = dict(
        sync_date=DAY, success=True, records_synced=10, status=SyncStatus.COMPLETED
    )
    data.update(overrides)
    return SyncResult(**data)


# -- Health Endpoints --


@pytest.mark.unit
class TestHealth:
    def test_health(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["database"] is True
        assert body["storage_backend"] == "sqlite"
        assert body["scheduler_running"] is False

    def test_database_health(self, client):
        resp = client.get("/api/health/db")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "database": True}

    def test_database_down(self, client, state):
        state.store.health_check = AsyncMock(return_value=False)
        resp = client.get("/api/health/db")
        assert resp.status_code == 503

    def test_sync_health(self, client, sync_service):
        sync_service.get_sync_health.return_value = SyncHealth(
            healthy=True, window_days=3, total_syncs=2, completed_syncs=2, success_rate=100.0
        )
        resp = client.get("/api/sync/health", params={"window_days": 3})
        assert resp.status_code == 200
        assert resp.json()["success_rate"] == 100.0
        sync_service.get_sync_health.assert_awaited_once_with(3)


# -- Status & Stats --


@pytest.mark.unit
class TestStatus:
    def test_empty(self, client):
        resp = client.get("/api/sync/status")
        assert resp.status_code == 200
        assert resp.json() == {"total": 0, "items": []}

    def test_lists_jobs(self, client, state):
        client.portal.call(state.store.start_sync_job, DAY, SyncType.DAILY)
        client.portal.call(state.store.start_sync_job, DAY, SyncType.BULK)

        resp = client.get("/api/sync/status", params={"sync_type": "bulk"})

        body = resp.json()
        assert body["total"] == 1
        assert body["items"][0]["sync_type"] == "bulk"
        assert body["items"][0]["sync_date"] == "2025-11-03"

    def test_limit_validated(self, client):
        assert client.get("/api/sync/status", params={"limit": 0}).status_code == 422

    def test_stats(self, client):
        resp = client.get("/api/stats")
        assert resp.status_code == 200
        assert resp.json()["total_records"] == 0


# -- Triggers --


@pytest.mark.unit
class TestTriggers:
    def test_sync_yesterday(self, client, sync_service):
        sync_service.sync_yesterday.return_value = _sync_result()
        resp = client.post("/api/sync/yesterday")
        assert resp.status_code == 200
        assert resp.json()["records_synced"] == 10

    def test_sync_date(self, client, sync_service):
        sync_service.sync_date.return_value = _sync_result()
        resp = client.post("/api/sync/date", json={"date": "2025-11-03"})
        assert resp.status_code == 200
        sync_service.sync_date.assert_awaited_once_with(DAY)

    def test_sync_date_invalid(self, client, sync_service):
        resp = client.post("/api/sync/date", json={"date": "03/11/2025x"})
        assert resp.status_code == 422
        sync_service.sync_date.assert_not_awaited()

    def test_backfill(self, client, sync_service):
        sync_service.backfill_missing_dates.return_value = BackfillSummary(missing_dates=2)
        resp = client.post("/api/sync/backfill", json={"days": 14})
        assert resp.status_code == 200
        sync_service.backfill_missing_dates.assert_awaited_once_with(14)

    def test_backfill_days_bounds(self, client, sync_service):
        assert client.post("/api/sync/backfill", json={"days": 500}).status_code == 422

    def test_hourly(self, client, sync_service):
        sync_service.hourly_sync.return_value = HourlySyncResult(
            success=True, sync_date=DAY, total_records=5
        )
        resp = client.post("/api/sync/hourly")
        assert resp.status_code == 200
        assert resp.json()["total_records"] == 5

    def test_conflict_when_running(self, client, state, sync_service):
        state.guard = MagicMock()
        state.guard.is_running.return_value = True

        resp = client.post("/api/sync/yesterday")

        assert resp.status_code == 409
        assert resp.json()["error"] == "SyncInProgressError"
        sync_service.sync_yesterday.assert_not_awaited()


@pytest.mark.unit
class TestBulkImport:
    def test_last_n_days(self, client, bulk_importer):
        bulk_importer.import_last_n_days.return_value = BulkImportResult(success=True)
        resp = client.post("/api/import/bulk", json={"days": 30})
        assert resp.status_code == 200
        bulk_importer.import_last_n_days.assert_awaited_once_with(30)

    def test_range(self, client, bulk_importer):
        bulk_importer.import_date_range.return_value = BulkImportResult(success=True)
        resp = client.post(
            "/api/import/bulk",
            json={"start_date": "2025-10-01", "end_date": "2025-10-31"},
        )
        assert resp.status_code == 200
        bulk_importer.import_date_range.assert_awaited_once_with(
            date(2025, 10, 1), date(2025, 10, 31)
        )

    def test_resume(self, client, bulk_importer):
        bulk_importer.resume_import.return_value = BulkImportResult(
            success=True, dates_missing=4
        )
        resp = client.post(
            "/api/import/bulk",
            json={"start_date": "2025-10-01", "end_date": "2025-10-31", "resume": True},
        )
        assert resp.status_code == 200
        assert resp.json()["dates_missing"] == 4

    @pytest.mark.parametrize(
        "body",
        [
            {},
            {"start_date": "2025-10-01"},
            {"start_date": "2025-10-31", "end_date": "2025-10-01"},
            {"days": 10, "resume": True},
        ],
    )
    def test_invalid_requests(self, client, bulk_importer, body):
        assert client.post("/api/import/bulk", json=body).status_code == 422

    def test_value_error_maps_to_400(self, client, bulk_importer):
        bulk_importer.import_last_n_days.side_effect = ValueError("days must be >= 1")
        resp = client.post("/api/import/bulk", json={"days": 5})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "days must be >= 1"


# -- Authentication --


@pytest.mark.unit
class TestApiKey:
    def test_missing_key_rejected(self, authed_client):
        resp = authed_client.get("/api/stats")
        assert resp.status_code == 401
        assert resp.json() == {
            "error": "Unauthorized",
            "detail": "Invalid or missing API key",
        }

    def test_wrong_key_rejected(self, authed_client):
        resp = authed_client.get("/api/stats", headers={"X-API-Key": "nope"})
        assert resp.status_code == 401

    def test_valid_key(self, authed_client):
        resp = authed_client.get("/api/stats", headers={"X-API-Key": "test-secret-key"})
        assert resp.status_code == 200

    def test_health_is_exempt(self, authed_client):
        assert authed_client.get("/api/health").status_code == 200
