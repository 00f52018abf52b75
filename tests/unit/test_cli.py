"""Tests for the CLI module."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from mandi_sync.cli import _Services, cli
from mandi_sync.core.config import MandiSyncConfig, SourceConfig
from mandi_sync.core.exceptions import StorageError
from mandi_sync.core.models import (
    BackfillSummary,
    BulkImportResult,
    HourlySyncResult,
    StorageStats,
    SyncHealth,
    SyncJob,
    SyncResult,
    SyncStatus,
    SyncType,
)
from mandi_sync.sync.retention import CleanupResult

DAY = date(2025, 11, 3)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config():
    return MandiSyncConfig(source=SourceConfig(api_key="test-key"))


@pytest.fixture
def services():
    return _Services(
        store=AsyncMock(),
        sync=AsyncMock(),
        bulk=AsyncMock(),
        retention=AsyncMock(),
    )


@pytest.fixture
def patched(config, services):
    """Patch config loading and service wiring for every command."""

    @asynccontextmanager
    async def _fake_open(_config):
        yield services

    with (
        patch("mandi_sync.cli._load_config", return_value=config),
        patch("mandi_sync.cli._open_services", _fake_open),
    ):
        yield services


def _ok(**overrides) -> SyncResult:
    data = dict(sync_date=DAY, success=True, records_synced=12, status=SyncStatus.COMPLETED)
    data.update(overrides)
    return SyncResult(**data)


# ---------------------------------------------------------------------------
# Group
# ---------------------------------------------------------------------------


class TestGroup:
    def test_help(self, runner):
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("sync", "backfill", "import", "hourly", "status", "health", "cleanup", "serve", "schedule"):
            assert command in result.output

    def test_missing_api_key_exits_nonzero(self, runner, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("MANDI_SYNC_SOURCE__API_KEY", raising=False)
        monkeypatch.delenv("MANDI_SYNC_CONFIG", raising=False)
        result = runner.invoke(cli, ["health"])
        assert result.exit_code == 1


# ---------------------------------------------------------------------------
# sync
# ---------------------------------------------------------------------------


class TestSyncCommand:
    def test_defaults_to_yesterday(self, runner, patched):
        patched.sync.sync_yesterday.return_value = _ok()
        result = runner.invoke(cli, ["sync"])
        assert result.exit_code == 0, result.output
        patched.sync.sync_yesterday.assert_awaited_once()

    def test_explicit_date(self, runner, patched):
        patched.sync.sync_date.return_value = _ok()
        result = runner.invoke(cli, ["sync", "--date", "2025-11-03"])
        assert result.exit_code == 0, result.output
        patched.sync.sync_date.assert_awaited_once_with(DAY)

    def test_today(self, runner, patched):
        patched.sync.sync_today.return_value = _ok()
        result = runner.invoke(cli, ["sync", "--today"])
        assert result.exit_code == 0
        patched.sync.sync_today.assert_awaited_once()

    def test_date_and_today_conflict(self, runner, patched):
        result = runner.invoke(cli, ["sync", "--date", "2025-11-03", "--today"])
        assert result.exit_code == 2

    def test_failure_exits_nonzero(self, runner, patched):
        patched.sync.sync_yesterday.return_value = _ok(
            success=False, status=SyncStatus.FAILED, message="HTTP 503"
        )
        result = runner.invoke(cli, ["sync"])
        assert result.exit_code == 1

    def test_library_error_exits_nonzero(self, runner, patched):
        patched.sync.sync_yesterday.side_effect = StorageError("database is locked")
        result = runner.invoke(cli, ["sync"])
        assert result.exit_code == 1


# ---------------------------------------------------------------------------
# backfill / import / hourly
# ---------------------------------------------------------------------------


class TestBackfillCommand:
    def test_days(self, runner, patched):
        patched.sync.backfill_missing_dates.return_value = BackfillSummary(
            missing_dates=1, synced_dates=1, total_records=12, results=[_ok()]
        )
        result = runner.invoke(cli, ["backfill", "--days", "14"])
        assert result.exit_code == 0, result.output
        patched.sync.backfill_missing_dates.assert_awaited_once_with(14)

    def test_nothing_missing(self, runner, patched):
        patched.sync.backfill_missing_dates.return_value = BackfillSummary()
        result = runner.invoke(cli, ["backfill"])
        assert result.exit_code == 0
        patched.sync.backfill_missing_dates.assert_awaited_once_with(7)


class TestImportCommand:
    def test_range(self, runner, patched):
        patched.bulk.import_date_range.return_value = BulkImportResult(
            success=True, records_synced=40, dates_processed=4
        )
        result = runner.invoke(
            cli, ["import", "--start", "2025-10-01", "--end", "2025-10-04"]
        )
        assert result.exit_code == 0, result.output
        patched.bulk.import_date_range.assert_awaited_once_with(
            date(2025, 10, 1), date(2025, 10, 4)
        )

    def test_days(self, runner, patched):
        patched.bulk.import_last_n_days.return_value = BulkImportResult(success=True)
        result = runner.invoke(cli, ["import", "--days", "30"])
        assert result.exit_code == 0
        patched.bulk.import_last_n_days.assert_awaited_once_with(30)

    def test_resume(self, runner, patched):
        patched.bulk.resume_import.return_value = BulkImportResult(
            success=True, dates_missing=0, message="No missing dates found"
        )
        result = runner.invoke(
            cli, ["import", "--start", "2025-10-01", "--end", "2025-10-04", "--resume"]
        )
        assert result.exit_code == 0
        patched.bulk.resume_import.assert_awaited_once()

    def test_commodities(self, runner, patched):
        patched.bulk.import_commodities_last_n_days.return_value = BulkImportResult(
            success=True, records_synced=30, dates_processed=15, commodities_failed=1,
            message="Commodities failed: Garlic",
        )
        result = runner.invoke(
            cli, ["import", "--commodity", "Onion", "-m", "Garlic", "--days", "15"]
        )
        assert result.exit_code == 0, result.output
        patched.bulk.import_commodities_last_n_days.assert_awaited_once_with(
            ["Onion", "Garlic"], 15
        )

    def test_commodities_default_window(self, runner, patched):
        patched.bulk.import_commodities_last_n_days.return_value = BulkImportResult(
            success=True
        )
        result = runner.invoke(cli, ["import", "--commodity", "Onion"])
        assert result.exit_code == 0, result.output
        patched.bulk.import_commodities_last_n_days.assert_awaited_once_with(["Onion"], 60)

    @pytest.mark.parametrize(
        "args",
        [
            ["import", "--commodity", "Onion", "--start", "2025-10-01", "--end", "2025-10-02"],
            ["import", "--commodity", "Onion", "--resume"],
            ["import"],
            ["import", "--start", "2025-10-01"],
            ["import", "--days", "5", "--start", "2025-10-01", "--end", "2025-10-02"],
            ["import", "--days", "5", "--resume"],
            ["import", "--start", "2025-10-05", "--end", "2025-10-01"],
        ],
    )
    def test_usage_errors(self, runner, patched, args):
        result = runner.invoke(cli, args)
        assert result.exit_code == 2

    def test_skipped_exits_nonzero(self, runner, patched):
        patched.bulk.import_last_n_days.return_value = BulkImportResult(
            success=False, skipped=True, message="Bulk import already running"
        )
        result = runner.invoke(cli, ["import", "--days", "3"])
        assert result.exit_code == 1


class TestHourlyCommand:
    def test_runs(self, runner, patched):
        patched.sync.is_within_sync_hours = MagicMock(return_value=True)
        patched.sync.hourly_sync.return_value = HourlySyncResult(
            success=True, sync_date=DAY, total_records=8, records_written=8
        )
        result = runner.invoke(cli, ["hourly"])
        assert result.exit_code == 0, result.output
        patched.sync.hourly_sync.assert_awaited_once()

    def test_all_states_failed(self, runner, patched):
        patched.sync.is_within_sync_hours = MagicMock(return_value=False)
        patched.sync.hourly_sync.return_value = HourlySyncResult(
            success=False, sync_date=DAY, states_failed={"Punjab": "timeout"}
        )
        result = runner.invoke(cli, ["hourly"])
        assert result.exit_code == 1


# ---------------------------------------------------------------------------
# status / health / cleanup
# ---------------------------------------------------------------------------


class TestStatusCommand:
    @pytest.fixture
    def store(self):
        store = AsyncMock()
        store.list_sync_jobs.return_value = [
            SyncJob(
                sync_date=DAY,
                sync_type=SyncType.DAILY,
                status=SyncStatus.COMPLETED,
                records_synced=120,
                started_at=datetime(2025, 11, 4, 19, 0, tzinfo=timezone.utc),
                duration_seconds=14,
            )
        ]
        return store

    def test_table(self, runner, config, store):
        with (
            patch("mandi_sync.cli._load_config", return_value=config),
            patch("mandi_sync.cli._create_store_async", AsyncMock(return_value=store)),
        ):
            result = runner.invoke(cli, ["status", "--limit", "5"])
        assert result.exit_code == 0, result.output
        store.list_sync_jobs.assert_awaited_once_with(limit=5)
        store.close.assert_awaited_once()

    def test_json(self, runner, config, store):
        with (
            patch("mandi_sync.cli._load_config", return_value=config),
            patch("mandi_sync.cli._create_store_async", AsyncMock(return_value=store)),
        ):
            result = runner.invoke(cli, ["status", "--json"])
        assert result.exit_code == 0
        payload = json.loads(result.stdout)
        assert payload[0]["sync_date"] == "2025-11-03"
        assert payload[0]["records_synced"] == 120


class TestHealthCommand:
    def test_healthy(self, runner, patched):
        patched.sync.get_sync_health.return_value = SyncHealth(
            healthy=True, window_days=7, total_syncs=7, completed_syncs=7, success_rate=100.0
        )
        result = runner.invoke(cli, ["health"])
        assert result.exit_code == 0, result.output

    def test_unhealthy(self, runner, patched):
        patched.sync.get_sync_health.return_value = SyncHealth(
            healthy=False, window_days=7, total_syncs=2, failed_syncs=1, completed_syncs=1,
            success_rate=50.0,
        )
        result = runner.invoke(cli, ["health", "--window", "7"])
        assert result.exit_code == 1
        patched.sync.get_sync_health.assert_awaited_once_with(7)


class TestCleanupCommand:
    def test_cleanup(self, runner, patched):
        patched.retention.cleanup_old_prices.return_value = CleanupResult(
            success=True, deleted_count=3, message="Deleted 3 records"
        )
        result = runner.invoke(cli, ["cleanup", "--days", "10"])
        assert result.exit_code == 0
        patched.retention.cleanup_old_prices.assert_awaited_once_with(10)

    def test_stats_only(self, runner, patched):
        patched.retention.get_storage_stats.return_value = StorageStats(total_records=5)
        result = runner.invoke(cli, ["cleanup", "--stats"])
        assert result.exit_code == 0
        patched.retention.cleanup_old_prices.assert_not_awaited()

    def test_failure(self, runner, patched):
        patched.retention.cleanup_old_prices.return_value = CleanupResult(
            success=False, message="database is locked"
        )
        result = runner.invoke(cli, ["cleanup"])
        assert result.exit_code == 1


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


class TestServeCommand:
    def test_runs_uvicorn(self, runner, config):
        with (
            patch("mandi_sync.cli._load_config", return_value=config),
            patch("uvicorn.run") as run,
        ):
            result = runner.invoke(cli, ["serve", "--port", "9000", "--no-scheduler"])
        assert result.exit_code == 0, result.output
        kwargs = run.call_args.kwargs
        assert kwargs["port"] == 9000
        assert kwargs["host"] == "0.0.0.0"
