"""Tests for mandi_sync.scheduler."""

from __future__ import annotations

from datetime import date
from unittest.mock import AsyncMock, MagicMock

import pytest

from mandi_sync.core.config import (
    MandiSyncConfig,
    RetentionConfig,
    SourceConfig,
    SyncConfig,
)
from mandi_sync.core.models import BackfillSummary, HourlySyncResult, SyncResult, SyncStatus
from mandi_sync.scheduler import (
    build_scheduler,
    run_daily_sync,
    run_hourly_sync,
    run_retention_cleanup,
    run_weekly_backfill,
)
from mandi_sync.sync.retention import CleanupResult


def _config(**sync_overrides) -> MandiSyncConfig:
    return MandiSyncConfig(
        source=SourceConfig(api_key="k"),
        sync=SyncConfig(**sync_overrides),
        retention=RetentionConfig(enabled=True),
    )


def _fields(job) -> dict[str, str]:
    return {f.name: str(f) for f in job.trigger.fields if not f.is_default}


class TestBuildScheduler:
    def test_default_jobs(self):
        scheduler = build_scheduler(_config(), MagicMock())
        assert {j.id for j in scheduler.get_jobs()} == {"daily_sync", "weekly_backfill"}

    def test_all_jobs(self):
        scheduler = build_scheduler(_config(hourly_enabled=True), MagicMock(), MagicMock())
        assert {j.id for j in scheduler.get_jobs()} == {
            "daily_sync",
            "weekly_backfill",
            "hourly_sync",
            "retention",
        }

    def test_disabled_backfill(self):
        scheduler = build_scheduler(_config(weekly_backfill_enabled=False), MagicMock())
        assert [j.id for j in scheduler.get_jobs()] == ["daily_sync"]

    def test_daily_time(self):
        scheduler = build_scheduler(_config(daily_time="06:15"), MagicMock())
        fields = _fields(scheduler.get_job("daily_sync"))
        assert fields["hour"] == "6"
        assert fields["minute"] == "15"

    def test_hourly_window(self):
        config = _config(hourly_enabled=True, hourly_start_hour=14, hourly_end_hour=22)
        scheduler = build_scheduler(config, MagicMock())
        assert _fields(scheduler.get_job("hourly_sync"))["hour"] == "14-21"

    def test_weekly_backfill_on_sunday(self):
        scheduler = build_scheduler(_config(weekly_backfill_days=14), MagicMock())
        job = scheduler.get_job("weekly_backfill")
        assert _fields(job)["day_of_week"] == "sun"
        assert job.args[1] == 14

    def test_timezone(self):
        scheduler = build_scheduler(_config(), MagicMock())
        assert str(scheduler.timezone) == "Asia/Kolkata"

    def test_not_started(self):
        assert not build_scheduler(_config(), MagicMock()).running


class TestJobs:
    async def test_daily_sync(self):
        service = MagicMock()
        service.sync_yesterday = AsyncMock(
            return_value=SyncResult(
                sync_date=date(2025, 11, 7), success=True, status=SyncStatus.COMPLETED
            )
        )
        await run_daily_sync(service)
        service.sync_yesterday.assert_awaited_once()

    async def test_daily_sync_errors_are_logged(self, caplog):
        service = MagicMock()
        service.sync_yesterday = AsyncMock(side_effect=RuntimeError("boom"))
        await run_daily_sync(service)
        assert "daily_sync failed" in caplog.text

    async def test_weekly_backfill(self):
        service = MagicMock()
        service.backfill_missing_dates = AsyncMock(return_value=BackfillSummary())
        await run_weekly_backfill(service, 7)
        service.backfill_missing_dates.assert_awaited_once_with(7)

    @pytest.mark.parametrize("inside,calls", [(True, 1), (False, 0)])
    async def test_hourly_respects_window(self, inside, calls):
        service = MagicMock()
        service.is_within_sync_hours.return_value = inside
        service.hourly_sync = AsyncMock(
            return_value=HourlySyncResult(success=True, sync_date=date(2025, 11, 8))
        )
        await run_hourly_sync(service)
        assert service.hourly_sync.await_count == calls

    async def test_retention(self):
        service = MagicMock()
        service.cleanup_old_prices = AsyncMock(
            return_value=CleanupResult(success=True, deleted_count=3)
        )
        await run_retention_cleanup(service)
        service.cleanup_old_prices.assert_awaited_once()
