"""Historical range import with resume-from-gap support."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import date, timedelta

from mandi_sync.core.config import SyncConfig
from mandi_sync.core.exceptions import StorageError
from mandi_sync.core.models import (
    BulkImportResult,
    RecordFilters,
    SyncJob,
    SyncStatus,
    SyncType,
)
from mandi_sync.ingestion.client import MandiClient
from mandi_sync.ingestion.parser import RecordParser
from mandi_sync.ingestion.store import StorageProtocol
from mandi_sync.sync.guard import RunGuard
from mandi_sync.sync.orchestrator import MSG_CANCELLED, date_range, local_today
from mandi_sync.sync.reconciler import RecordReconciler

logger = logging.getLogger(__name__)


class BulkImporter:
    """Loads a span of history day by day.

    Meant for initial loads: every date in the range is fetched and
    upserted even if it already has data. Progress is tracked in a single
    `bulk` SyncJob keyed on the range start date, and `resume_import`
    restarts an interrupted load by importing only the dates that still
    have no rows.
    """

    def __init__(
        self,
        client: MandiClient,
        store: StorageProtocol,
        reconciler: RecordReconciler,
        config: SyncConfig,
        *,
        parser: RecordParser | None = None,
        guard: RunGuard | None = None,
        today: Callable[[], date] | None = None,
    ) -> None:
        self._client = client
        self._store = store
        self._reconciler = reconciler
        self._config = config
        self._parser = parser or RecordParser()
        self._guard = guard or RunGuard()
        self._today = today or (lambda: local_today(config.timezone))

    async def import_date_range(self, start: date, end: date) -> BulkImportResult:
        """Fetch and persist every date in [start, end]."""
        if end < start:
            raise ValueError(f"end date {end} is before start date {start}")
        async with self._guard.try_acquire(SyncType.BULK) as acquired:
            if not acquired:
                return _skipped()
            logger.info("Starting bulk import from %s to %s", start, end)
            days = date_range(start, end)
            return await self._tracked(start, lambda: self._import_dates(days))

    async def import_last_n_days(self, days: int = 60) -> BulkImportResult:
        """Import the `days` days ending yesterday."""
        start, end = self._trailing_window(days)
        logger.info("Starting bulk import for last %d days (%s to %s)", days, start, end)
        return await self.import_date_range(start, end)

    async def import_commodities_last_n_days(
        self, commodities: list[str], days: int = 60
    ) -> BulkImportResult:
        """Import the trailing window one commodity at a time.

        Each commodity is fetched date by date with a commodity filter,
        regardless of the configured state and commodity allow-lists. A
        commodity counts as failed once any of its dates fails to fetch
        or persist; its remaining dates and the other commodities still run.
        """
        if not commodities:
            raise ValueError("at least one commodity is required")
        start, end = self._trailing_window(days)
        async with self._guard.try_acquire(SyncType.BULK) as acquired:
            if not acquired:
                return _skipped()
            window = date_range(start, end)
            logger.info(
                "Importing %d commodities for %d days (%s to %s)",
                len(commodities), len(window), start, end,
            )
            return await self._tracked(
                start, lambda: self._import_commodities(commodities, window)
            )

    async def resume_import(self, start: date, end: date) -> BulkImportResult:
        """Import only the dates in [start, end] that have no stored rows."""
        if end < start:
            raise ValueError(f"end date {end} is before start date {start}")
        async with self._guard.try_acquire(SyncType.BULK) as acquired:
            if not acquired:
                return _skipped()

            logger.info("Resuming import from %s to %s", start, end)
            covered = await self._store.dates_with_data(start, end)
            missing = [d for d in date_range(start, end) if d not in covered]
            if not missing:
                logger.info("No missing dates found, import is complete")
                return BulkImportResult(
                    success=True,
                    dates_missing=0,
                    status=SyncStatus.COMPLETED,
                    message="No missing dates found",
                )

            logger.info("Found %d missing dates", len(missing))
            result = await self._tracked(start, lambda: self._import_dates(missing))
            return result.model_copy(update={"dates_missing": len(missing)})

    async def check_progress(self, limit: int = 10) -> list[SyncJob]:
        """Most recent bulk jobs, newest first."""
        return await self._store.list_sync_jobs(sync_type=SyncType.BULK, limit=limit)

    # --- Job Lifecycle ---

    async def _tracked(
        self, job_date: date, work: Callable[[], Awaitable[BulkImportResult]]
    ) -> BulkImportResult:
        """Run `work` inside the bulk SyncJob for `job_date`."""
        try:
            await self._store.start_sync_job(job_date, SyncType.BULK)
            await self._store.update_sync_status(job_date, SyncType.BULK, SyncStatus.RUNNING)
            result = await work()
            await self._store.update_sync_status(
                job_date,
                SyncType.BULK,
                result.status,
                records_synced=result.records_synced,
                records_failed=result.commodities_failed or result.dates_failed,
                error_message=result.message,
            )
        except asyncio.CancelledError:
            logger.warning("Bulk import starting %s cancelled", job_date)
            await self._record_failure(job_date, MSG_CANCELLED)
            raise
        except Exception as e:
            logger.error("Bulk import starting %s failed: %s", job_date, e)
            await self._record_failure(job_date, str(e))
            raise

        logger.info(
            "Bulk import %s: %d records imported", result.status, result.records_synced
        )
        return result

    async def _record_failure(self, job_date: date, message: str) -> None:
        try:
            await self._store.update_sync_status(
                job_date, SyncType.BULK, SyncStatus.FAILED, error_message=message
            )
        except StorageError as e:
            logger.error("Could not mark bulk import %s as failed: %s", job_date, e)

    # --- Work Units ---

    async def _import_dates(self, days: list[date]) -> BulkImportResult:
        records_synced = 0
        dates_failed = 0
        logger.info("Importing %d days of data", len(days))

        for i, day in enumerate(days, 1):
            try:
                imported, ok = await self._import_one(day)
            except Exception as e:
                logger.error("Failed to import data for %s: %s", day, e)
                dates_failed += 1
            else:
                records_synced += imported
                if not ok:
                    dates_failed += 1
                logger.info(
                    "Progress %d/%d: %d records imported for %s",
                    i, len(days), imported, day,
                )
            if i < len(days):
                await self._pause()

        return BulkImportResult(
            success=True,
            records_synced=records_synced,
            dates_failed=dates_failed,
            dates_processed=len(days),
            status=SyncStatus.PARTIAL if dates_failed else SyncStatus.COMPLETED,
            message=f"{dates_failed} dates failed" if dates_failed else None,
        )

    async def _import_commodities(
        self, commodities: list[str], days: list[date]
    ) -> BulkImportResult:
        records_synced = 0
        failed: list[str] = []
        remaining = len(commodities) * len(days)

        for commodity in commodities:
            logger.info("Importing %s...", commodity)
            filters = RecordFilters(commodity=commodity)
            commodity_ok = True
            for day in days:
                try:
                    imported, ok = await self._import_one(day, filters)
                except Exception as e:
                    logger.error("Failed to import %s for %s: %s", commodity, day, e)
                    commodity_ok = False
                else:
                    records_synced += imported
                    commodity_ok = commodity_ok and ok
                    if imported:
                        logger.info("%s - %s: %d records", commodity, day, imported)
                remaining -= 1
                if remaining:
                    await self._pause()
            if not commodity_ok:
                failed.append(commodity)

        logger.info(
            "Commodity import completed: %d records, %d commodities failed",
            records_synced, len(failed),
        )
        return BulkImportResult(
            success=True,
            records_synced=records_synced,
            dates_processed=len(days),
            commodities_failed=len(failed),
            status=SyncStatus.PARTIAL if failed else SyncStatus.COMPLETED,
            message=f"Commodities failed: {', '.join(failed)}" if failed else None,
        )

    async def _import_one(
        self, day: date, filters: RecordFilters | None = None
    ) -> tuple[int, bool]:
        """Fetch and persist one date; returns (records persisted, fully ok)."""
        if filters is None:
            fetched = await self._client.fetch_for_sync(
                day, states=self._config.states, commodities=self._config.commodities
            )
        else:
            fetched = await self._client.fetch_all_records_for_date(day, filters)
        if not fetched.success:
            logger.warning("Fetch for %s incomplete: %s", day, fetched.error)
        if not fetched.records:
            if fetched.success:
                logger.warning("No data available for %s", day)
            return 0, fetched.success

        records = self._parser.parse(fetched.records, default_date=day)
        persisted = await self._reconciler.persist(records)
        return persisted.persisted, fetched.success and not persisted.has_failures

    # --- Helpers ---

    def _trailing_window(self, days: int) -> tuple[date, date]:
        if days < 1:
            raise ValueError("days must be >= 1")
        end = self._today() - timedelta(days=1)
        return end - timedelta(days=days - 1), end

    async def _pause(self) -> None:
        if self._config.bulk_date_delay_seconds:
            await asyncio.sleep(self._config.bulk_date_delay_seconds)


def _skipped() -> BulkImportResult:
    return BulkImportResult(success=False, skipped=True, message="Bulk import already running")
