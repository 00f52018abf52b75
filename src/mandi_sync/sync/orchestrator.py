"""Daily sync orchestration: per-date sync, backfill, hourly refresh, health."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from mandi_sync.core.config import SyncConfig
from mandi_sync.core.exceptions import StorageError
from mandi_sync.core.models import (
    BackfillSummary,
    FetchResult,
    HourlySyncResult,
    PersistResult,
    RecordFilters,
    SyncHealth,
    SyncResult,
    SyncStatus,
    SyncType,
)
from mandi_sync.ingestion.client import MandiClient
from mandi_sync.ingestion.parser import RecordParser
from mandi_sync.ingestion.store import StorageProtocol
from mandi_sync.sync.guard import RunGuard
from mandi_sync.sync.reconciler import RecordReconciler

logger = logging.getLogger(__name__)

MSG_ALREADY_EXISTS = "Data already exists"
MSG_NO_DATA = "No data available from API"
MSG_ALREADY_RUNNING = "Sync already running"
MSG_CANCELLED = "Sync cancelled"


def local_today(timezone: str) -> date:
    """Current calendar date in the given IANA timezone."""
    return datetime.now(ZoneInfo(timezone)).date()


def date_range(start: date, end: date) -> list[date]:
    """Every date from start to end inclusive; empty if end < start."""
    return [start + timedelta(days=i) for i in range((end - start).days + 1)]


def resolve_status(fetched: FetchResult, persisted: PersistResult) -> SyncStatus:
    """Terminal status of a date whose fetch returned at least one row."""
    if persisted.has_failures and persisted.persisted == 0:
        return SyncStatus.FAILED
    if persisted.has_failures or not fetched.success:
        return SyncStatus.PARTIAL
    return SyncStatus.COMPLETED


def describe_failures(fetched: FetchResult, persisted: PersistResult) -> str | None:
    parts: list[str] = []
    if not fetched.success:
        parts.append(f"Fetch incomplete: {fetched.error}")
    if persisted.has_failures:
        parts.append(
            f"{persisted.failed} records in {persisted.failed_chunks} chunks failed to persist"
        )
    return "; ".join(parts) or None


class DailySyncService:
    """Drives client, parser and reconciler for one date at a time.

    Owns the SyncJob lifecycle for the `daily` and `hourly` sync types:
    every run creates a pending job, marks it running, and finishes it as
    completed, partial or failed. Dates that already hold data are not
    re-fetched.

    All entry points take the daily (or hourly) run lock; a trigger that
    arrives while a run is in progress returns a skipped result.
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

    @property
    def guard(self) -> RunGuard:
        return self._guard

    # --- Single Date ---

    async def sync_date(self, day: date) -> SyncResult:
        """Sync one date unless it already has data.

        Raises:
            MandiSyncError: Any unexpected failure, after the job has been
                marked failed.
        """
        async with self._guard.try_acquire(SyncType.DAILY) as acquired:
            if not acquired:
                return self._skipped(day)
            return await self._sync_one(day)

    async def sync_yesterday(self) -> SyncResult:
        return await self.sync_date(self._today() - timedelta(days=1))

    async def sync_today(self) -> SyncResult:
        day = self._today()
        logger.info("Syncing today's data (%s)", day)
        return await self.sync_date(day)

    async def _sync_one(self, day: date) -> SyncResult:
        started = time.monotonic()
        logger.info("Starting daily sync for %s", day)
        try:
            await self._store.start_sync_job(day, SyncType.DAILY)
            await self._store.update_sync_status(day, SyncType.DAILY, SyncStatus.RUNNING)

            if await self._store.has_data_for_date(day):
                logger.info("Data already exists for %s, skipping sync", day)
                await self._store.update_sync_status(
                    day,
                    SyncType.DAILY,
                    SyncStatus.COMPLETED,
                    records_synced=0,
                    error_message=MSG_ALREADY_EXISTS,
                )
                return SyncResult(
                    sync_date=day,
                    success=True,
                    skipped=True,
                    status=SyncStatus.COMPLETED,
                    message=MSG_ALREADY_EXISTS,
                    duration_seconds=_elapsed(started),
                )

            fetched = await self._client.fetch_for_sync(
                day, states=self._config.states, commodities=self._config.commodities
            )

            if not fetched.records:
                return await self._finish_empty(day, fetched, started)

            records = self._parser.parse(fetched.records, default_date=day)
            persisted = await self._reconciler.persist(records)
            status = resolve_status(fetched, persisted)

            await self._store.update_sync_status(
                day,
                SyncType.DAILY,
                status,
                records_synced=persisted.persisted,
                records_failed=persisted.failed,
                error_message=describe_failures(fetched, persisted),
            )
            duration = _elapsed(started)
            logger.info(
                "Daily sync for %s %s: %d records (%d written, %d failed) in %.1fs",
                day, status, persisted.persisted, persisted.written,
                persisted.failed, duration,
            )
            return SyncResult(
                sync_date=day,
                success=status != SyncStatus.FAILED,
                records_synced=persisted.persisted,
                records_failed=persisted.failed,
                status=status,
                message=describe_failures(fetched, persisted),
                duration_seconds=duration,
            )

        except asyncio.CancelledError:
            logger.warning("Daily sync for %s cancelled", day)
            await self._record_failure(day, SyncType.DAILY, MSG_CANCELLED)
            raise
        except Exception as e:
            logger.error("Daily sync failed for %s: %s", day, e)
            await self._record_failure(day, SyncType.DAILY, str(e))
            raise

    async def _finish_empty(
        self, day: date, fetched: FetchResult, started: float
    ) -> SyncResult:
        if not fetched.success:
            logger.error("Fetch failed for %s: %s", day, fetched.error)
            await self._store.update_sync_status(
                day,
                SyncType.DAILY,
                SyncStatus.FAILED,
                records_synced=0,
                error_message=fetched.error,
            )
            return SyncResult(
                sync_date=day,
                success=False,
                status=SyncStatus.FAILED,
                message=fetched.error,
                duration_seconds=_elapsed(started),
            )

        logger.warning("No data available from API for %s", day)
        await self._store.update_sync_status(
            day,
            SyncType.DAILY,
            SyncStatus.COMPLETED,
            records_synced=0,
            error_message=MSG_NO_DATA,
        )
        return SyncResult(
            sync_date=day,
            success=True,
            no_data=True,
            status=SyncStatus.COMPLETED,
            message=MSG_NO_DATA,
            duration_seconds=_elapsed(started),
        )

    # --- Multiple Dates / Backfill ---

    async def sync_multiple_dates(self, days: list[date]) -> list[SyncResult]:
        """Sync dates one after another with a pause between them."""
        async with self._guard.try_acquire(SyncType.DAILY) as acquired:
            if not acquired:
                return [self._skipped(d) for d in days]
            return await self._sync_sequence(days)

    async def sync_missing_dates(self, start: date, end: date) -> BackfillSummary:
        """Sync only the dates in [start, end] that have no stored rows."""
        async with self._guard.try_acquire(SyncType.DAILY) as acquired:
            if not acquired:
                return BackfillSummary(success=False)

            logger.info("Checking for missing dates between %s and %s", start, end)
            covered = await self._store.dates_with_data(start, end)
            missing = [d for d in date_range(start, end) if d not in covered]

            if not missing:
                logger.info("No missing dates found")
                return BackfillSummary(success=True)

            logger.info("Found %d missing dates, syncing", len(missing))
            results = await self._sync_sequence(missing)

        return BackfillSummary(
            success=True,
            missing_dates=len(missing),
            synced_dates=sum(1 for r in results if r.success),
            total_records=sum(r.records_synced for r in results),
            results=results,
        )

    async def backfill_missing_dates(self, days_to_check: int = 7) -> BackfillSummary:
        """Fill gaps in the trailing window of `days_to_check` days ending yesterday."""
        if days_to_check < 1:
            raise ValueError("days_to_check must be >= 1")
        end = self._today() - timedelta(days=1)
        start = end - timedelta(days=days_to_check - 1)
        logger.info("Backfilling missing dates for last %d days", days_to_check)
        return await self.sync_missing_dates(start, end)

    async def _sync_sequence(self, days: list[date]) -> list[SyncResult]:
        logger.info("Syncing %d dates", len(days))
        results: list[SyncResult] = []
        for i, day in enumerate(days, 1):
            try:
                result = await self._sync_one(day)
            except Exception as e:
                logger.error("Failed to sync %s: %s", day, e)
                result = SyncResult(
                    sync_date=day,
                    success=False,
                    status=SyncStatus.FAILED,
                    message=str(e),
                )
            results.append(result)
            logger.info("Progress: %d/%d dates", i, len(days))
            if i < len(days) and self._config.inter_date_delay_seconds:
                await asyncio.sleep(self._config.inter_date_delay_seconds)
        return results

    # --- Hourly Refresh ---

    def is_within_sync_hours(self, now: datetime | None = None) -> bool:
        """Whether `now` falls inside the hourly window in the configured timezone."""
        tz = ZoneInfo(self._config.timezone)
        now = datetime.now(tz) if now is None else now.astimezone(tz)
        return self._config.hourly_start_hour <= now.hour < self._config.hourly_end_hour

    async def hourly_sync(self) -> HourlySyncResult:
        """Refresh today's prices for the hourly states list.

        Unlike the daily sync this always fetches: prices for the current
        day keep arriving through the afternoon and re-runs overwrite them.
        A state whose fetch fails is recorded and the loop moves on.
        """
        day = self._today()
        async with self._guard.try_acquire(SyncType.HOURLY) as acquired:
            if not acquired:
                return HourlySyncResult(success=False, sync_date=day, skipped=True)

            started = time.monotonic()
            logger.info("Starting hourly sync for %s", day)
            try:
                await self._store.start_sync_job(day, SyncType.HOURLY)
                await self._store.update_sync_status(
                    day, SyncType.HOURLY, SyncStatus.RUNNING
                )

                total = 0
                persisted_total = 0
                written = 0
                failed_records = 0
                states_failed: dict[str, str] = {}
                for state in self._config.hourly_states:
                    fetched = await self._client.fetch_all_records_for_date(
                        day, RecordFilters(state=state)
                    )
                    if not fetched.success:
                        states_failed[state] = fetched.error or "unknown error"
                        logger.warning("Hourly fetch failed for %s: %s", state, fetched.error)
                    if not fetched.records:
                        continue
                    records = self._parser.parse(fetched.records, default_date=day)
                    persisted = await self._reconciler.persist(records)
                    total += fetched.count
                    persisted_total += persisted.persisted
                    written += persisted.written
                    failed_records += persisted.failed
                    if persisted.has_failures:
                        states_failed.setdefault(
                            state, f"{persisted.failed} records failed to persist"
                        )
                    logger.info(
                        "%s: %d records, %d written", state, fetched.count, persisted.written
                    )

                n_states = len(self._config.hourly_states)
                if not states_failed:
                    status = SyncStatus.COMPLETED
                elif len(states_failed) == n_states and persisted_total == 0:
                    status = SyncStatus.FAILED
                else:
                    status = SyncStatus.PARTIAL

                error_message = None
                if states_failed:
                    error_message = "; ".join(f"{s}: {err}" for s, err in states_failed.items())
                await self._store.update_sync_status(
                    day,
                    SyncType.HOURLY,
                    status,
                    records_synced=persisted_total,
                    records_failed=failed_records,
                    error_message=error_message,
                )
            except asyncio.CancelledError:
                logger.warning("Hourly sync for %s cancelled", day)
                await self._record_failure(day, SyncType.HOURLY, MSG_CANCELLED)
                raise
            except Exception as e:
                logger.error("Hourly sync failed: %s", e)
                await self._record_failure(day, SyncType.HOURLY, str(e))
                raise

        duration = _elapsed(started)
        logger.info(
            "Hourly sync %s: %d fetched, %d written, %d states with errors in %.1fs",
            status, total, written, len(states_failed), duration,
        )
        return HourlySyncResult(
            success=status != SyncStatus.FAILED,
            sync_date=day,
            total_records=total,
            records_written=written,
            states_failed=states_failed,
            duration_seconds=duration,
        )

    # --- Health ---

    async def get_sync_health(self, window_days: int | None = None) -> SyncHealth:
        """Summarize SyncJob rows whose sync_date falls in the trailing window."""
        window = window_days or self._config.health_window_days
        since = self._today() - timedelta(days=window)
        jobs = await self._store.list_sync_jobs(since=since)

        counts = {status: 0 for status in SyncStatus}
        for job in jobs:
            counts[job.status] += 1
        total = len(jobs)
        completed = counts[SyncStatus.COMPLETED]

        return SyncHealth(
            healthy=counts[SyncStatus.FAILED] == 0,
            window_days=window,
            total_syncs=total,
            completed_syncs=completed,
            failed_syncs=counts[SyncStatus.FAILED],
            partial_syncs=counts[SyncStatus.PARTIAL],
            running_syncs=counts[SyncStatus.RUNNING],
            pending_syncs=counts[SyncStatus.PENDING],
            total_records=sum(job.records_synced for job in jobs),
            success_rate=round(completed / total * 100, 1) if total else 0.0,
            last_sync=jobs[0] if jobs else None,
        )

    # --- Helpers ---

    async def _record_failure(self, day: date, sync_type: SyncType, message: str) -> None:
        try:
            await self._store.update_sync_status(
                day, sync_type, SyncStatus.FAILED, error_message=message
            )
        except StorageError as e:
            logger.error("Could not mark %s sync for %s as failed: %s", sync_type, day, e)

    @staticmethod
    def _skipped(day: date) -> SyncResult:
        return SyncResult(
            sync_date=day, success=False, skipped=True, message=MSG_ALREADY_RUNNING
        )


def _elapsed(started: float) -> float:
    return round(time.monotonic() - started, 3)
