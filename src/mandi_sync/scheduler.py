"""
APScheduler wiring for recurring sync runs.

Schedule (times in ``sync.timezone``, Asia/Kolkata by default)
----------------------------------------------------------------
  daily_sync: ``sync.daily_time`` (00:30) every day: sync yesterday
  weekly_backfill: 01:00 every Sunday: fill gaps in the trailing window
  hourly_sync: on the hour inside the hourly window, when enabled
  retention: 02:00 every day, when retention is enabled

Every job runs with ``max_instances=1`` and ``coalesce=True`` so a slow
run is never overlapped by its own next firing; the services additionally
consult the shared RunGuard, which also covers manual triggers.

Lifecycle
----------
Call ``build_scheduler()`` to get a configured, not yet started
``AsyncIOScheduler``. Start it inside a running event loop and shut it
down on exit (the API lifespan and ``mandi-sync schedule`` both do this).
"""

from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from mandi_sync.core.config import MandiSyncConfig
from mandi_sync.sync.orchestrator import DailySyncService
from mandi_sync.sync.retention import RetentionService

logger = logging.getLogger(__name__)

_MISFIRE_GRACE_SECONDS = 3600


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


async def run_daily_sync(service: DailySyncService) -> None:
    logger.info("Scheduler: daily_sync starting")
    try:
        result = await service.sync_yesterday()
    except Exception as exc:
        logger.error("Scheduler: daily_sync failed: %s", exc)
        return
    logger.info(
        "Scheduler: daily_sync complete date=%s status=%s records=%d",
        result.sync_date, result.status, result.records_synced,
    )


async def run_weekly_backfill(service: DailySyncService, days: int) -> None:
    logger.info("Scheduler: weekly_backfill starting (%d days)", days)
    try:
        summary = await service.backfill_missing_dates(days)
    except Exception as exc:
        logger.error("Scheduler: weekly_backfill failed: %s", exc)
        return
    logger.info(
        "Scheduler: weekly_backfill complete missing=%d synced=%d records=%d",
        summary.missing_dates, summary.synced_dates, summary.total_records,
    )


async def run_hourly_sync(service: DailySyncService) -> None:
    if not service.is_within_sync_hours():
        logger.debug("Scheduler: hourly_sync outside active hours, skipping")
        return
    logger.info("Scheduler: hourly_sync starting")
    try:
        result = await service.hourly_sync()
    except Exception as exc:
        logger.error("Scheduler: hourly_sync failed: %s", exc)
        return
    logger.info(
        "Scheduler: hourly_sync complete records=%d written=%d failed_states=%d",
        result.total_records, result.records_written, len(result.states_failed),
    )


async def run_retention_cleanup(service: RetentionService) -> None:
    logger.info("Scheduler: retention starting")
    result = await service.cleanup_old_prices()
    if result.success:
        logger.info("Scheduler: retention complete deleted=%d", result.deleted_count)
    else:
        logger.warning("Scheduler: retention failed: %s", result.message)


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


def build_scheduler(
    config: MandiSyncConfig,
    sync_service: DailySyncService,
    retention_service: RetentionService | None = None,
) -> AsyncIOScheduler:
    """Build and register all periodic jobs.

    Returns a configured but *not yet started* ``AsyncIOScheduler``.
    """
    sync_cfg = config.sync
    scheduler = AsyncIOScheduler(
        timezone=sync_cfg.timezone,
        job_defaults={
            "max_instances": 1,
            "coalesce": True,
            "misfire_grace_time": _MISFIRE_GRACE_SECONDS,
        },
    )

    hour, minute = sync_cfg.daily_hour_minute
    scheduler.add_job(
        run_daily_sync,
        trigger="cron",
        hour=hour,
        minute=minute,
        args=[sync_service],
        id="daily_sync",
        name="Daily price sync (yesterday)",
        replace_existing=True,
    )

    if sync_cfg.weekly_backfill_enabled:
        scheduler.add_job(
            run_weekly_backfill,
            trigger="cron",
            day_of_week="sun",
            hour=1,
            minute=0,
            args=[sync_service, sync_cfg.weekly_backfill_days],
            id="weekly_backfill",
            name="Weekly missing-date backfill",
            replace_existing=True,
            misfire_grace_time=2 * _MISFIRE_GRACE_SECONDS,
        )

    if sync_cfg.hourly_enabled:
        scheduler.add_job(
            run_hourly_sync,
            trigger="cron",
            hour=f"{sync_cfg.hourly_start_hour}-{sync_cfg.hourly_end_hour - 1}",
            minute=0,
            args=[sync_service],
            id="hourly_sync",
            name="Hourly price refresh",
            replace_existing=True,
            misfire_grace_time=600,
        )

    if retention_service is not None and config.retention.enabled:
        scheduler.add_job(
            run_retention_cleanup,
            trigger="cron",
            hour=2,
            minute=0,
            args=[retention_service],
            id="retention",
            name="Old price cleanup",
            replace_existing=True,
        )

    logger.info(
        "Scheduler configured with jobs: %s",
        ", ".join(job.id for job in scheduler.get_jobs()),
    )
    return scheduler
