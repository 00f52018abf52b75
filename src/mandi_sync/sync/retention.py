"""Removal of price rows older than the retention window."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import date, timedelta

from pydantic import BaseModel, ConfigDict

from mandi_sync.core.config import RetentionConfig
from mandi_sync.core.exceptions import StorageError
from mandi_sync.core.models import StorageStats
from mandi_sync.ingestion.store import StorageProtocol
from mandi_sync.sync.orchestrator import local_today

logger = logging.getLogger(__name__)


class CleanupResult(BaseModel):
    """Outcome of one retention cleanup run."""

    model_config = ConfigDict(frozen=True)

    success: bool
    deleted_count: int = 0
    cutoff_date: date | None = None
    message: str | None = None


class RetentionService:
    """Deletes old market prices in batches to keep the database small.

    The cutoff is counted back from today in `timezone`, the same calendar
    the sync jobs use.
    """

    def __init__(
        self,
        store: StorageProtocol,
        config: RetentionConfig,
        *,
        timezone: str = "Asia/Kolkata",
        today: Callable[[], date] | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._today = today or (lambda: local_today(timezone))

    async def cleanup_old_prices(self, retention_days: int | None = None) -> CleanupResult:
        """Delete rows with arrival_date before today - retention_days.

        Storage failures are logged and reported with success=False.
        """
        days = retention_days or self._config.days
        cutoff = self._today() - timedelta(days=days)
        logger.info("Cleaning up prices older than %d days (before %s)", days, cutoff)
        try:
            deleted = await self._store.delete_prices_before(
                cutoff, self._config.batch_size
            )
        except StorageError as e:
            logger.error("Error cleaning up old prices: %s", e)
            return CleanupResult(success=False, cutoff_date=cutoff, message=str(e))

        if deleted == 0:
            logger.info("No old records to delete")
            message = "No records to delete"
        else:
            logger.info("Deleted %d old price records", deleted)
            message = f"Deleted {deleted} records older than {cutoff.isoformat()}"
        return CleanupResult(
            success=True, deleted_count=deleted, cutoff_date=cutoff, message=message
        )

    async def get_storage_stats(self) -> StorageStats:
        return await self._store.get_storage_stats()
