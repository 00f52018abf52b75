"""Per-sync-type run lock preventing overlapping runs."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mandi_sync.core.models import SyncType

logger = logging.getLogger(__name__)


class RunGuard:
    """Registry of one asyncio.Lock per sync type.

    A second trigger of a type that is already running does not wait
    for the lock; it is told the lock is taken and skips. Share one
    instance between every service and trigger in a process.
    """

    def __init__(self) -> None:
        self._locks: dict[SyncType, asyncio.Lock] = {}

    def _lock(self, sync_type: SyncType) -> asyncio.Lock:
        return self._locks.setdefault(sync_type, asyncio.Lock())

    def is_running(self, sync_type: SyncType) -> bool:
        return self._lock(sync_type).locked()

    @asynccontextmanager
    async def try_acquire(self, sync_type: SyncType) -> AsyncIterator[bool]:
        """Yield True while holding the lock, or False if it is already held."""
        lock = self._lock(sync_type)
        if lock.locked():
            logger.warning("A %s sync is already running, skipping", sync_type)
            yield False
            return
        await lock.acquire()
        try:
            yield True
        finally:
            lock.release()
