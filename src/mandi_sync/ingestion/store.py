"""Storage backend: Protocol definition, SQLite implementation, factory."""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import ClassVar, Protocol, runtime_checkable

import aiosqlite

from mandi_sync.core.config import StorageConfig
from mandi_sync.core.exceptions import StorageError
from mandi_sync.core.models import (
    PriceRecord,
    SourceTag,
    StorageBackend as StorageBackendEnum,
    StorageStats,
    SyncJob,
    SyncStatus,
    SyncType,
)

logger = logging.getLogger(__name__)

# Rough on-disk footprint of one market_prices row, in KB
_ROW_SIZE_KB = 0.5

_PRICE_COLUMNS = (
    "arrival_date",
    "state",
    "district",
    "market",
    "commodity",
    "variety",
    "grade",
    "min_price",
    "max_price",
    "modal_price",
    "arrival_quantity",
    "source",
    "synced_at",
)

# Columns compared to decide whether a conflicting row actually changed.
# synced_at is not compared: identical data leaves the row untouched.
_COMPARED_COLUMNS = (
    "grade",
    "min_price",
    "max_price",
    "modal_price",
    "arrival_quantity",
    "source",
)

_UPSERT_PRICE_SQL = f"""INSERT INTO market_prices ({', '.join(_PRICE_COLUMNS)})
    VALUES ({', '.join('?' for _ in _PRICE_COLUMNS)})
    ON CONFLICT(arrival_date, state, district, market, commodity, variety)
    DO UPDATE SET
        {', '.join(f'{c} = excluded.{c}' for c in _COMPARED_COLUMNS)},
        synced_at = excluded.synced_at,
        updated_at = datetime('now')
    WHERE {' OR '.join(f'market_prices.{c} IS NOT excluded.{c}' for c in _COMPARED_COLUMNS)}"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@runtime_checkable
class StorageProtocol(Protocol):
    """Abstract storage interface for mandi-sync data."""

    async def upsert_prices(self, records: list[PriceRecord]) -> int: ...
    async def has_data_for_date(self, arrival_date: date) -> bool: ...
    async def dates_with_data(self, start: date, end: date) -> set[date]: ...
    async def count_prices(self, arrival_date: date | None = None) -> int: ...
    async def get_prices(
        self,
        arrival_date: date,
        commodity: str | None = None,
        state: str | None = None,
        limit: int | None = None,
    ) -> list[PriceRecord]: ...
    async def start_sync_job(
        self, sync_date: date, sync_type: SyncType
    ) -> SyncJob: ...
    async def update_sync_status(
        self,
        sync_date: date,
        sync_type: SyncType,
        status: SyncStatus,
        *,
        records_synced: int | None = None,
        records_failed: int | None = None,
        error_message: str | None = None,
    ) -> SyncJob: ...
    async def get_sync_job(
        self, sync_date: date, sync_type: SyncType
    ) -> SyncJob | None: ...
    async def list_sync_jobs(
        self,
        since: date | None = None,
        sync_type: SyncType | None = None,
        limit: int | None = None,
    ) -> list[SyncJob]: ...
    async def delete_prices_before(self, cutoff: date, batch_size: int) -> int: ...
    async def get_storage_stats(self) -> StorageStats: ...
    async def initialize(self) -> None: ...
    async def close(self) -> None: ...
    async def health_check(self) -> bool: ...


class SqliteStore:
    """SQLite implementation of the storage protocol.

    Uses aiosqlite for async access, WAL mode for concurrent reads,
    and a version-tracked migration system.
    """

    _MIGRATIONS: ClassVar[dict[int, tuple[str, list[str]]]] = {
        1: (
            "Initial schema",
            [
                """CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT DEFAULT (datetime('now'))
                )""",
                """CREATE TABLE IF NOT EXISTS market_prices (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    arrival_date TEXT NOT NULL,
                    state TEXT NOT NULL,
                    district TEXT NOT NULL,
                    market TEXT NOT NULL,
                    commodity TEXT NOT NULL,
                    variety TEXT NOT NULL DEFAULT 'Unknown',
                    grade TEXT,
                    min_price REAL,
                    max_price REAL,
                    modal_price REAL NOT NULL DEFAULT 0,
                    arrival_quantity REAL,
                    source TEXT NOT NULL DEFAULT 'govt_api',
                    synced_at TEXT NOT NULL,
                    created_at TEXT DEFAULT (datetime('now')),
                    updated_at TEXT DEFAULT (datetime('now')),
                    UNIQUE(arrival_date, state, district, market, commodity, variety)
                )""",
                """CREATE TABLE IF NOT EXISTS sync_status (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    sync_date TEXT NOT NULL,
                    sync_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    records_synced INTEGER NOT NULL DEFAULT 0,
                    records_failed INTEGER NOT NULL DEFAULT 0,
                    error_message TEXT,
                    started_at TEXT,
                    completed_at TEXT,
                    duration_seconds INTEGER,
                    updated_at TEXT DEFAULT (datetime('now')),
                    UNIQUE(sync_date, sync_type)
                )""",
                # Indexes
                "CREATE INDEX IF NOT EXISTS idx_prices_date ON market_prices(arrival_date)",
                "CREATE INDEX IF NOT EXISTS idx_prices_commodity ON market_prices(commodity)",
                "CREATE INDEX IF NOT EXISTS idx_prices_location ON market_prices(state, district, market)",
                "CREATE INDEX IF NOT EXISTS idx_sync_status_date ON sync_status(sync_date)",
            ],
        ),
    }

    def __init__(self, config: StorageConfig) -> None:
        self._path = config.sqlite_path
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open connection, enable WAL, run migrations."""
        try:
            self._db = await aiosqlite.connect(self._path)
            self._db.row_factory = aiosqlite.Row
            await self._db.execute("PRAGMA journal_mode=WAL")
            current = await self._get_schema_version()
            await self._apply_migrations(current)
            await self._db.commit()
        except Exception as e:
            raise StorageError(
                f"Failed to initialize SQLite store: {e}",
                context={"operation": "initialize", "path": self._path},
            ) from e

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def health_check(self) -> bool:
        if self._db is None:
            return False
        try:
            async with self._db.execute("SELECT 1") as cursor:
                row = await cursor.fetchone()
            return row is not None
        except Exception:
            return False

    # --- Schema Migration ---

    async def _get_schema_version(self) -> int:
        try:
            async with self._db.execute(
                "SELECT MAX(version) FROM schema_version"
            ) as cursor:
                row = await cursor.fetchone()
            return row[0] if row[0] is not None else 0
        except aiosqlite.OperationalError:
            return 0

    async def _apply_migrations(self, current_version: int) -> None:
        for version in sorted(self._MIGRATIONS.keys()):
            if version <= current_version:
                continue
            desc, statements = self._MIGRATIONS[version]
            logger.info("Applying migration %d: %s", version, desc)
            for sql in statements:
                await self._db.execute(sql)
            await self._db.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )

    # --- Price Operations ---

    async def upsert_prices(self, records: list[PriceRecord]) -> int:
        """Insert or update price rows keyed by their natural key.

        Runs as one transaction: either every record is applied or none is.

        Returns:
            Number of rows inserted or changed. Conflicting rows whose
            values are identical are left untouched and not counted.
        """
        if not records:
            return 0
        try:
            before = self._db.total_changes
            await self._db.executemany(
                _UPSERT_PRICE_SQL, [self._record_to_params(r) for r in records]
            )
            await self._db.commit()
            return self._db.total_changes - before
        except Exception as e:
            await self._safe_rollback()
            if isinstance(e, StorageError):
                raise
            raise StorageError(
                f"Failed to upsert prices: {e}",
                context={
                    "operation": "upsert",
                    "table": "market_prices",
                    "records": len(records),
                },
            ) from e

    async def has_data_for_date(self, arrival_date: date) -> bool:
        try:
            async with self._db.execute(
                "SELECT 1 FROM market_prices WHERE arrival_date = ? LIMIT 1",
                (arrival_date.isoformat(),),
            ) as cursor:
                row = await cursor.fetchone()
            return row is not None
        except Exception as e:
            raise StorageError(
                f"Failed to check data for date: {e}",
                context={
                    "operation": "query",
                    "table": "market_prices",
                    "arrival_date": arrival_date.isoformat(),
                },
            ) from e

    async def dates_with_data(self, start: date, end: date) -> set[date]:
        """Distinct arrival dates in [start, end] that have at least one row."""
        try:
            async with self._db.execute(
                """SELECT DISTINCT arrival_date FROM market_prices
                   WHERE arrival_date >= ? AND arrival_date <= ?""",
                (start.isoformat(), end.isoformat()),
            ) as cursor:
                rows = await cursor.fetchall()
            return {date.fromisoformat(row["arrival_date"]) for row in rows}
        except Exception as e:
            raise StorageError(
                f"Failed to read date coverage: {e}",
                context={"operation": "query", "table": "market_prices"},
            ) from e

    async def count_prices(self, arrival_date: date | None = None) -> int:
        try:
            query = "SELECT COUNT(*) FROM market_prices"
            params: list = []
            if arrival_date is not None:
                query += " WHERE arrival_date = ?"
                params.append(arrival_date.isoformat())
            async with self._db.execute(query, params) as cursor:
                row = await cursor.fetchone()
            return row[0]
        except Exception as e:
            raise StorageError(
                f"Failed to count prices: {e}",
                context={"operation": "query", "table": "market_prices"},
            ) from e

    async def get_prices(
        self,
        arrival_date: date,
        commodity: str | None = None,
        state: str | None = None,
        limit: int | None = None,
    ) -> list[PriceRecord]:
        try:
            query = "SELECT * FROM market_prices WHERE arrival_date = ?"
            params: list = [arrival_date.isoformat()]
            if commodity is not None:
                query += " AND commodity = ? COLLATE NOCASE"
                params.append(commodity)
            if state is not None:
                query += " AND state = ? COLLATE NOCASE"
                params.append(state)
            query += " ORDER BY state, district, market, commodity, variety"
            if limit is not None:
                query += " LIMIT ?"
                params.append(limit)
            async with self._db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
            return [self._row_to_price_record(r) for r in rows]
        except Exception as e:
            raise StorageError(
                f"Failed to get prices: {e}",
                context={"operation": "query", "table": "market_prices"},
            ) from e

    async def delete_prices_before(self, cutoff: date, batch_size: int) -> int:
        """Delete rows with arrival_date < cutoff, batch_size rows at a time."""
        deleted = 0
        try:
            while True:
                async with self._db.execute(
                    """DELETE FROM market_prices WHERE id IN (
                           SELECT id FROM market_prices
                           WHERE arrival_date < ? LIMIT ?
                       )""",
                    (cutoff.isoformat(), batch_size),
                ) as cursor:
                    batch = cursor.rowcount
                await self._db.commit()
                deleted += batch
                if batch > 0:
                    logger.debug("Deleted batch of %d price rows", batch)
                if batch < batch_size:
                    return deleted
        except Exception as e:
            await self._safe_rollback()
            raise StorageError(
                f"Failed to delete old prices: {e}",
                context={
                    "operation": "delete",
                    "table": "market_prices",
                    "cutoff": cutoff.isoformat(),
                    "deleted": deleted,
                },
            ) from e

    async def get_storage_stats(self) -> StorageStats:
        try:
            async with self._db.execute(
                """SELECT COUNT(*) AS total,
                          MIN(arrival_date) AS oldest,
                          MAX(arrival_date) AS newest,
                          COUNT(DISTINCT arrival_date) AS days
                   FROM market_prices"""
            ) as cursor:
                row = await cursor.fetchone()
            total = row["total"]
            return StorageStats(
                total_records=total,
                oldest_date=date.fromisoformat(row["oldest"]) if row["oldest"] else None,
                newest_date=date.fromisoformat(row["newest"]) if row["newest"] else None,
                days_of_data=row["days"],
                estimated_size_mb=round(total * _ROW_SIZE_KB / 1024, 2),
            )
        except Exception as e:
            raise StorageError(
                f"Failed to compute storage stats: {e}",
                context={"operation": "query", "table": "market_prices"},
            ) from e

    # --- Sync Job Operations ---

    async def start_sync_job(self, sync_date: date, sync_type: SyncType) -> SyncJob:
        """Create (or reset) the job row for (sync_date, sync_type) as pending."""
        started_at = _utcnow()
        try:
            await self._db.execute(
                """INSERT INTO sync_status
                   (sync_date, sync_type, status, records_synced, records_failed,
                    error_message, started_at, completed_at, duration_seconds)
                   VALUES (?, ?, ?, 0, 0, NULL, ?, NULL, NULL)
                   ON CONFLICT(sync_date, sync_type) DO UPDATE SET
                       status = excluded.status,
                       records_synced = 0,
                       records_failed = 0,
                       error_message = NULL,
                       started_at = excluded.started_at,
                       completed_at = NULL,
                       duration_seconds = NULL,
                       updated_at = datetime('now')""",
                (
                    sync_date.isoformat(),
                    str(sync_type),
                    str(SyncStatus.PENDING),
                    started_at.isoformat(),
                ),
            )
            await self._db.commit()
            return SyncJob(
                sync_date=sync_date,
                sync_type=sync_type,
                status=SyncStatus.PENDING,
                started_at=started_at,
            )
        except Exception as e:
            raise StorageError(
                f"Failed to start sync job: {e}",
                context={
                    "operation": "upsert",
                    "table": "sync_status",
                    "sync_date": sync_date.isoformat(),
                },
            ) from e

    async def update_sync_status(
        self,
        sync_date: date,
        sync_type: SyncType,
        status: SyncStatus,
        *,
        records_synced: int | None = None,
        records_failed: int | None = None,
        error_message: str | None = None,
    ) -> SyncJob:
        """Move a job to a new status, stamping completion on terminal states.

        Counters left as None keep their stored values.
        """
        try:
            current = await self.get_sync_job(sync_date, sync_type)
            if current is None:
                current = await self.start_sync_job(sync_date, sync_type)

            completed_at = None
            duration = None
            if status.is_terminal:
                completed_at = _utcnow()
                if current.started_at is not None:
                    duration = int((completed_at - current.started_at).total_seconds())

            job = current.model_copy(
                update={
                    "status": status,
                    "records_synced": (
                        current.records_synced if records_synced is None else records_synced
                    ),
                    "records_failed": (
                        current.records_failed if records_failed is None else records_failed
                    ),
                    "error_message": error_message,
                    "completed_at": completed_at,
                    "duration_seconds": duration,
                }
            )
            await self._db.execute(
                """UPDATE sync_status SET
                       status = ?, records_synced = ?, records_failed = ?,
                       error_message = ?, completed_at = ?, duration_seconds = ?,
                       updated_at = datetime('now')
                   WHERE sync_date = ? AND sync_type = ?""",
                (
                    str(job.status),
                    job.records_synced,
                    job.records_failed,
                    job.error_message,
                    job.completed_at.isoformat() if job.completed_at else None,
                    job.duration_seconds,
                    sync_date.isoformat(),
                    str(sync_type),
                ),
            )
            await self._db.commit()
            return job
        except Exception as e:
            if isinstance(e, StorageError):
                raise
            raise StorageError(
                f"Failed to update sync status: {e}",
                context={
                    "operation": "update",
                    "table": "sync_status",
                    "sync_date": sync_date.isoformat(),
                    "status": str(status),
                },
            ) from e

    async def get_sync_job(
        self, sync_date: date, sync_type: SyncType
    ) -> SyncJob | None:
        try:
            async with self._db.execute(
                "SELECT * FROM sync_status WHERE sync_date = ? AND sync_type = ?",
                (sync_date.isoformat(), str(sync_type)),
            ) as cursor:
                row = await cursor.fetchone()
            return self._row_to_sync_job(row) if row is not None else None
        except Exception as e:
            raise StorageError(
                f"Failed to get sync job: {e}",
                context={
                    "operation": "query",
                    "table": "sync_status",
                    "sync_date": sync_date.isoformat(),
                },
            ) from e

    async def list_sync_jobs(
        self,
        since: date | None = None,
        sync_type: SyncType | None = None,
        limit: int | None = None,
    ) -> list[SyncJob]:
        """Jobs newest first, optionally restricted to sync_date >= since."""
        try:
            query = "SELECT * FROM sync_status WHERE 1=1"
            params: list = []
            if since is not None:
                query += " AND sync_date >= ?"
                params.append(since.isoformat())
            if sync_type is not None:
                query += " AND sync_type = ?"
                params.append(str(sync_type))
            query += " ORDER BY sync_date DESC, started_at DESC"
            if limit is not None:
                query += " LIMIT ?"
                params.append(limit)
            async with self._db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
            return [self._row_to_sync_job(r) for r in rows]
        except Exception as e:
            raise StorageError(
                f"Failed to list sync jobs: {e}",
                context={"operation": "query", "table": "sync_status"},
            ) from e

    # --- Helpers ---

    async def _safe_rollback(self) -> None:
        if self._db is None:
            return
        try:
            await self._db.rollback()
        except Exception:
            logger.exception("Rollback failed")

    @staticmethod
    def _record_to_params(record: PriceRecord) -> tuple:
        return (
            record.arrival_date.isoformat(),
            record.state,
            record.district,
            record.market,
            record.commodity,
            record.variety,
            record.grade,
            record.min_price,
            record.max_price,
            record.modal_price,
            record.arrival_quantity,
            str(record.source),
            record.synced_at.isoformat(),
        )

    @staticmethod
    def _row_to_price_record(row: aiosqlite.Row) -> PriceRecord:
        return PriceRecord(
            arrival_date=date.fromisoformat(row["arrival_date"]),
            state=row["state"],
            district=row["district"],
            market=row["market"],
            commodity=row["commodity"],
            variety=row["variety"],
            grade=row["grade"],
            min_price=row["min_price"],
            max_price=row["max_price"],
            modal_price=row["modal_price"],
            arrival_quantity=row["arrival_quantity"],
            source=SourceTag(row["source"]),
            synced_at=datetime.fromisoformat(row["synced_at"]),
        )

    @staticmethod
    def _row_to_sync_job(row: aiosqlite.Row) -> SyncJob:
        return SyncJob(
            sync_date=date.fromisoformat(row["sync_date"]),
            sync_type=SyncType(row["sync_type"]),
            status=SyncStatus(row["status"]),
            records_synced=row["records_synced"],
            records_failed=row["records_failed"],
            error_message=row["error_message"],
            started_at=(
                datetime.fromisoformat(row["started_at"]) if row["started_at"] else None
            ),
            completed_at=(
                datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None
            ),
            duration_seconds=row["duration_seconds"],
        )


async def create_store(config: StorageConfig) -> SqliteStore:
    """Create and initialize a storage backend based on configuration."""
    if config.backend == StorageBackendEnum.SQLITE:
        store = SqliteStore(config)
        await store.initialize()
        return store
    raise StorageError(
        f"Unsupported storage backend: {config.backend}",
        context={"operation": "create_store", "backend": str(config.backend)},
    )
