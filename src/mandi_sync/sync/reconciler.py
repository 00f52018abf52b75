"""Write-path deduplication and chunked idempotent persistence."""

from __future__ import annotations

import logging

from mandi_sync.core.exceptions import StorageError
from mandi_sync.core.models import NaturalKey, PersistResult, PriceRecord
from mandi_sync.ingestion.store import StorageProtocol

logger = logging.getLogger(__name__)


class RecordReconciler:
    """Deduplicates price batches by natural key and upserts them in chunks.

    The provider regularly returns the same (date, market, commodity,
    variety) row more than once within one fetch. Collisions are resolved
    by keeping the record with the higher modal price; on a tie the
    record seen first wins.

    Deduplication runs over the whole batch before chunking, so two
    copies of a key never land in different chunks.
    """

    def __init__(self, store: StorageProtocol, chunk_size: int = 1000) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        self._store = store
        self._chunk_size = chunk_size

    @staticmethod
    def deduplicate(records: list[PriceRecord]) -> list[PriceRecord]:
        """Collapse records sharing a natural key, first-seen order preserved."""
        unique: dict[NaturalKey, PriceRecord] = {}
        for record in records:
            key = record.natural_key
            existing = unique.get(key)
            if existing is None or record.modal_price > existing.modal_price:
                unique[key] = record
        return list(unique.values())

    async def persist(self, records: list[PriceRecord]) -> PersistResult:
        """Deduplicate then upsert in chunks.

        A chunk that fails to write is logged and skipped; the remaining
        chunks are still attempted. Failures are reported in the result,
        never raised.
        """
        unique = self.deduplicate(records)
        duplicates = len(records) - len(unique)
        if duplicates:
            logger.debug(
                "Deduplicated %d -> %d records (removed %d duplicates)",
                len(records), len(unique), duplicates,
            )

        written = 0
        failed = 0
        failed_chunks = 0
        n_chunks = (len(unique) + self._chunk_size - 1) // self._chunk_size

        for i in range(0, len(unique), self._chunk_size):
            chunk = unique[i : i + self._chunk_size]
            chunk_no = i // self._chunk_size + 1
            try:
                written += await self._store.upsert_prices(chunk)
            except StorageError as e:
                failed += len(chunk)
                failed_chunks += 1
                logger.error(
                    "Failed to persist chunk %d/%d (%d records): %s",
                    chunk_no, n_chunks, len(chunk), e,
                )
                continue
            logger.debug("Persisted chunk %d/%d (%d records)", chunk_no, n_chunks, len(chunk))

        return PersistResult(
            count=len(unique),
            written=written,
            duplicates=duplicates,
            failed=failed,
            failed_chunks=failed_chunks,
        )
