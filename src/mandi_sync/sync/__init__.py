"""Sync engine: reconciliation, orchestration, bulk import, retention."""

from mandi_sync.sync.bulk import BulkImporter
from mandi_sync.sync.guard import RunGuard
from mandi_sync.sync.orchestrator import DailySyncService
from mandi_sync.sync.reconciler import RecordReconciler
from mandi_sync.sync.retention import CleanupResult, RetentionService

__all__ = [
    "BulkImporter",
    "CleanupResult",
    "DailySyncService",
    "RecordReconciler",
    "RetentionService",
    "RunGuard",
]
