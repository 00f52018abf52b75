"""mandi_sync.core: Foundation types, config, and exceptions."""

from mandi_sync.core.config import (
    APIConfig,
    LoggingConfig,
    MandiSyncConfig,
    RetentionConfig,
    SourceConfig,
    StorageConfig,
    SyncConfig,
    load_config,
)
from mandi_sync.core.exceptions import (
    ConfigError,
    IngestionError,
    MandiSyncError,
    ParsingError,
    RateLimitError,
    StorageError,
    SyncError,
    SyncInProgressError,
)
from mandi_sync.core.models import (
    BackfillSummary,
    BulkImportResult,
    FetchResult,
    HourlySyncResult,
    NaturalKey,
    PersistResult,
    PriceRecord,
    RawRow,
    RecordFilters,
    SourceTag,
    StorageBackend,
    StorageStats,
    SyncHealth,
    SyncJob,
    SyncResult,
    SyncStatus,
    SyncType,
)

__all__ = [
    # Type aliases
    "NaturalKey",
    "RawRow",
    # Enums
    "SourceTag",
    "SyncType",
    "SyncStatus",
    "StorageBackend",
    # Price models
    "PriceRecord",
    "RecordFilters",
    # Result models
    "FetchResult",
    "PersistResult",
    "SyncJob",
    "SyncResult",
    "BackfillSummary",
    "BulkImportResult",
    "HourlySyncResult",
    "SyncHealth",
    "StorageStats",
    # Config
    "MandiSyncConfig",
    "SourceConfig",
    "SyncConfig",
    "StorageConfig",
    "RetentionConfig",
    "APIConfig",
    "LoggingConfig",
    "load_config",
    # Exceptions
    "MandiSyncError",
    "ConfigError",
    "IngestionError",
    "RateLimitError",
    "ParsingError",
    "StorageError",
    "SyncError",
    "SyncInProgressError",
]
