"""Custom exception hierarchy for mandi-sync."""

from typing import Any


class MandiSyncError(Exception):
    """Base exception for all mandi-sync errors.

    All exceptions carry an optional `context` dict for structured error
    metadata that can be logged or serialized without parsing the message.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.context = context or {}


class ConfigError(MandiSyncError):
    """Invalid or missing configuration.

    Raised by load_config() during startup. Should be treated as fatal.

    Context keys:
        field: str - the config field that failed validation
        value: Any - the invalid value (redacted for secrets)
    """


class IngestionError(MandiSyncError):
    """Failed to fetch data from the price API.

    Policy: retried inside MandiClient, then reported as a failed
    FetchResult. Never escapes the client's public fetch methods.

    Context keys:
        url: str - the endpoint that was being fetched
        status_code: int | None - HTTP status if a response was received
    """


class RateLimitError(IngestionError):
    """Price API rejected the request with HTTP 429.

    Policy: backoff and retry (handled by MandiClient internally).

    Context keys:
        retry_after: int | None - seconds to wait
    """


class ParsingError(IngestionError):
    """A response body could not be decoded into price rows.

    Policy: treated like a transport failure and retried.

    Context keys:
        reason: str - why decoding failed
    """


class StorageError(MandiSyncError):
    """Database operation failed.

    Policy: a failed upsert chunk is logged and skipped by the reconciler;
    anything else propagates and fails the sync job.

    Context keys:
        operation: str - "upsert", "query", "migrate", etc.
        table: str - the table involved
    """


class SyncError(MandiSyncError):
    """Sync orchestration failed.

    Policy: the job is marked failed and the error propagates to the
    trigger layer.

    Context keys:
        sync_date: str - ISO date being synced
        sync_type: str - "daily", "bulk" or "hourly"
    """


class SyncInProgressError(SyncError):
    """A run of the same sync type is already in progress.

    Raised only by trigger surfaces that must report the rejection
    (the API answers 409); services themselves return a skipped result.
    """
