"""Pydantic data models: the system's type contracts."""

from __future__ import annotations

from datetime import date, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# --- Type Aliases ---

NaturalKey = tuple[date, str, str, str, str, str]
RawRow = dict[str, Any]

UNKNOWN_VARIETY = "Unknown"

# --- Enumerations ---


class SourceTag(StrEnum):
    """Provenance of a price record."""

    GOVERNMENT_API = "govt_api"
    MANUAL = "manual_entry"
    OCR = "ocr_upload"
    AI_UPLOAD = "ai_upload"


class SyncType(StrEnum):
    """Kinds of sync runs tracked in the sync_status table."""

    DAILY = "daily"
    BULK = "bulk"
    HOURLY = "hourly"


class SyncStatus(StrEnum):
    """Lifecycle states of a sync job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncStatus.COMPLETED, SyncStatus.FAILED, SyncStatus.PARTIAL)


class StorageBackend(StrEnum):
    """Supported storage backends."""

    SQLITE = "sqlite"


# --- Price Models ---


class PriceRecord(BaseModel):
    """One observation of a commodity's price at a market on a date."""

    model_config = ConfigDict(frozen=True)

    arrival_date: date
    state: str
    district: str
    market: str
    commodity: str
    variety: str = UNKNOWN_VARIETY
    grade: str | None = None
    min_price: float | None = None
    max_price: float | None = None
    modal_price: float = 0.0
    arrival_quantity: float | None = None
    source: SourceTag = SourceTag.GOVERNMENT_API
    synced_at: datetime

    @field_validator("state", "district", "market", "commodity")
    @classmethod
    def required_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("variety", mode="before")
    @classmethod
    def variety_default(cls, v: str | None) -> str:
        if v is None or not str(v).strip():
            return UNKNOWN_VARIETY
        return str(v).strip()

    @property
    def natural_key(self) -> NaturalKey:
        """The tuple that uniquely identifies a stored price observation."""
        return (
            self.arrival_date,
            self.state,
            self.district,
            self.market,
            self.commodity,
            self.variety,
        )


class RecordFilters(BaseModel):
    """Optional narrowing filters sent to the price API."""

    model_config = ConfigDict(frozen=True)

    commodity: str | None = None
    state: str | None = None
    district: str | None = None
    market: str | None = None

    def is_empty(self) -> bool:
        return not any((self.commodity, self.state, self.district, self.market))


# --- Fetch / Persist Results ---


class FetchResult(BaseModel):
    """Outcome of a (possibly paginated) fetch from the price API.

    Expected transient failures are reported here with success=False
    instead of being raised.
    """

    success: bool
    records: list[RawRow] = Field(default_factory=list)
    total: int = 0
    pages: int = 0
    malformed: int = 0
    error: str | None = None

    @property
    def count(self) -> int:
        return len(self.records)


class PersistResult(BaseModel):
    """Outcome of a reconciler persist call."""

    model_config = ConfigDict(frozen=True)

    count: int = 0
    written: int = 0
    duplicates: int = 0
    failed: int = 0
    failed_chunks: int = 0

    @property
    def persisted(self) -> int:
        """Unique records that landed in a successful chunk."""
        return self.count - self.failed

    @property
    def has_failures(self) -> bool:
        return self.failed_chunks > 0


# --- Sync Models ---


class SyncJob(BaseModel):
    """Bookkeeping row for one (date, sync type) run."""

    model_config = ConfigDict(frozen=True)

    sync_date: date
    sync_type: SyncType = SyncType.DAILY
    status: SyncStatus = SyncStatus.PENDING
    records_synced: int = 0
    records_failed: int = 0
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_seconds: int | None = None


class SyncResult(BaseModel):
    """Outcome of syncing a single date."""

    model_config = ConfigDict(frozen=True)

    sync_date: date
    success: bool
    records_synced: int = 0
    records_failed: int = 0
    skipped: bool = False
    no_data: bool = False
    status: SyncStatus | None = None
    message: str | None = None
    duration_seconds: float | None = None


class BackfillSummary(BaseModel):
    """Aggregate of a missing-date sync over a window."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    missing_dates: int = 0
    synced_dates: int = 0
    total_records: int = 0
    results: list[SyncResult] = Field(default_factory=list)


class BulkImportResult(BaseModel):
    """Aggregate of a historical range import."""

    model_config = ConfigDict(frozen=True)

    success: bool
    records_synced: int = 0
    dates_failed: int = 0
    dates_processed: int = 0
    dates_missing: int | None = None
    commodities_failed: int | None = None
    status: SyncStatus | None = None
    skipped: bool = False
    message: str | None = None


class HourlySyncResult(BaseModel):
    """Aggregate of one hourly refresh across states."""

    model_config = ConfigDict(frozen=True)

    success: bool
    sync_date: date
    total_records: int = 0
    records_written: int = 0
    states_failed: dict[str, str] = Field(default_factory=dict)
    skipped: bool = False
    duration_seconds: float | None = None


class SyncHealth(BaseModel):
    """Rolling health summary over recent sync jobs."""

    model_config = ConfigDict(frozen=True)

    healthy: bool
    window_days: int
    total_syncs: int = 0
    completed_syncs: int = 0
    failed_syncs: int = 0
    partial_syncs: int = 0
    running_syncs: int = 0
    pending_syncs: int = 0
    total_records: int = 0
    success_rate: float = 0.0
    last_sync: SyncJob | None = None

    @model_validator(mode="after")
    def rate_in_range(self) -> SyncHealth:
        if not 0.0 <= self.success_rate <= 100.0:
            raise ValueError(f"success_rate must be in [0, 100], got {self.success_rate}")
        return self


class StorageStats(BaseModel):
    """Coverage and size summary of the price table."""

    model_config = ConfigDict(frozen=True)

    total_records: int = 0
    oldest_date: date | None = None
    newest_date: date | None = None
    days_of_data: int = 0
    estimated_size_mb: float = 0.0
