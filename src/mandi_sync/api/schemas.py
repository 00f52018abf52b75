"""API-specific request/response schemas (Pydantic v2)."""

from __future__ import annotations

import datetime
from datetime import date

from pydantic import BaseModel, Field, model_validator

from mandi_sync.core.models import SyncJob


# -- Error --


class ErrorResponse(BaseModel):
    """Standard error envelope."""

    error: str
    detail: str | None = None


# -- Health --


class HealthResponse(BaseModel):
    """Service liveness and configuration summary."""

    status: str
    version: str
    storage_backend: str
    database: bool
    scheduler_running: bool


class DatabaseHealthResponse(BaseModel):
    status: str
    database: bool


# -- Sync status --


class SyncJobListResponse(BaseModel):
    """Recent sync jobs, newest first."""

    total: int
    items: list[SyncJob]


# -- Triggers --


class SyncDateRequest(BaseModel):
    """Sync one specific date."""

    date: datetime.date


class BackfillRequest(BaseModel):
    """Fill gaps in the trailing window ending yesterday."""

    days: int = Field(default=7, ge=1, le=365)


class BulkImportRequest(BaseModel):
    """Import either the last `days` days or an explicit date range."""

    days: int | None = Field(default=None, ge=1, le=3650)
    start_date: date | None = None
    end_date: date | None = None
    resume: bool = False

    @model_validator(mode="after")
    def range_or_days(self) -> BulkImportRequest:
        has_range = self.start_date is not None and self.end_date is not None
        if self.days is None and not has_range:
            raise ValueError("provide either days or both start_date and end_date")
        if has_range and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        if self.resume and not has_range:
            raise ValueError("resume requires start_date and end_date")
        return self
