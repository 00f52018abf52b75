"""FastAPI route definitions for the mandi-sync API."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

import mandi_sync
from mandi_sync.api.deps import (
    AppState,
    get_app_state,
    get_bulk_importer,
    get_guard,
    get_store,
    get_sync_service,
)
from mandi_sync.api.schemas import (
    BackfillRequest,
    BulkImportRequest,
    DatabaseHealthResponse,
    HealthResponse,
    SyncDateRequest,
    SyncJobListResponse,
)
from mandi_sync.core.exceptions import SyncInProgressError
from mandi_sync.core.models import (
    BackfillSummary,
    BulkImportResult,
    HourlySyncResult,
    StorageStats,
    SyncHealth,
    SyncResult,
    SyncType,
)
from mandi_sync.ingestion.store import SqliteStore
from mandi_sync.sync.bulk import BulkImporter
from mandi_sync.sync.guard import RunGuard
from mandi_sync.sync.orchestrator import DailySyncService

router = APIRouter()


def _ensure_idle(guard: RunGuard, sync_type: SyncType) -> None:
    if guard.is_running(sync_type):
        raise SyncInProgressError(
            f"A {sync_type} sync is already running",
            context={"sync_type": str(sync_type)},
        )


# -- Health --


@router.get("/health", response_model=HealthResponse)
async def health_check(state: AppState = Depends(get_app_state)):
    """Liveness plus a quick database check."""
    return HealthResponse(
        status="ok",
        version=mandi_sync.__version__,
        storage_backend=str(state.config.storage.backend.value),
        database=await state.store.health_check(),
        scheduler_running=bool(state.scheduler and state.scheduler.running),
    )


@router.get("/health/db", response_model=DatabaseHealthResponse)
async def database_health(store: SqliteStore = Depends(get_store)):
    ok = await store.health_check()
    body = DatabaseHealthResponse(status="ok" if ok else "error", database=ok)
    if not ok:
        return JSONResponse(status_code=503, content=body.model_dump())
    return body


# -- Status & Statistics --


@router.get("/sync/health", response_model=SyncHealth)
async def sync_health(
    window_days: int | None = Query(None, ge=1, le=90),
    service: DailySyncService = Depends(get_sync_service),
):
    """Rolling summary of recent sync jobs."""
    return await service.get_sync_health(window_days)


@router.get("/sync/status", response_model=SyncJobListResponse)
async def sync_status(
    limit: int = Query(10, ge=1, le=100),
    sync_type: SyncType | None = Query(None),
    store: SqliteStore = Depends(get_store),
):
    """Most recent sync jobs, newest first."""
    jobs = await store.list_sync_jobs(sync_type=sync_type, limit=limit)
    return SyncJobListResponse(total=len(jobs), items=jobs)


@router.get("/stats", response_model=StorageStats)
async def storage_stats(store: SqliteStore = Depends(get_store)):
    return await store.get_storage_stats()


# -- Triggers --


@router.post("/sync/yesterday", response_model=SyncResult)
async def trigger_sync_yesterday(
    service: DailySyncService = Depends(get_sync_service),
    guard: RunGuard = Depends(get_guard),
):
    """Sync yesterday's prices now."""
    _ensure_idle(guard, SyncType.DAILY)
    return await service.sync_yesterday()


@router.post("/sync/date", response_model=SyncResult)
async def trigger_sync_date(
    request: SyncDateRequest,
    service: DailySyncService = Depends(get_sync_service),
    guard: RunGuard = Depends(get_guard),
):
    _ensure_idle(guard, SyncType.DAILY)
    return await service.sync_date(request.date)


@router.post("/sync/backfill", response_model=BackfillSummary)
async def trigger_backfill(
    request: BackfillRequest,
    service: DailySyncService = Depends(get_sync_service),
    guard: RunGuard = Depends(get_guard),
):
    """Sync the dates missing from the trailing window."""
    _ensure_idle(guard, SyncType.DAILY)
    return await service.backfill_missing_dates(request.days)


@router.post("/sync/hourly", response_model=HourlySyncResult)
async def trigger_hourly(
    service: DailySyncService = Depends(get_sync_service),
    guard: RunGuard = Depends(get_guard),
):
    _ensure_idle(guard, SyncType.HOURLY)
    return await service.hourly_sync()


@router.post("/import/bulk", response_model=BulkImportResult)
async def trigger_bulk_import(
    request: BulkImportRequest,
    importer: BulkImporter = Depends(get_bulk_importer),
    guard: RunGuard = Depends(get_guard),
):
    """Import a historical range, or resume one that was interrupted."""
    _ensure_idle(guard, SyncType.BULK)
    if request.start_date is not None and request.end_date is not None:
        if request.resume:
            return await importer.resume_import(request.start_date, request.end_date)
        return await importer.import_date_range(request.start_date, request.end_date)
    return await importer.import_last_n_days(request.days)
