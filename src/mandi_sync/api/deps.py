"""Dependency injection for FastAPI routes."""

from __future__ import annotations

from dataclasses import dataclass

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import Request
from fastapi.responses import JSONResponse

from mandi_sync.api.schemas import ErrorResponse
from mandi_sync.core.config import MandiSyncConfig
from mandi_sync.ingestion.client import MandiClient
from mandi_sync.ingestion.store import SqliteStore
from mandi_sync.sync.bulk import BulkImporter
from mandi_sync.sync.guard import RunGuard
from mandi_sync.sync.orchestrator import DailySyncService
from mandi_sync.sync.retention import RetentionService


@dataclass
class AppState:
    """Shared application state, attached to app.state during lifespan."""

    config: MandiSyncConfig
    store: SqliteStore
    client: MandiClient
    guard: RunGuard
    sync_service: DailySyncService
    bulk_importer: BulkImporter
    retention_service: RetentionService
    scheduler: AsyncIOScheduler | None = None


def get_app_state(request: Request) -> AppState:
    """Dependency: retrieve AppState from the request."""
    return request.app.state.app_state


def get_store(request: Request) -> SqliteStore:
    """Dependency: retrieve storage backend."""
    return request.app.state.app_state.store


def get_sync_service(request: Request) -> DailySyncService:
    return request.app.state.app_state.sync_service


def get_bulk_importer(request: Request) -> BulkImporter:
    return request.app.state.app_state.bulk_importer


def get_guard(request: Request) -> RunGuard:
    return request.app.state.app_state.guard


EXEMPT_PATHS = {"/api/health"}


async def api_key_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Middleware: validate X-API-Key header when authentication is enabled."""
    if request.url.path in EXEMPT_PATHS:
        return await call_next(request)

    config = request.app.state.app_state.config
    if config.api.api_key:
        api_key = request.headers.get("X-API-Key")
        if api_key != config.api.api_key:
            return JSONResponse(
                status_code=401,
                content=ErrorResponse(
                    error="Unauthorized", detail="Invalid or missing API key"
                ).model_dump(),
            )
    return await call_next(request)
