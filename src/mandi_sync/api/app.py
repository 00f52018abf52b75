"""FastAPI application factory."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mandi_sync.api.deps import AppState, api_key_middleware
from mandi_sync.api.routes import router
from mandi_sync.api.schemas import ErrorResponse
from mandi_sync.core.config import MandiSyncConfig, load_config
from mandi_sync.core.exceptions import (
    ConfigError,
    MandiSyncError,
    StorageError,
    SyncInProgressError,
)
from mandi_sync.ingestion.client import MandiClient
from mandi_sync.ingestion.store import create_store
from mandi_sync.scheduler import build_scheduler
from mandi_sync.sync.bulk import BulkImporter
from mandi_sync.sync.guard import RunGuard
from mandi_sync.sync.orchestrator import DailySyncService
from mandi_sync.sync.reconciler import RecordReconciler
from mandi_sync.sync.retention import RetentionService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup/shutdown lifecycle."""
    config = app.state._pending_config or load_config()
    store = await create_store(config.storage)
    client = MandiClient(config.source)
    guard = RunGuard()
    reconciler = RecordReconciler(store, chunk_size=config.sync.chunk_size)
    sync_service = DailySyncService(client, store, reconciler, config.sync, guard=guard)
    retention_service = RetentionService(
        store, config.retention, timezone=config.sync.timezone
    )

    scheduler = None
    if app.state._enable_scheduler:
        scheduler = build_scheduler(config, sync_service, retention_service)
        scheduler.start()
        logger.info("Scheduler started")

    app.state.app_state = AppState(
        config=config,
        store=store,
        client=client,
        guard=guard,
        sync_service=sync_service,
        bulk_importer=BulkImporter(client, store, reconciler, config.sync, guard=guard),
        retention_service=retention_service,
        scheduler=scheduler,
    )

    yield

    if scheduler is not None:
        scheduler.shutdown(wait=False)
    await client.close()
    await store.close()


def create_app(
    config: MandiSyncConfig | None = None,
    *,
    enable_scheduler: bool = False,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    import mandi_sync

    app = FastAPI(
        title="mandi-sync API",
        description="Agricultural market price synchronization engine",
        version=mandi_sync.__version__,
        lifespan=lifespan,
    )

    # Stash config so lifespan can retrieve it
    app.state._pending_config = config
    app.state._enable_scheduler = enable_scheduler

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Optional API key middleware
    if config and config.api.api_key:
        app.middleware("http")(api_key_middleware)

    app.include_router(router, prefix="/api")

    # Exception handlers
    @app.exception_handler(MandiSyncError)
    async def mandi_sync_exception_handler(request: Request, exc: MandiSyncError):
        status_map = {
            ConfigError: 400,
            SyncInProgressError: 409,
            StorageError: 500,
        }
        status = status_map.get(type(exc), 500)
        return JSONResponse(
            status_code=status,
            content=ErrorResponse(
                error=type(exc).__name__, detail=str(exc)
            ).model_dump(),
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(error="ValueError", detail=str(exc)).model_dump(),
        )

    return app
