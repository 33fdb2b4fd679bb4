"""
Tezos Delegation Indexer - Application

Creates the FastAPI app and runs the service: checkpoint store, ingestion
worker and HTTP server under one lifecycle coordinator.

Run with: xtz-indexer   (or: python -m indexer)

Startup order:
    1. Settings and logging
    2. Checkpoint store (failure here is fatal, exit code 1)
    3. TzKT client, ingestion worker, FastAPI app
    4. Coordinator: worker task + HTTP server until SIGINT/SIGTERM
"""

import asyncio
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .config import Settings, get_settings
from .core.errors import ShutdownTimeoutError, StorageInitError, setup_error_handlers
from .core.logging import configure_logging, get_logger
from .core.middleware import RequestLoggingMiddleware
from .db import CheckpointStore
from .lifecycle import LifecycleCoordinator
from .routers import delegations_router, health_router
from .tzkt_client import TzktClient
from .workers.backoff import BackoffState
from .workers.ingest_worker import IngestionWorker

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    The store and the worker are owned by the coordinator; the app only
    reports its own startup and shutdown.
    """
    logger.info(f"Starting Tezos Delegation Indexer API v{__version__}")
    yield
    logger.info("HTTP server shut down")


def create_app(
    store: CheckpointStore,
    worker: IngestionWorker | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """
    Application factory.

    Args:
        store: Initialized checkpoint store backing the query endpoint
        worker: Ingestion worker whose state /health reports, if any
        settings: Settings to use instead of the cached ones

    Returns:
        Configured FastAPI application
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Tezos Delegation Indexer",
        description="Indexes Tezos delegation operations from TzKT and serves them by year.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.store = store
    app.state.worker = worker

    # First added = outermost
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_methods=["GET"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    setup_error_handlers(app)

    app.include_router(delegations_router)
    app.include_router(health_router)

    logger.debug(f"FastAPI app created: {app.title}")
    return app


def build_store(settings: Settings) -> CheckpointStore:
    """Create and initialize the checkpoint store. Raises StorageInitError."""
    store = CheckpointStore(
        settings.DATABASE_URL,
        default_watermark=settings.INDEXER_START_TIMESTAMP,
    )
    store.initialize()
    return store


async def run_service(settings: Settings, store: CheckpointStore) -> int:
    """Run the worker and the HTTP server until shutdown completes. Returns the exit code."""
    client = TzktClient(
        settings.TZKT_DELEGATIONS_URL,
        page_size=settings.TZKT_PAGE_SIZE,
        timeout=settings.TZKT_TIMEOUT_SECONDS,
    )
    worker = IngestionWorker(
        store,
        client,
        poll_interval=settings.INDEXER_POLL_INTERVAL_SECONDS,
        backoff=BackoffState(
            base_delay=settings.INDEXER_BACKOFF_SECONDS,
            multiplier=settings.INDEXER_BACKOFF_MULTIPLIER,
            max_delay=settings.INDEXER_BACKOFF_MAX_SECONDS,
        ),
    )
    app = create_app(store, worker, settings)
    coordinator = LifecycleCoordinator(
        worker,
        app,
        host=settings.HOST,
        port=settings.PORT,
        shutdown_timeout=settings.SHUTDOWN_TIMEOUT_SECONDS,
        worker_join_timeout=settings.WORKER_JOIN_TIMEOUT_SECONDS,
    )
    try:
        return await coordinator.run()
    finally:
        await client.aclose()


def main() -> None:
    """Console entry point."""
    settings = get_settings()
    configure_logging(level=settings.LOG_LEVEL, json_output=settings.json_logs)

    try:
        store = build_store(settings)
    except StorageInitError as exc:
        logger.critical(f"Failed to initialize database: {exc}")
        sys.exit(1)

    try:
        exit_code = asyncio.run(run_service(settings, store))
    except ShutdownTimeoutError as exc:
        logger.critical(f"Server Shutdown Failed: {exc}")
        sys.exit(1)
    finally:
        store.close()

    if exit_code:
        sys.exit(exit_code)
    logger.info("Server exiting")


if __name__ == "__main__":
    main()
