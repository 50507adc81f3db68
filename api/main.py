"""
FastAPI application initialization
"""

import asyncio
import os
import signal
from contextlib import asynccontextmanager, suppress
from typing import Callable, Optional
from fastapi import FastAPI
from api.routes import health, batches
from core.config import settings
from core.database import dispose_engine, get_session_maker
from core.logging import setup_logging
from api.middleware import RequestContextMiddleware
from ingestion.extractors.rpc_client import SubstrateRPCClient
from ingestion.pipelines import build_runner, interval_ms
from ingestion.scheduler import ETLScheduler
from models.base import StageType
import logging

logger = logging.getLogger(__name__)


def build_scheduler(rpc_client: SubstrateRPCClient) -> ETLScheduler:
    """Interval loops for every stage, sharing the app's session factory"""
    session_maker = get_session_maker()
    scheduler = ETLScheduler()
    for stage_type in StageType:
        scheduler.add_stage(
            stage_type.value,
            build_runner(stage_type, session_maker, rpc_client),
            interval_ms(stage_type),
        )
    return scheduler


def terminate_process() -> None:
    """Ask the server to shut down (uvicorn handles SIGTERM gracefully)"""
    os.kill(os.getpid(), signal.SIGTERM)


async def watch_scheduler(
    scheduler: ETLScheduler,
    on_fatal: Optional[Callable[[], None]] = None,
) -> None:
    """Stop the API process once the stage loops end on a fatal error"""
    await scheduler.wait()
    if scheduler.fatal_error is None:
        return
    logger.critical(f"Stage loops stopped on a fatal error, shutting down: {scheduler.fatal_error}")
    (on_fatal or terminate_process)()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown"""
    setup_logging()
    logger.info("Starting Chain ETL status API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    scheduler = None
    rpc_client = None
    watcher = None
    if settings.API_RUN_SCHEDULER:
        rpc_client = SubstrateRPCClient()
        scheduler = build_scheduler(rpc_client)
        scheduler.start()
        watcher = asyncio.create_task(watch_scheduler(scheduler))
    app.state.scheduler = scheduler

    try:
        yield
    finally:
        logger.info("Shutting down Chain ETL status API")
        if watcher is not None:
            watcher.cancel()
            with suppress(asyncio.CancelledError):
                await watcher
        if scheduler is not None:
            scheduler.stop()
        if rpc_client is not None:
            await rpc_client.close()
        await dispose_engine()


# Create FastAPI app
app = FastAPI(
    title="Chain ETL Status API",
    description="Batch records and lock state of the chain ETL pipeline",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(RequestContextMiddleware)

# Include routers
app.include_router(health.router)
app.include_router(batches.router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Chain ETL Status API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "batches": "/batches",
            "last_batch": "/batches/{stage_type}/last"
        }
    }
