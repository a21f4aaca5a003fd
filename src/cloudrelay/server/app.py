"""FastAPI application for the cloudrelay job engine.

This module creates and configures the FastAPI application with:
- REST API for jobs, runs, version history and recurring schedules
- Optionally, the in-process lease scheduler and worker pool

Usage:
    uvicorn cloudrelay.server.app:app_factory --factory --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from cloudrelay.core.clock import Clock, SystemClock
from cloudrelay.core.config import EngineConfig
from cloudrelay.engine.pool import WorkerPool
from cloudrelay.engine.providers import ProviderRegistry, local_registry
from cloudrelay.server.api.router import router as api_router
from cloudrelay.server.database import Database
from cloudrelay.server.jobs import JobStore
from cloudrelay.server.scheduler import LeaseScheduler
from cloudrelay.server.schedules import ScheduleStore
from cloudrelay.server.versions import VersionRecorder

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(log_path: Path | None, level: int = logging.INFO) -> None:
    """Configure logging to output to both file and stdout.

    Calling it again replaces the handlers installed by the previous call.

    Args:
        log_path: Path to the log file (stdout only when None).
        level: Level for the cloudrelay logger.
    """
    formatter = logging.Formatter(LOG_FORMAT)

    # Root logger for cloudrelay
    root_logger = logging.getLogger("cloudrelay")
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    # Stdout handler
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)

    if log_path is None:
        return

    # File handler
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    # Also capture uvicorn and apscheduler logs to file
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "apscheduler"):
        logging.getLogger(name).addHandler(file_handler)


def build_engine(
    db: Database,
    config: EngineConfig,
    providers: ProviderRegistry,
    clock: Clock | None = None,
) -> LeaseScheduler:
    """Wire stores, worker pool and lease scheduler for one process."""
    clock = clock or SystemClock()
    jobs = JobStore(db, config=config, clock=clock, known_providers=providers.names())
    versions = VersionRecorder(db, clock=clock)
    pool = WorkerPool(jobs, versions, providers, config, clock=clock)
    return LeaseScheduler(jobs, pool, config, schedules=ScheduleStore(db, clock=clock))


def create_app(
    db: Database,
    config: EngineConfig | None = None,
    providers: ProviderRegistry | None = None,
    clock: Clock | None = None,
    run_engine: bool = False,
) -> FastAPI:
    """Create FastAPI application with a custom database.

    This is primarily used for testing with isolated databases.

    Args:
        db: Database instance.
        config: Engine configuration.
        providers: Provider registry; enqueue accepts any provider name when None.
        clock: Time source shared by the stores.
        run_engine: Also run the lease scheduler and worker pool in this process.

    Returns:
        Configured FastAPI application.
    """
    config = config or EngineConfig()
    clock = clock or SystemClock()
    known = providers.names() if providers is not None else None
    engine: LeaseScheduler | None = None
    if run_engine:
        if providers is None:
            raise ValueError("run_engine requires a provider registry")
        engine = build_engine(db, config, providers, clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler for startup/shutdown."""
        # Startup
        logger.info("=" * 60)
        logger.info("cloudrelay Server Starting")
        logger.info("=" * 60)
        logger.info("  Database:  %s", db.path)
        logger.info("  Providers: %s", ", ".join(known) if known else "any")
        logger.info("  Engine:    %s", "in-process" if engine else "external workers")
        logger.info("=" * 60)
        if engine is not None:
            engine.start()

        yield

        # Shutdown
        if engine is not None:
            engine.stop()
        logger.info("cloudrelay Server shutting down")

    application = FastAPI(
        title="cloudrelay",
        description="Cloud-to-cloud transfer and synchronization job engine",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.state.db = db
    application.state.jobs = JobStore(db, config=config, clock=clock, known_providers=known)
    application.state.versions = VersionRecorder(db, clock=clock)
    application.state.schedules = ScheduleStore(db, clock=clock)
    application.state.engine = engine

    application.include_router(api_router)

    return application


def app_factory() -> FastAPI:
    """Factory function for uvicorn --factory mode."""
    config = EngineConfig.from_env()
    setup_logging(config.log_path)
    return create_app(
        db=Database(config.db_path),
        config=config,
        providers=local_registry(config.provider_root),
    )
