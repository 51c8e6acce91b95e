"""FastAPI application for the GuardSync server.

This module creates and configures the FastAPI application with:
- REST API for policies, enforcement, sources, devices and webhooks
- Engine dispatch pool and background scheduler bound to the app lifespan

Usage:
    uvicorn guardsync.server.app:app_factory --factory --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from guardsync.core.config import EngineConfig
from guardsync.engine.engine import Engine
from guardsync.server.api.router import router as api_router
from guardsync.server.scheduler import EngineScheduler

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = "INFO", log_path: Path | None = None) -> None:
    """Configure logging to output to stdout and, optionally, a file.

    Args:
        level: Level name for the ``guardsync`` logger.
        log_path: Optional path to a log file.
    """
    formatter = logging.Formatter(LOG_FORMAT)

    # Root logger for guardsync
    root_logger = logging.getLogger("guardsync")
    root_logger.setLevel(level)
    if root_logger.handlers:
        return  # Already configured

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

    # Also capture uvicorn logs to file
    for uvicorn_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(uvicorn_name)
        uvicorn_logger.addHandler(file_handler)


def create_app(engine: Engine, run_scheduler: bool = True) -> FastAPI:
    """Create FastAPI application around an engine.

    The engine's dispatch pool (and the scheduler, unless disabled) run
    for the lifetime of the application.

    Args:
        engine: Engine instance.
        run_scheduler: Start the background scheduler with the app.

    Returns:
        Configured FastAPI application.
    """
    scheduler = EngineScheduler(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler for startup/shutdown."""
        # Startup
        config = engine.config
        logger.info("=" * 60)
        logger.info("GuardSync Server Starting")
        logger.info("=" * 60)
        logger.info("  Database:  %s", engine.db.path)
        logger.info("  Platforms: %d registered", len(engine.registry.platforms))
        logger.info("  Sources:   %d registered", len(engine.registry.sources))
        logger.info("  Workers:   %d (timeout %gs)", config.dispatch_workers, config.dispatch_timeout)
        logger.info("  Auth:      %s", "bearer token" if config.api_token else "disabled")
        if config.log_path:
            logger.info("  Logs:      %s", config.log_path.absolute())
        logger.info("=" * 60)

        engine.start()
        if run_scheduler:
            scheduler.start()

        yield

        # Shutdown
        logger.info("GuardSync Server shutting down")
        scheduler.stop()
        engine.stop()

    application = FastAPI(
        title="GuardSync Server",
        description="Child-safety policy enforcement and sync engine",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.state.engine = engine
    application.state.scheduler = scheduler

    application.include_router(api_router)

    return application


def app_factory() -> FastAPI:
    """Factory function for uvicorn --factory mode."""
    config = EngineConfig.from_env()
    setup_logging(config.log_level, config.log_path)
    return create_app(Engine(config))
