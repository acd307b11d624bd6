"""FastAPI application for the tasksync server.

This module creates and configures the FastAPI application with:
- the sync API (push/pull)
- a health endpoint
- the daily tombstone purge

Usage:
    uvicorn tasksync.server.app:app_factory --factory --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from importlib.metadata import version
from pathlib import Path

from fastapi import FastAPI

from tasksync.server.api.router import router as api_router
from tasksync.server.database import Database
from tasksync.server.scheduler import TombstonePurgeScheduler

# Configuration from environment variables with defaults
DB_PATH = Path(os.environ.get("TASKSYNC_DB_PATH", "tasksync.db"))
LOG_PATH = Path(os.environ.get("TASKSYNC_LOG_PATH", "tasksync-server.log"))
TOMBSTONE_RETENTION_DAYS = int(os.environ.get("TASKSYNC_TOMBSTONE_RETENTION_DAYS", "30"))

logger = logging.getLogger(__name__)


def setup_logging(log_path: Path) -> None:
    """Configure logging to output to both file and stdout.

    Args:
        log_path: Path to the log file.
    """
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    formatter = logging.Formatter(log_format)

    root_logger = logging.getLogger("tasksync")
    root_logger.setLevel(logging.INFO)
    if root_logger.handlers:
        return  # Already configured

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    # Also capture uvicorn logs to file
    for uvicorn_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(uvicorn_name).addHandler(file_handler)


def create_app(db: Database, scheduler: TombstonePurgeScheduler | None = None) -> FastAPI:
    """Create FastAPI application with a custom database.

    This is primarily used for testing with isolated databases.

    Args:
        db: Database instance.
        scheduler: Optional purge scheduler, started and stopped with the app.

    Returns:
        Configured FastAPI application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler for startup/shutdown."""
        db_path = getattr(db, "_db_path", "in-memory")
        logger.info("=" * 60)
        logger.info("tasksync server starting")
        logger.info("=" * 60)
        logger.info("  Database: %s", db_path)
        logger.info("  Logs:     %s", LOG_PATH.absolute())
        logger.info("=" * 60)
        if scheduler is not None:
            scheduler.start()

        yield

        if scheduler is not None:
            scheduler.stop()
        logger.info("tasksync server shutting down")

    application = FastAPI(
        title="tasksync server",
        description="Offline-first delta sync for workspaces, projects and tasks",
        version=version("tasksync"),
        lifespan=lifespan,
    )

    application.state.db = db
    application.include_router(api_router)

    return application


def app_factory() -> FastAPI:
    """Factory function for uvicorn --factory mode."""
    setup_logging(LOG_PATH)
    db = Database(DB_PATH)
    return create_app(
        db=db,
        scheduler=TombstonePurgeScheduler(db, retention_days=TOMBSTONE_RETENTION_DAYS),
    )
