"""FastAPI application for the offlinesync service.

This module creates and configures the FastAPI application with:
- Health and status feed
- Control endpoints (start, stop, refresh, enable/disable targets)
- WebSocket status stream

Usage:
    offlinesync run --serve --port 8080
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from offlinesync import __version__
from offlinesync.server.api.router import router as api_router
from offlinesync.server.ws import StatusHub
from offlinesync.server.ws import router as ws_router
from offlinesync.service import SyncService

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


def setup_logging(level: int = logging.INFO, log_file: Path | None = None) -> None:
    """Configure logging to stdout and, optionally, a file.

    Args:
        level: Level of the offlinesync logger.
        log_file: Path to a log file (stdout only if None).
    """
    formatter = logging.Formatter(LOG_FORMAT)

    root_logger = logging.getLogger("offlinesync")
    root_logger.setLevel(level)
    # Repeated calls must not duplicate output
    root_logger.handlers.clear()

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)

    if log_file is not None:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

        # Also capture uvicorn logs to file
        for uvicorn_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
            logging.getLogger(uvicorn_name).addHandler(file_handler)


def create_app(
    service: SyncService,
    manage_service: bool = True,
    status_interval: float = 2.0,
) -> FastAPI:
    """Create the FastAPI application around a service.

    Args:
        service: The sync service exposed by the API.
        manage_service: Start the service on startup and close it on shutdown.
        status_interval: Seconds between WebSocket status pushes.

    Returns:
        Configured FastAPI application.
    """

    hub = StatusHub()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler for startup/shutdown."""
        config = service.config
        logger.info("=" * 60)
        logger.info("offlinesync Starting")
        logger.info("=" * 60)
        logger.info(f"  State:   {config.state_path}")
        logger.info(f"  Targets: {', '.join(t.target_id for t in config.targets) or 'none'}")
        logger.info(f"  Jobs:    {', '.join(j.name for j in config.jobs) or 'none'}")
        if config.detection.mount_base:
            logger.info(f"  Watch:   {config.detection.mount_base} ({config.detection.mode})")
        logger.info("=" * 60)

        hub.bind(service.events, asyncio.get_running_loop())
        if manage_service:
            service.start()

        yield

        logger.info("offlinesync shutting down")
        hub.unbind()
        if manage_service:
            service.close()

    application = FastAPI(
        title="offlinesync",
        description="Budgeted content sync to removable storage",
        version=__version__,
        lifespan=lifespan,
    )

    application.state.service = service
    application.state.status_interval = status_interval
    application.state.hub = hub

    application.include_router(api_router)
    application.include_router(ws_router)

    return application
