"""FastAPI application for the DeviceSync relay server.

This module creates and configures the FastAPI application with:
- REST API for pairing, session recovery, devices and event publishing
- WebSocket endpoint delivering events to devices

Usage:
    uvicorn devicesync.server.app:app_factory --factory --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from devicesync.server.api.router import router as api_router
from devicesync.server.database import Database
from devicesync.server.ws import DeviceHub
from devicesync.server.ws import router as ws_router

# Configuration from environment variables with defaults
DB_PATH = Path(os.environ.get("DEVICESYNC_DB_PATH", "devicesync.db"))
LOG_PATH = Path(os.environ.get("DEVICESYNC_LOG_PATH", "devicesync-server.log"))
RELAY_KEY = os.environ.get("DEVICESYNC_RELAY_KEY") or None

logger = logging.getLogger(__name__)


def setup_logging(log_path: Path | None, level: int = logging.INFO) -> None:
    """Send devicesync logs to stdout and, when given, to a file.

    The file handler also receives uvicorn's own loggers so request and
    startup errors end up next to relay events.
    """
    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_path is not None:
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))

    app_logger = logging.getLogger("devicesync")
    app_logger.setLevel(level)
    for handler in handlers:
        handler.setFormatter(formatter)
        app_logger.addHandler(handler)

    if log_path is not None:
        for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
            logging.getLogger(name).addHandler(handlers[-1])


def create_app(db: Database, relay_key: str | None = None) -> FastAPI:
    """Create FastAPI application with a custom database.

    This is primarily used for testing with isolated databases.

    Args:
        db: Database instance.
        relay_key: Shared key required on bot-facing endpoints, if set.

    Returns:
        Configured FastAPI application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler for startup/shutdown."""
        logger.info(
            "DeviceSync relay starting (database=%s, relay key %s)",
            db.db_path,
            "required" if relay_key else "not required",
        )

        yield

        logger.info("DeviceSync Relay shutting down")

    application = FastAPI(
        title="DeviceSync Relay",
        description="Pairing, session recovery and event relay for DeviceSync engines",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.state.db = db
    application.state.hub = DeviceHub(db)
    application.state.relay_key = relay_key

    application.include_router(api_router)
    application.include_router(ws_router)

    return application


def app_factory() -> FastAPI:
    """Factory function for uvicorn --factory mode."""
    setup_logging(LOG_PATH)
    return create_app(db=Database(DB_PATH), relay_key=RELAY_KEY)
