"""Application lifespan management.

This module provides a single lifespan context manager that handles startup
and shutdown of all application services. Services are initialized in
dependency order and only when configured.

Startup Order:
1. Core (logging, metrics) - always runs first
2. Database (MongoDB) - conditional on configuration
3. Broadcast hub - conditional on WS_ENABLED
4. Change feed pipeline - requires database and the hub, conditional on FEED_ENABLED

Shutdown Order: Reverse of startup (what starts first, shuts down last)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import TYPE_CHECKING

from changefeed_service.core.settings import (
    get_app_settings,
    get_changefeed_settings,
    get_logging_settings,
    get_mongo_settings,
    get_websocket_settings,
)
from changefeed_service.infra.logging.config import setup_logging
from changefeed_service.infra.metrics.prometheus import application_info

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI

logger = logging.getLogger(__name__)

# =============================================================================
# Module-level state for service tracking
# =============================================================================

_mongo_started = False
_hub_started = False
_pipeline_started = False


def get_hub_started() -> bool:
    """Check if the broadcast hub was successfully started."""
    return _hub_started


def get_pipeline_started() -> bool:
    """Check if the change feed pipeline was successfully started."""
    return _pipeline_started


# =============================================================================
# Startup functions - organized by service
# =============================================================================


async def _startup_core() -> None:
    """Initialize core services: logging and metrics."""
    app = get_app_settings()
    log = get_logging_settings()

    setup_logging(log_settings=log, force=True)
    logger.info(
        "Application starting",
        extra={"service": app.service_name, "environment": app.environment},
    )

    application_info.labels(
        version=app.version,
        service=app.service_name,
        environment=app.environment,
    ).set(1)


async def _startup_database() -> None:
    """Initialize the MongoDB client."""
    global _mongo_started

    from changefeed_service.infra.database import close_mongo, init_mongo

    mongo = get_mongo_settings()
    _mongo_started = False

    if not mongo.is_configured:
        logger.warning("MongoDB not configured; orders API and change feed disabled")
        return

    try:
        await init_mongo()
        _mongo_started = True
    except Exception as e:
        await close_mongo()
        if mongo.startup_require_mongo:
            logger.exception(
                "MongoDB required but unavailable, failing startup",
                extra={"error": str(e), "startup_require_mongo": True},
            )
            raise
        logger.warning(
            "MongoDB unavailable, continuing in degraded mode",
            extra={"error": str(e), "startup_require_mongo": False},
        )


async def _startup_hub() -> None:
    """Start the broadcast hub that WebSocket clients register with."""
    global _hub_started

    from changefeed_service.infra.realtime import start_broadcast_hub

    _hub_started = False
    if not get_websocket_settings().enabled:
        return

    await start_broadcast_hub()
    _hub_started = True


async def _startup_pipeline() -> None:
    """Start the change feed pipeline into the broadcast hub."""
    global _pipeline_started

    from changefeed_service.infra.database import get_orders_collection
    from changefeed_service.infra.realtime import start_changefeed_pipeline

    feed = get_changefeed_settings()
    _pipeline_started = False

    if not feed.enabled:
        logger.info("Change feed disabled via configuration")
        return
    if not (_mongo_started and _hub_started):
        logger.warning(
            "Change feed requires MongoDB and the broadcast hub, skipping",
            extra={"mongo_started": _mongo_started, "hub_started": _hub_started},
        )
        return

    await start_changefeed_pipeline(get_orders_collection())
    _pipeline_started = True


# =============================================================================
# Shutdown functions - reverse order
# =============================================================================


async def _shutdown_pipeline() -> None:
    """Stop the change feed pipeline (closes the change stream)."""
    global _pipeline_started

    from changefeed_service.infra.realtime import stop_changefeed_pipeline

    if not _pipeline_started:
        return

    await stop_changefeed_pipeline()
    _pipeline_started = False


async def _shutdown_hub() -> None:
    """Close all client channels and discard the hub."""
    global _hub_started

    from changefeed_service.infra.realtime import stop_broadcast_hub

    if not _hub_started:
        return

    await stop_broadcast_hub()
    _hub_started = False


async def _shutdown_database() -> None:
    """Close the MongoDB client."""
    global _mongo_started

    from changefeed_service.infra.database import close_mongo

    if not _mongo_started:
        return

    await close_mongo()
    _mongo_started = False
    logger.info("MongoDB connection closed")


# =============================================================================
# Main lifespan context manager
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle.

    Args:
        app: FastAPI application instance.

    Yields:
        None during application runtime.
    """
    _ = app

    # 1. Core services (logging, metrics)
    await _startup_core()

    # 2. Database
    await _startup_database()

    # 3. Broadcast hub
    await _startup_hub()

    # 4. Change feed pipeline
    await _startup_pipeline()

    app_settings = get_app_settings()
    logger.info(
        "Application startup complete - listening on %s:%s",
        app_settings.host,
        app_settings.port,
        extra={
            "service": app_settings.service_name,
            "environment": app_settings.environment,
            "mongo_enabled": _mongo_started,
            "websocket_enabled": _hub_started,
            "changefeed_enabled": _pipeline_started,
        },
    )

    yield

    logger.info("Application shutting down", extra={"service": app_settings.service_name})

    # 4. Change feed pipeline
    await _shutdown_pipeline()

    # 3. Broadcast hub
    await _shutdown_hub()

    # 2. Database
    await _shutdown_database()

    logger.info("Application shutdown complete")


__all__ = [
    "get_hub_started",
    "get_pipeline_started",
    "lifespan",
]
