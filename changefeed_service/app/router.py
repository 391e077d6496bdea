"""Router registry and setup."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from changefeed_service.core.settings import get_app_settings, get_websocket_settings
from changefeed_service.features.health.router import router as health_router
from changefeed_service.features.metrics.router import router as metrics_router
from changefeed_service.features.orders.router import router as orders_router

if TYPE_CHECKING:
    from fastapi import FastAPI

    from changefeed_service.core.settings.app import AppSettings
    from changefeed_service.core.settings.websocket import WebSocketSettings

logger = logging.getLogger(__name__)


def setup_routers(
    app: FastAPI,
    app_settings: AppSettings | None = None,
    websocket_settings: WebSocketSettings | None = None,
) -> None:
    """Register all feature routers with the application.

    Args:
        app: FastAPI application instance.
        app_settings: Optional application settings override for API prefixes.
        websocket_settings: Optional override for realtime/WebSocket behavior.
    """
    app_settings = app_settings or get_app_settings()
    websocket_settings = websocket_settings or get_websocket_settings()

    api_prefix = app_settings.api_prefix

    # Include metrics endpoint (no prefix - accessible at /metrics)
    app.include_router(metrics_router, tags=["observability"])

    app.include_router(orders_router, prefix=api_prefix, tags=["orders"])
    app.include_router(health_router, prefix=api_prefix, tags=["health"])

    # WebSocket endpoint lives at the root (/ws) where clients expect the feed
    if websocket_settings.enabled:
        from changefeed_service.features.realtime.router import router as realtime_router

        app.include_router(realtime_router, tags=["realtime"])
        logger.info("WebSocket realtime router included - endpoint at /ws")

    logger.info(
        "Router setup complete",
        extra={"api_prefix": api_prefix, "websocket_enabled": websocket_settings.enabled},
    )
