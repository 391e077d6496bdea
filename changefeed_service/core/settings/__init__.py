"""Modular Pydantic Settings v2 configuration.

One settings class per domain, each with its own environment prefix:
- APP_   application and server
- LOG_   logging
- MONGO_ MongoDB connection (MONGODB_URI is accepted too)
- WS_    WebSocket transport
- FEED_  change feed subscriber and resubscribe policy

Import settings via cached loaders:
    from changefeed_service.core.settings import get_app_settings

Configuration precedence (highest to lowest):
    1. init kwargs (testing/overrides)
    2. Environment variables (production)
    3. .env file (development only)
"""

from __future__ import annotations

from .loader import (
    clear_all_caches,
    get_app_settings,
    get_changefeed_settings,
    get_logging_settings,
    get_mongo_settings,
    get_websocket_settings,
)

__all__ = [
    "clear_all_caches",
    "get_app_settings",
    "get_changefeed_settings",
    "get_logging_settings",
    "get_mongo_settings",
    "get_websocket_settings",
]
