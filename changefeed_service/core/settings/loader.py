"""LRU-cached settings loaders.

Settings are loaded and validated once, then cached for the lifetime of the process.

Testing:
    In tests, clear the cache to force reload:
    get_app_settings.cache_clear()

    Or clear everything at once with clear_all_caches().
"""

from __future__ import annotations

from functools import lru_cache

from .app import AppSettings
from .changefeed import ChangeFeedSettings
from .logs import LoggingSettings
from .mongo import MongoSettings
from .websocket import WebSocketSettings


@lru_cache(maxsize=1)
def get_app_settings() -> AppSettings:
    """Get cached application settings.

    Returns:
        Validated and frozen AppSettings instance.
    """
    return AppSettings()


@lru_cache(maxsize=1)
def get_logging_settings() -> LoggingSettings:
    """Get cached logging settings.

    Returns:
        Validated and frozen LoggingSettings instance.
    """
    return LoggingSettings()


@lru_cache(maxsize=1)
def get_mongo_settings() -> MongoSettings:
    """Get cached MongoDB settings.

    Returns:
        Validated and frozen MongoSettings instance.
    """
    return MongoSettings()


@lru_cache(maxsize=1)
def get_websocket_settings() -> WebSocketSettings:
    """Get cached WebSocket settings.

    Returns:
        Validated and frozen WebSocketSettings instance.
    """
    return WebSocketSettings()


@lru_cache(maxsize=1)
def get_changefeed_settings() -> ChangeFeedSettings:
    """Get cached change feed settings.

    Returns:
        Validated and frozen ChangeFeedSettings instance.
    """
    return ChangeFeedSettings()


def clear_all_caches() -> None:
    """Clear all settings caches.

    Useful for testing or when you need to force reload settings.
    In production, prefer process restarts over cache clearing.
    """
    get_app_settings.cache_clear()
    get_logging_settings.cache_clear()
    get_mongo_settings.cache_clear()
    get_websocket_settings.cache_clear()
    get_changefeed_settings.cache_clear()
