"""MongoDB client lifecycle on the pymongo async API.

One ``AsyncMongoClient`` per process, created during application startup
and closed on shutdown. The orders API and the change feed share it.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pymongo import DESCENDING, AsyncMongoClient
from pymongo.errors import PyMongoError

from changefeed_service.core.settings import get_mongo_settings
from changefeed_service.utils.retry import retry

if TYPE_CHECKING:
    from pymongo.asynchronous.collection import AsyncCollection
    from pymongo.asynchronous.database import AsyncDatabase

logger = logging.getLogger(__name__)

_client: AsyncMongoClient | None = None


async def init_mongo() -> AsyncMongoClient:
    """Create the global client, verify connectivity and ensure indexes.

    The startup ping is retried with exponential backoff using
    ``MONGO_STARTUP_RETRY_ATTEMPTS`` and ``MONGO_STARTUP_RETRY_DELAY``.

    Raises:
        ValueError: If no connection string is configured.
        RetryError: If the server stays unreachable.
    """
    global _client

    settings = get_mongo_settings()
    if _client is None:
        _client = AsyncMongoClient(settings.get_uri(), **settings.client_kwargs())

    if settings.ping_on_startup:
        ping = retry(
            max_attempts=settings.startup_retry_attempts,
            initial_delay=settings.startup_retry_delay,
            max_delay=30.0,
            exceptions=(PyMongoError,),
        )(_ping)
        await ping(_client)

    await ensure_indexes(get_orders_collection())

    logger.info(
        "MongoDB connection established",
        extra={"database": settings.database, "collection": settings.collection},
    )
    return _client


async def _ping(client: AsyncMongoClient) -> None:
    await client.admin.command("ping")


async def ensure_indexes(collection: AsyncCollection) -> None:
    """Index used by the newest-first order listing."""
    await collection.create_index([("updated_at", DESCENDING)], name="updated_at_desc")


async def close_mongo() -> None:
    """Close the global client. Safe to call when it was never opened."""
    global _client

    if _client is None:
        return

    logger.info("Closing MongoDB connection")
    try:
        await _client.close()
    except Exception as e:
        logger.exception("Error closing MongoDB connection", extra={"error": str(e)})
    finally:
        _client = None


def get_mongo_client() -> AsyncMongoClient:
    """Get the global client.

    Raises:
        RuntimeError: If ``init_mongo()`` has not run.
    """
    if _client is None:
        raise RuntimeError("MongoDB client not initialized. Call init_mongo() first.")
    return _client


def is_mongo_ready() -> bool:
    return _client is not None


def get_database() -> AsyncDatabase[dict[str, Any]]:
    return get_mongo_client()[get_mongo_settings().database]


def get_orders_collection() -> AsyncCollection[dict[str, Any]]:
    """The collection written by the orders API and watched by the change feed."""
    return get_database()[get_mongo_settings().collection]
