"""Database infrastructure package.

MongoDB client lifecycle for the orders collection:

Example:
    from changefeed_service.infra.database import init_mongo, get_orders_collection

    await init_mongo()
    orders = get_orders_collection()
    await orders.find_one({"_id": 200})
"""

from .mongo import (
    close_mongo,
    ensure_indexes,
    get_database,
    get_mongo_client,
    get_orders_collection,
    init_mongo,
    is_mongo_ready,
)

__all__ = [
    "close_mongo",
    "ensure_indexes",
    "get_database",
    "get_mongo_client",
    "get_orders_collection",
    "init_mongo",
    "is_mongo_ready",
]
