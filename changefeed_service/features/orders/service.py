"""Orders service layer.

Orders are stored with ``_id`` equal to the order number, so a change
event's ``documentKey`` is the order number itself. The ``id`` field is
kept in the document as well so clients see it in ``fullDocument``.

Handlers only write. Connected clients learn about every write through the
change feed, never from this layer.
"""
from __future__ import annotations

from datetime import UTC, datetime
import logging
from typing import TYPE_CHECKING, Any

from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from changefeed_service.core.exceptions import ConflictException

if TYPE_CHECKING:
    from pymongo.asynchronous.collection import AsyncCollection

    from changefeed_service.features.orders.schemas import OrderCreate, OrderUpdate

logger = logging.getLogger(__name__)


class OrderService:
    """CRUD operations on the orders collection."""

    def __init__(self, collection: AsyncCollection[dict[str, Any]]) -> None:
        self._collection = collection

    async def create_order(self, data: OrderCreate) -> dict[str, Any]:
        """Insert a new order.

        Raises:
            ConflictException: If an order with the same number exists.
        """
        document = {
            "_id": data.id,
            **data.model_dump(mode="json"),
            "updated_at": datetime.now(UTC),
        }

        try:
            await self._collection.insert_one(document)
        except DuplicateKeyError as e:
            raise ConflictException(
                detail=f"Order {data.id} already exists",
                type="order-exists",
                extra={"order_id": data.id},
            ) from e

        logger.info("Created order", extra={"order_id": data.id})
        return document

    async def list_orders(self) -> list[dict[str, Any]]:
        """All orders, most recently updated first."""
        cursor = self._collection.find({}).sort("updated_at", DESCENDING)
        return await cursor.to_list(None)

    async def get_order(self, order_id: int) -> dict[str, Any] | None:
        return await self._collection.find_one({"_id": order_id})

    async def update_order(self, order_id: int, data: OrderUpdate) -> dict[str, Any] | None:
        """Apply a partial update and return the post-update document.

        Returns:
            The updated order, or None if it does not exist. Never upserts.
        """
        changes = data.model_dump(mode="json", exclude_unset=True, exclude_none=True)
        changes["updated_at"] = datetime.now(UTC)

        document = await self._collection.find_one_and_update(
            {"_id": order_id},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if document is not None:
            logger.info(
                "Updated order",
                extra={"order_id": order_id, "fields": sorted(changes)},
            )
        return document

    async def delete_order(self, order_id: int) -> bool:
        """Delete an order.

        Returns:
            True if an order was deleted.
        """
        result = await self._collection.delete_one({"_id": order_id})
        if result.deleted_count:
            logger.info("Deleted order", extra={"order_id": order_id})
            return True
        return False
