"""Orders API router.

Mutation surface for the watched collection. Every successful write shows
up on ``/ws`` as an ``orderChanged`` message via the change feed.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, status

from changefeed_service.core.exceptions import (
    BadRequestException,
    NotFoundException,
    ServiceUnavailableException,
)
from changefeed_service.features.orders.schemas import (
    OrderCreate,
    OrderDeletedResponse,
    OrderResponse,
    OrderUpdate,
)
from changefeed_service.features.orders.service import OrderService
from changefeed_service.infra.database import get_orders_collection, is_mongo_ready

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


def get_order_service() -> OrderService:
    """Get order service dependency.

    Raises:
        ServiceUnavailableException: If MongoDB is not configured or not connected.
    """
    if not is_mongo_ready():
        raise ServiceUnavailableException(
            detail="MongoDB is not configured",
            extra={"service": "mongodb"},
        )
    return OrderService(get_orders_collection())


def _not_found(order_id: int) -> NotFoundException:
    return NotFoundException(
        detail=f"Order {order_id} not found",
        type="order-not-found",
        extra={"order_id": order_id},
    )


@router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create new order",
)
async def create_order(
    data: OrderCreate,
    service: OrderService = Depends(get_order_service),
) -> OrderResponse:
    """Create a new order.

    Example:
        ```bash
        curl -X POST http://localhost:3000/api/v1/orders \\
          -H "Content-Type: application/json" \\
          -d '{"id": 200, "customer_name": "Ada", "product_name": "Keyboard"}'
        ```
    """
    document = await service.create_order(data)
    return OrderResponse.model_validate(document)


@router.get(
    "",
    response_model=list[OrderResponse],
    summary="List orders",
)
async def list_orders(
    service: OrderService = Depends(get_order_service),
) -> list[OrderResponse]:
    """List all orders, most recently updated first.

    Clients use this to load current state after (re)connecting to ``/ws``.
    """
    documents = await service.list_orders()
    return [OrderResponse.model_validate(doc) for doc in documents]


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order by number",
)
async def get_order(
    order_id: int,
    service: OrderService = Depends(get_order_service),
) -> OrderResponse:
    document = await service.get_order(order_id)
    if document is None:
        raise _not_found(order_id)
    return OrderResponse.model_validate(document)


@router.put(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Update order",
)
async def update_order(
    order_id: int,
    data: OrderUpdate,
    service: OrderService = Depends(get_order_service),
) -> OrderResponse:
    """Update an existing order (partial update).

    Raises:
        BadRequestException: 400 if the body sets no fields.
        NotFoundException: 404 if the order does not exist.

    Example:
        ```bash
        curl -X PUT http://localhost:3000/api/v1/orders/200 \\
          -H "Content-Type: application/json" \\
          -d '{"status": "shipped"}'
        ```
    """
    if not data.model_dump(exclude_unset=True, exclude_none=True):
        raise BadRequestException(
            detail="Update must set at least one field",
            type="empty-update",
            extra={"order_id": order_id},
        )
    document = await service.update_order(order_id, data)
    if document is None:
        raise _not_found(order_id)
    return OrderResponse.model_validate(document)


@router.delete(
    "/{order_id}",
    response_model=OrderDeletedResponse,
    summary="Delete order",
)
async def delete_order(
    order_id: int,
    service: OrderService = Depends(get_order_service),
) -> OrderDeletedResponse:
    if not await service.delete_order(order_id):
        raise _not_found(order_id)
    return OrderDeletedResponse(id=order_id)
