"""Pydantic schemas for Orders API."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class OrderStatus(str, Enum):
    """Fulfilment status of an order."""

    PENDING = "pending"
    SHIPPED = "shipped"
    DELIVERED = "delivered"


class OrderBase(BaseModel):
    """Base schema for Order with common fields.

    Names are optional on stored documents; only creation requires them.
    """

    customer_name: str | None = Field(None, description="Customer name")
    product_name: str | None = Field(None, description="Product name")
    status: OrderStatus = Field(default=OrderStatus.PENDING, description="Fulfilment status")


class OrderCreate(OrderBase):
    """Schema for creating a new order.

    Example:
        ```json
        {
            "id": 200,
            "customer_name": "Ada",
            "product_name": "Keyboard",
            "status": "pending"
        }
        ```
    """

    id: int = Field(..., ge=1, description="Order number, unique across orders")
    customer_name: str = Field(..., min_length=1, max_length=200, description="Customer name")
    product_name: str = Field(..., min_length=1, max_length=200, description="Product name")


class OrderUpdate(BaseModel):
    """Schema for updating an existing order.

    All fields are optional for partial updates. The order number cannot change.

    Example:
        ```json
        {"status": "shipped"}
        ```
    """

    customer_name: str | None = Field(None, min_length=1, max_length=200)
    product_name: str | None = Field(None, min_length=1, max_length=200)
    status: OrderStatus | None = None

    model_config = ConfigDict(extra="forbid")


class OrderResponse(OrderBase):
    """Schema for order responses.

    Example:
        ```json
        {
            "id": 200,
            "customer_name": "Ada",
            "product_name": "Keyboard",
            "status": "shipped",
            "updated_at": "2025-01-01T00:00:00Z"
        }
        ```
    """

    id: int
    updated_at: datetime | None = None


class OrderDeletedResponse(BaseModel):
    """Acknowledgement returned by the delete endpoint."""

    message: Literal["deleted"] = "deleted"
    id: int
