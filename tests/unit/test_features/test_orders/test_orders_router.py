"""Unit tests for the Orders API router."""
from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo.errors import DuplicateKeyError

from changefeed_service.features.orders.router import get_order_service
from changefeed_service.features.orders.service import OrderService

NOW = datetime(2025, 1, 1, tzinfo=UTC)
ORDER = {
    "_id": 200,
    "id": 200,
    "customer_name": "Ada",
    "product_name": "Keyboard",
    "status": "pending",
    "updated_at": NOW,
}


@pytest.fixture
def collection() -> MagicMock:
    collection = MagicMock()
    collection.insert_one = AsyncMock()
    collection.find_one = AsyncMock(return_value=None)
    collection.find_one_and_update = AsyncMock(return_value=None)
    collection.delete_one = AsyncMock(return_value=MagicMock(deleted_count=0))
    collection.find.return_value.sort.return_value.to_list = AsyncMock(return_value=[])
    return collection


@pytest.fixture
def orders_client(app, client, collection):
    """HTTP client with the order service bound to a mocked collection."""
    app.dependency_overrides[get_order_service] = lambda: OrderService(collection)
    yield client
    app.dependency_overrides.clear()


@pytest.mark.unit
class TestOrdersRouter:
    """Tests for /api/v1/orders."""

    async def test_create_order(self, orders_client, collection):
        response = await orders_client.post(
            "/api/v1/orders",
            json={"id": 200, "customer_name": "Ada", "product_name": "Keyboard"},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["id"] == 200
        assert data["status"] == "pending"
        assert "_id" not in data
        collection.insert_one.assert_awaited_once()

    async def test_create_duplicate_returns_conflict(self, orders_client, collection):
        collection.insert_one.side_effect = DuplicateKeyError("E11000 duplicate key")

        response = await orders_client.post(
            "/api/v1/orders",
            json={"id": 200, "customer_name": "Ada", "product_name": "Keyboard"},
        )

        assert response.status_code == 409
        assert response.headers["content-type"].startswith("application/problem+json")
        problem = response.json()
        assert problem["type"] == "order-exists"
        assert problem["order_id"] == 200

    async def test_create_rejects_invalid_body(self, orders_client):
        response = await orders_client.post("/api/v1/orders", json={"id": 0})

        assert response.status_code == 422
        assert response.json()["type"] == "validation-error"

    async def test_list_orders(self, orders_client, collection):
        collection.find.return_value.sort.return_value.to_list.return_value = [ORDER]

        response = await orders_client.get("/api/v1/orders")

        assert response.status_code == 200
        assert [o["id"] for o in response.json()] == [200]

    async def test_list_orders_tolerates_missing_names(self, orders_client, collection):
        legacy = {"_id": 7, "id": 7, "status": "delivered"}
        collection.find.return_value.sort.return_value.to_list.return_value = [ORDER, legacy]

        response = await orders_client.get("/api/v1/orders")

        assert response.status_code == 200
        orders = response.json()
        assert orders[1]["id"] == 7
        assert orders[1]["customer_name"] is None
        assert orders[1]["product_name"] is None
        assert orders[1]["updated_at"] is None

    async def test_create_requires_names(self, orders_client, collection):
        response = await orders_client.post("/api/v1/orders", json={"id": 200})

        assert response.status_code == 422
        fields = {error["field"] for error in response.json()["errors"]}
        assert fields == {"body.customer_name", "body.product_name"}
        collection.insert_one.assert_not_awaited()

    async def test_get_order(self, orders_client, collection):
        collection.find_one.return_value = ORDER

        response = await orders_client.get("/api/v1/orders/200")

        assert response.status_code == 200
        assert response.json()["customer_name"] == "Ada"

    async def test_get_missing_order(self, orders_client):
        response = await orders_client.get("/api/v1/orders/404")

        assert response.status_code == 404
        problem = response.json()
        assert problem["type"] == "order-not-found"
        assert problem["instance"] == "/api/v1/orders/404"

    async def test_update_order(self, orders_client, collection):
        collection.find_one_and_update.return_value = {**ORDER, "status": "shipped"}

        response = await orders_client.put("/api/v1/orders/200", json={"status": "shipped"})

        assert response.status_code == 200
        assert response.json()["status"] == "shipped"

    async def test_update_missing_order(self, orders_client):
        response = await orders_client.put("/api/v1/orders/404", json={"status": "shipped"})

        assert response.status_code == 404

    async def test_update_with_no_fields(self, orders_client, collection):
        response = await orders_client.put("/api/v1/orders/200", json={})

        assert response.status_code == 400
        assert response.json()["type"] == "empty-update"
        collection.find_one_and_update.assert_not_awaited()

    async def test_update_rejects_unknown_fields(self, orders_client):
        response = await orders_client.put("/api/v1/orders/200", json={"id": 5})

        assert response.status_code == 422

    async def test_delete_order(self, orders_client, collection):
        collection.delete_one.return_value = MagicMock(deleted_count=1)

        response = await orders_client.delete("/api/v1/orders/200")

        assert response.status_code == 200
        assert response.json() == {"message": "deleted", "id": 200}

    async def test_delete_missing_order(self, orders_client):
        response = await orders_client.delete("/api/v1/orders/404")

        assert response.status_code == 404
        assert response.json()["instance"] == "/api/v1/orders/404"

    async def test_unavailable_without_mongo(self, client):
        """Without an initialized client the orders API answers 503."""
        response = await client.get("/api/v1/orders")

        assert response.status_code == 503
        problem = response.json()
        assert problem["type"] == "service-unavailable"
        assert problem["service"] == "mongodb"
