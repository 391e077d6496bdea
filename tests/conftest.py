"""Pytest configuration and shared fixtures.

Organization:
    - Environment: run without MongoDB or any other external service
    - Settings Fixtures: reset cached settings between tests
    - Application Fixtures: FastAPI app and HTTP client
    - Change Feed Fixtures: fake collection and a started broadcast hub
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient

from tests.fixtures import FakeCollection, RecordingChannel

# Ensure tests run without external infrastructure
os.environ.setdefault("MONGO_URI", "")
os.environ.setdefault("MONGODB_URI", "")
os.environ.setdefault("LOG_FILE_ENABLED", "false")
os.environ.setdefault("APP_ENVIRONMENT", "test")


# ============================================================================
# Settings Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def reset_settings():
    """Drop cached settings so environment patches take effect per test."""
    from changefeed_service.core.settings import clear_all_caches

    clear_all_caches()
    yield
    clear_all_caches()


# ============================================================================
# Application Fixtures
# ============================================================================


@pytest.fixture
async def app():
    """Create a fresh FastAPI application for each test.

    Example:
        async def test_endpoint(app):
            assert app.title == "Order Change Feed API"
    """
    from changefeed_service.app.main import create_app

    return create_app()


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient]:
    """Async HTTP client over ASGI transport (lifespan is not run).

    Example:
        async def test_list_orders(client):
            response = await client.get("/api/v1/orders")
    """
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# ============================================================================
# Change Feed Fixtures
# ============================================================================


@pytest.fixture
def fake_collection() -> FakeCollection:
    """Collection double whose change streams are fed from the test."""
    return FakeCollection()


@pytest.fixture
async def hub():
    """A started broadcast hub with the heartbeat disabled."""
    from changefeed_service.infra.realtime.hub import BroadcastHub

    hub = BroadcastHub(
        max_connections=100,
        send_queue_size=16,
        heartbeat_interval=0,
        connection_timeout=0,
    )
    await hub.start()
    yield hub
    await hub.stop()


@pytest.fixture
def channel_factory():
    """Build recording client channels."""

    def _make(**kwargs) -> RecordingChannel:
        return RecordingChannel(**kwargs)

    return _make
