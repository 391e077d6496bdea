"""Unit tests for BroadcastHub."""
from __future__ import annotations

import asyncio

import pytest

from changefeed_service.infra.realtime.hub import (
    BroadcastHub,
    get_broadcast_hub,
    start_broadcast_hub,
    stop_broadcast_hub,
)
from changefeed_service.infra.realtime.records import ChangeRecord, OperationType
from tests.utils import settle, wait_for


def order_changed(key: int) -> dict:
    return {"type": "orderChanged", "op": "update", "documentKey": key}


@pytest.mark.unit
class TestHubMembership:
    """register/unregister semantics."""

    async def test_register_returns_connection_id(self, hub, channel_factory):
        channel = channel_factory()

        connection_id = hub.register(channel, metadata={"client": "test"})

        assert hub.connection_count == 1
        info = hub.get_connection(connection_id)
        assert info.channel is channel
        assert info.metadata == {"client": "test"}

    async def test_register_is_idempotent(self, hub, channel_factory):
        channel = channel_factory()

        first = hub.register(channel)
        second = hub.register(channel)

        assert first == second
        assert hub.connection_count == 1

    async def test_register_uses_given_connection_id(self, hub, channel_factory):
        connection_id = hub.register(channel_factory(), connection_id="conn-1")

        assert connection_id == "conn-1"
        assert hub.get_connection("conn-1") is not None

    async def test_unregister_is_idempotent(self, hub, channel_factory):
        channel = channel_factory()
        connection_id = hub.register(channel)

        assert await hub.unregister(connection_id) is True
        assert await hub.unregister(connection_id) is False
        assert await hub.unregister(channel) is False
        assert hub.connection_count == 0

    async def test_unregister_by_channel(self, hub, channel_factory):
        channel = channel_factory()
        hub.register(channel)

        assert await hub.unregister(channel) is True
        assert hub.connection_count == 0
        assert channel.closed_with is None

    async def test_unregister_with_close(self, hub, channel_factory):
        channel = channel_factory()
        connection_id = hub.register(channel)

        await hub.unregister(connection_id, close=True, code=1008, reason="Policy")

        assert channel.closed_with == (1008, "Policy")

    async def test_max_connections_refused(self, channel_factory):
        hub = BroadcastHub(max_connections=2, heartbeat_interval=0)
        await hub.start()
        hub.register(channel_factory())
        hub.register(channel_factory())

        with pytest.raises(ConnectionRefusedError):
            hub.register(channel_factory())

        assert hub.connection_count == 2
        await hub.stop()

    async def test_reregister_after_unregister_gets_new_id(self, hub, channel_factory):
        channel = channel_factory()
        first = hub.register(channel)
        await hub.unregister(first)

        second = hub.register(channel)

        assert second != first


@pytest.mark.unit
class TestHubBroadcast:
    """Delivery order, isolation and backpressure."""

    async def test_broadcast_reaches_every_channel(self, hub, channel_factory):
        channels = [channel_factory() for _ in range(3)]
        for channel in channels:
            hub.register(channel)

        recipients = hub.broadcast(order_changed(200))
        await wait_for(lambda: all(len(c.sent) == 1 for c in channels))

        assert recipients == 3
        for channel in channels:
            assert channel.sent == [order_changed(200)]
        assert hub.stats()["messages_broadcast"] == 1

    async def test_broadcast_encodes_change_records(self, hub, channel_factory):
        channel = channel_factory()
        hub.register(channel)
        record = ChangeRecord(
            operation=OperationType.DELETE,
            collection_id="orders",
            document_key=200,
            namespace={"db": "orders_db", "coll": "orders"},
            sequence_token={"_data": "token"},
        )

        hub.broadcast(record)
        await wait_for(lambda: len(channel.sent) == 1)

        message = channel.sent[0]
        assert message["type"] == "orderChanged"
        assert message["op"] == "delete"
        assert message["documentKey"] == 200
        assert message["fullDocument"] is None

    async def test_each_channel_sees_broadcast_order(self, hub, channel_factory):
        channels = [channel_factory() for _ in range(2)]
        for channel in channels:
            hub.register(channel)

        for key in range(10):
            hub.broadcast(order_changed(key))
        await wait_for(lambda: all(len(c.sent) == 10 for c in channels))

        for channel in channels:
            assert [m["documentKey"] for m in channel.sent] == list(range(10))

    async def test_broadcast_without_channels(self, hub):
        assert hub.broadcast(order_changed(1)) == 0

    async def test_unregistered_channel_receives_nothing_further(self, hub, channel_factory):
        staying, leaving = channel_factory(), channel_factory()
        hub.register(staying)
        hub.register(leaving)

        hub.broadcast(order_changed(1))
        await wait_for(lambda: len(leaving.sent) == 1)
        await hub.unregister(leaving)
        hub.broadcast(order_changed(2))
        await wait_for(lambda: len(staying.sent) == 2)
        await settle()

        assert [m["documentKey"] for m in leaving.sent] == [1]

    async def test_late_registrant_misses_earlier_messages(self, hub, channel_factory):
        early, late = channel_factory(), channel_factory()
        hub.register(early)

        hub.broadcast(order_changed(1))
        hub.register(late)
        hub.broadcast(order_changed(2))
        await wait_for(lambda: len(early.sent) == 2 and len(late.sent) == 1)

        assert [m["documentKey"] for m in late.sent] == [2]

    async def test_failing_channel_is_isolated(self, hub, channel_factory):
        healthy = channel_factory()
        broken = channel_factory(fail_on_send=ConnectionResetError("gone"))
        hub.register(healthy)
        broken_id = hub.register(broken)

        hub.broadcast(order_changed(1))
        await wait_for(lambda: hub.get_connection(broken_id) is None)
        hub.broadcast(order_changed(2))
        await wait_for(lambda: len(healthy.sent) == 2)

        assert broken.closed_with == (1011, "Send failed")
        assert hub.connection_count == 1
        assert [m["documentKey"] for m in healthy.sent] == [1, 2]

    async def test_slow_channel_does_not_block_others(self, hub, channel_factory):
        slow, fast = channel_factory(), channel_factory()
        slow.gate = asyncio.Event()
        hub.register(slow)
        hub.register(fast)

        for key in range(3):
            hub.broadcast(order_changed(key))
        await wait_for(lambda: len(fast.sent) == 3)

        assert slow.sent == []
        slow.gate.set()
        await wait_for(lambda: len(slow.sent) == 3)

    async def test_full_queue_drops_oldest(self, channel_factory):
        hub = BroadcastHub(send_queue_size=2, heartbeat_interval=0)
        await hub.start()
        channel = channel_factory()
        channel.gate = asyncio.Event()
        connection_id = hub.register(channel)

        # The sender task holds the first message while the gate is closed.
        hub.broadcast(order_changed(0))
        await settle()
        for key in range(1, 5):
            hub.broadcast(order_changed(key))

        assert hub.get_connection(connection_id).messages_dropped == 2
        assert hub.stats()["messages_dropped"] == 2

        channel.gate.set()
        await wait_for(lambda: len(channel.sent) == 3)
        assert [m["documentKey"] for m in channel.sent] == [0, 3, 4]
        await hub.stop()

    async def test_send_to_connection(self, hub, channel_factory):
        channel = channel_factory()
        connection_id = hub.register(channel)

        assert hub.send_to_connection(connection_id, {"type": "pong"}) is True
        assert hub.send_to_connection("missing", {"type": "pong"}) is False
        await wait_for(lambda: len(channel.sent) == 1)

        assert channel.of_type("pong") == [{"type": "pong"}]
        assert hub.get_connection(connection_id).messages_sent == 1


@pytest.mark.unit
class TestHubLifecycle:
    """start/stop and heartbeat."""

    async def test_stop_closes_all_channels(self, channel_factory):
        hub = BroadcastHub(heartbeat_interval=0)
        await hub.start()
        channels = [channel_factory() for _ in range(2)]
        for channel in channels:
            hub.register(channel)

        await hub.stop()

        assert hub.connection_count == 0
        assert not hub.is_running
        for channel in channels:
            assert channel.closed_with == (1001, "Server shutdown")

    async def test_broadcast_after_stop_is_ignored(self, channel_factory):
        hub = BroadcastHub(heartbeat_interval=0)
        await hub.start()
        await hub.stop()

        assert hub.broadcast(order_changed(1)) == 0

    async def test_heartbeat_sends_ping(self, channel_factory):
        hub = BroadcastHub(heartbeat_interval=0.01, connection_timeout=0)
        await hub.start()
        channel = channel_factory()
        hub.register(channel)

        await wait_for(lambda: bool(channel.of_type("ping")))

        await hub.stop()

    async def test_heartbeat_keeps_listening_channel(self, channel_factory):
        # Defaults scaled down: ping every interval, timeout twice that.
        hub = BroadcastHub(heartbeat_interval=0.05, connection_timeout=0.1)
        await hub.start()
        channel = channel_factory()
        connection_id = hub.register(channel)

        await asyncio.sleep(0.3)
        recipients = hub.broadcast(order_changed(200))
        await wait_for(lambda: bool(channel.of_type("orderChanged")))

        assert recipients == 1
        assert hub.get_connection(connection_id) is not None
        assert channel.closed_with is None
        assert channel.of_type("ping")
        await hub.stop()

    async def test_heartbeat_times_out_stalled_channel(self, channel_factory):
        hub = BroadcastHub(heartbeat_interval=0.01, connection_timeout=0.02)
        await hub.start()
        channel = channel_factory()
        channel.gate = asyncio.Event()
        hub.register(channel)

        await wait_for(lambda: hub.connection_count == 0)

        assert channel.closed_with == (1001, "Heartbeat timeout")
        await hub.stop()

    async def test_successful_send_counts_as_activity(self, hub, channel_factory):
        channel = channel_factory()
        connection_id = hub.register(channel)
        before = hub.get_connection(connection_id).last_activity

        await asyncio.sleep(0.01)
        hub.broadcast(order_changed(1))
        await wait_for(lambda: len(channel.sent) == 1)

        assert hub.get_connection(connection_id).last_activity > before

    async def test_record_activity(self, hub, channel_factory):
        connection_id = hub.register(channel_factory())
        before = hub.get_connection(connection_id).last_activity

        await asyncio.sleep(0.01)

        assert hub.record_activity(connection_id) is True
        assert hub.get_connection(connection_id).last_activity > before
        assert hub.record_activity("missing") is False

    async def test_stats(self, hub, channel_factory):
        hub.register(channel_factory())

        stats = hub.stats()

        assert stats == {
            "total_connections": 1,
            "max_connections": 100,
            "messages_broadcast": 0,
            "messages_dropped": 0,
            "pending_messages": 0,
        }


@pytest.mark.unit
class TestGlobalHub:
    """Module-level hub helpers."""

    async def test_get_before_start_raises(self):
        await stop_broadcast_hub()

        with pytest.raises(RuntimeError):
            get_broadcast_hub()

    async def test_start_and_stop(self):
        hub = await start_broadcast_hub()

        assert get_broadcast_hub() is hub
        assert hub.is_running

        await stop_broadcast_hub()
        with pytest.raises(RuntimeError):
            get_broadcast_hub()
