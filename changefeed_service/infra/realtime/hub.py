"""Broadcast hub: fans change records out to every connected client channel.

The hub tracks registered client channels and delivers each broadcast to all
of them. Delivery is decoupled per channel:

- ``broadcast()`` never awaits a transport. It snapshots membership and puts
  the encoded message on each channel's bounded queue.
- One sender task per channel drains that queue in order, so every channel
  sees messages in broadcast order and a slow channel delays only itself.
- When a channel's queue is full the oldest pending message is discarded.
- A failed send unregisters and closes that channel only.

A channel is any object with ``async send_json(data)`` and
``async close(code=..., reason=...)``; a Starlette ``WebSocket`` qualifies.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
import logging
import time
from typing import Any, Protocol
from uuid import uuid4

from changefeed_service.core.settings import get_websocket_settings
from changefeed_service.infra.metrics.prometheus import (
    websocket_broadcast_recipients,
    websocket_connection_duration_seconds,
    websocket_connections_total,
    websocket_messages_dropped_total,
    websocket_messages_sent_total,
    websocket_send_failures_total,
)
from changefeed_service.infra.realtime.records import ChangeRecord

logger = logging.getLogger(__name__)

PING_MESSAGE: dict[str, Any] = {"type": "ping"}


class Channel(Protocol):
    """Outbound side of a client transport."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000, reason: str | None = None) -> None: ...


@dataclass
class ChannelInfo:
    """Bookkeeping for one registered channel."""

    connection_id: str
    channel: Channel
    queue: asyncio.Queue[dict[str, Any]]
    metadata: dict[str, Any] = field(default_factory=dict)
    connected_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    sender_task: asyncio.Task[None] | None = None
    messages_sent: int = 0
    messages_dropped: int = 0


class BroadcastHub:
    """Tracks client channels and delivers broadcasts to each of them.

    Example:
        hub = BroadcastHub()
        await hub.start()

        connection_id = hub.register(websocket)
        hub.broadcast(record)
        await hub.unregister(connection_id)

        await hub.stop()
    """

    def __init__(
        self,
        *,
        max_connections: int | None = None,
        send_queue_size: int | None = None,
        heartbeat_interval: float | None = None,
        connection_timeout: float | None = None,
    ) -> None:
        """Initialize the hub.

        Arguments left as None fall back to ``WebSocketSettings``.
        """
        settings = get_websocket_settings()
        self.max_connections = max_connections or settings.max_connections
        self.send_queue_size = send_queue_size or settings.send_queue_size
        self.heartbeat_interval = (
            settings.heartbeat_interval if heartbeat_interval is None else heartbeat_interval
        )
        self.connection_timeout = (
            settings.connection_timeout if connection_timeout is None else connection_timeout
        )

        # connection_id -> ChannelInfo
        self._connections: dict[str, ChannelInfo] = {}
        # id(channel) -> connection_id, for idempotent register/unregister by object
        self._channel_ids: dict[int, str] = {}

        self._accepting = True
        self._running = False
        self._heartbeat_task: asyncio.Task[None] | None = None

        self.messages_broadcast = 0
        self.messages_dropped = 0

    async def start(self) -> None:
        """Start the heartbeat loop and accept broadcasts."""
        if self._running:
            return

        self._running = True
        self._accepting = True

        if self.heartbeat_interval > 0:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
            logger.debug(
                "Heartbeat task started",
                extra={"interval": self.heartbeat_interval},
            )

        logger.info(
            "Broadcast hub started",
            extra={
                "max_connections": self.max_connections,
                "send_queue_size": self.send_queue_size,
            },
        )

    async def stop(self) -> None:
        """Stop accepting broadcasts, then close and unregister every channel."""
        self._accepting = False
        self._running = False

        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._heartbeat_task
            self._heartbeat_task = None

        closed = 0
        for connection_id in list(self._connections):
            if await self.unregister(
                connection_id, close=True, code=1001, reason="Server shutdown"
            ):
                closed += 1

        logger.info("Broadcast hub stopped", extra={"connections_closed": closed})

    # ──────────────────────────────────────────────────────────────
    # Membership
    # ──────────────────────────────────────────────────────────────

    def register(
        self,
        channel: Channel,
        *,
        connection_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Add a channel to the broadcast set.

        Registering a channel that is already registered is a no-op and
        returns its existing connection id. The channel only receives
        messages broadcast after this call.

        Args:
            channel: Transport to deliver messages to.
            connection_id: Identifier to use; generated when omitted.
            metadata: Arbitrary data kept with the connection.

        Returns:
            The channel's connection id.

        Raises:
            ConnectionRefusedError: If the hub is at ``max_connections``.
        """
        existing = self._channel_ids.get(id(channel))
        if existing is not None:
            return existing

        if len(self._connections) >= self.max_connections:
            logger.warning(
                "Connection refused: max connections reached",
                extra={"max": self.max_connections},
            )
            raise ConnectionRefusedError("Maximum connections reached")

        connection_id = connection_id or str(uuid4())
        info = ChannelInfo(
            connection_id=connection_id,
            channel=channel,
            queue=asyncio.Queue(maxsize=self.send_queue_size),
            metadata=metadata or {},
        )
        info.sender_task = asyncio.create_task(
            self._sender(info), name=f"hub-sender:{connection_id}"
        )

        self._connections[connection_id] = info
        self._channel_ids[id(channel)] = connection_id
        self._update_connection_metrics()

        logger.info(
            "Channel registered",
            extra={
                "connection_id": connection_id,
                "total_connections": len(self._connections),
            },
        )
        return connection_id

    async def unregister(
        self,
        target: str | Channel,
        *,
        close: bool = False,
        code: int = 1000,
        reason: str | None = None,
    ) -> bool:
        """Remove a channel from the broadcast set.

        Unregistering an unknown or already removed channel is a no-op.
        Messages still queued for the channel are discarded.

        Args:
            target: Connection id or the channel object itself.
            close: Also close the underlying transport.
            code: Close code used when ``close`` is true.
            reason: Close reason used when ``close`` is true.

        Returns:
            True if the channel was registered.
        """
        if isinstance(target, str):
            connection_id: str | None = target
        else:
            connection_id = self._channel_ids.get(id(target))

        info = self._connections.pop(connection_id, None) if connection_id else None
        if info is None:
            return False

        self._channel_ids.pop(id(info.channel), None)

        task = info.sender_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if close:
            with contextlib.suppress(Exception):
                await info.channel.close(code=code, reason=reason)

        duration = time.time() - info.connected_at
        websocket_connection_duration_seconds.observe(duration)
        self._update_connection_metrics()

        logger.info(
            "Channel unregistered",
            extra={
                "connection_id": info.connection_id,
                "duration_seconds": duration,
                "messages_sent": info.messages_sent,
                "messages_dropped": info.messages_dropped,
                "total_connections": len(self._connections),
            },
        )
        return True

    def record_activity(self, connection_id: str) -> bool:
        """Mark a channel as alive after a frame arrived from its client."""
        info = self._connections.get(connection_id)
        if info is None:
            return False
        info.last_activity = time.time()
        return True

    # ──────────────────────────────────────────────────────────────
    # Delivery
    # ──────────────────────────────────────────────────────────────

    def broadcast(self, message: ChangeRecord | dict[str, Any]) -> int:
        """Queue a message for every registered channel.

        Args:
            message: A change record (encoded with ``to_message()``) or an
                already JSON-safe message.

        Returns:
            Number of channels the message was queued for.
        """
        if not self._accepting:
            return 0

        if isinstance(message, ChangeRecord):
            message = message.to_message()

        # Snapshot: channels registered during delivery are not included.
        recipients = list(self._connections.values())
        for info in recipients:
            self._enqueue(info, message)

        self.messages_broadcast += 1
        websocket_broadcast_recipients.observe(len(recipients))
        return len(recipients)

    def send_to_connection(self, connection_id: str, message: dict[str, Any]) -> bool:
        """Queue a message for one channel, behind anything already queued.

        Returns:
            True if queued, False if the connection is not registered.
        """
        info = self._connections.get(connection_id)
        if info is None:
            return False
        self._enqueue(info, message)
        return True

    def _enqueue(self, info: ChannelInfo, message: dict[str, Any]) -> None:
        queue = info.queue
        if queue.full():
            with contextlib.suppress(asyncio.QueueEmpty):
                queue.get_nowait()
            info.messages_dropped += 1
            self.messages_dropped += 1
            websocket_messages_dropped_total.inc()
            if info.messages_dropped == 1 or info.messages_dropped % 100 == 0:
                logger.warning(
                    "Send queue full; dropping oldest message",
                    extra={
                        "connection_id": info.connection_id,
                        "messages_dropped": info.messages_dropped,
                    },
                )
        queue.put_nowait(message)

    async def _sender(self, info: ChannelInfo) -> None:
        """Drain one channel's queue onto its transport."""
        while True:
            message = await info.queue.get()
            try:
                await info.channel.send_json(message)
            except Exception as e:
                websocket_send_failures_total.inc()
                logger.warning(
                    "Failed to send message to connection",
                    extra={"connection_id": info.connection_id, "error": str(e)},
                )
                break
            info.messages_sent += 1
            info.last_activity = time.time()
            websocket_messages_sent_total.labels(
                message_type=str(message.get("type", "unknown"))
            ).inc()

        # Connection is likely dead, remove it
        await self.unregister(info.connection_id, close=True, code=1011, reason="Send failed")

    async def _heartbeat_loop(self) -> None:
        """Queue periodic pings and drop channels whose sends have stalled."""
        while self._running:
            await asyncio.sleep(self.heartbeat_interval)

            now = time.time()
            timeout = self.connection_timeout

            for connection_id in list(self._connections):
                info = self._connections.get(connection_id)
                if info is None:
                    continue

                if timeout > 0 and (now - info.last_activity) > timeout:
                    logger.warning(
                        "Connection timed out",
                        extra={"connection_id": connection_id},
                    )
                    await self.unregister(
                        connection_id, close=True, code=1001, reason="Heartbeat timeout"
                    )
                    continue

                self._enqueue(info, dict(PING_MESSAGE))

    # ──────────────────────────────────────────────────────────────
    # Introspection
    # ──────────────────────────────────────────────────────────────

    def get_connection(self, connection_id: str) -> ChannelInfo | None:
        """Get connection info by ID."""
        return self._connections.get(connection_id)

    @property
    def connection_count(self) -> int:
        """Total number of registered channels."""
        return len(self._connections)

    @property
    def is_running(self) -> bool:
        return self._running

    def stats(self) -> dict[str, Any]:
        """Counters for the stats endpoint."""
        return {
            "total_connections": len(self._connections),
            "max_connections": self.max_connections,
            "messages_broadcast": self.messages_broadcast,
            "messages_dropped": self.messages_dropped,
            "pending_messages": sum(info.queue.qsize() for info in self._connections.values()),
        }

    def _update_connection_metrics(self) -> None:
        websocket_connections_total.set(len(self._connections))


# Global hub instance
_hub: BroadcastHub | None = None


def get_broadcast_hub() -> BroadcastHub:
    """Get the global broadcast hub instance.

    Raises:
        RuntimeError: If the hub is not initialized.
    """
    if _hub is None:
        raise RuntimeError("Broadcast hub not initialized. Call start_broadcast_hub() first.")
    return _hub


async def start_broadcast_hub() -> BroadcastHub:
    """Initialize and start the global broadcast hub."""
    global _hub

    if _hub is None:
        _hub = BroadcastHub()
    await _hub.start()
    return _hub


async def stop_broadcast_hub() -> None:
    """Stop and discard the global broadcast hub."""
    global _hub

    if _hub is not None:
        await _hub.stop()
        _hub = None
