"""Pydantic schemas for realtime WebSocket messages.

Message Types:
- Client → Server: ping, pong
- Server → Client: connected, ping, pong, error, orderChanged
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from changefeed_service.infra.realtime.records import ORDER_CHANGED_EVENT


class ClientMessageType(str, Enum):
    """Message types sent from client to server."""

    PING = "ping"
    PONG = "pong"


class ServerMessageType(str, Enum):
    """Message types sent from server to client."""

    CONNECTED = "connected"
    PING = "ping"
    PONG = "pong"
    ERROR = "error"
    ORDER_CHANGED = ORDER_CHANGED_EVENT


# ──────────────────────────────────────────────────────────────
# Server → Client Messages
# ──────────────────────────────────────────────────────────────


class ServerMessage(BaseModel):
    """Base model for messages from server to client."""

    type: ServerMessageType


class ConnectedMessage(ServerMessage):
    """Sent immediately after the connection is registered."""

    type: Literal[ServerMessageType.CONNECTED] = ServerMessageType.CONNECTED
    connection_id: str = Field(..., description="Unique connection identifier")


class ServerPongMessage(ServerMessage):
    """Pong response to client ping."""

    type: Literal[ServerMessageType.PONG] = ServerMessageType.PONG


class ErrorMessage(ServerMessage):
    """Error message from server."""

    type: Literal[ServerMessageType.ERROR] = ServerMessageType.ERROR
    code: str = Field(..., description="Error code")
    message: str = Field(..., description="Human-readable error message")
    details: dict[str, Any] | None = Field(None, description="Additional error details")


class OrderChangedMessage(ServerMessage):
    """One change to the orders collection.

    Built by ``ChangeRecord.to_message()``; documented here for the OpenAPI
    schema and for clients.
    """

    type: Literal[ServerMessageType.ORDER_CHANGED] = ServerMessageType.ORDER_CHANGED
    op: Literal["insert", "update", "replace", "delete", "invalidate"]
    ns: dict[str, str] | None = Field(None, description="Database and collection")
    documentKey: Any = Field(None, description="Order number of the affected order")
    fullDocument: dict[str, Any] | None = Field(
        None, description="Order after the change; null for delete and invalidate"
    )
    updateDescription: dict[str, Any] | None = Field(
        None, description="Fields set or removed by an update; null otherwise"
    )


# ──────────────────────────────────────────────────────────────
# REST API Schemas
# ──────────────────────────────────────────────────────────────


class PipelineStatus(BaseModel):
    """State of the change feed pipeline."""

    running: bool
    subscription_state: str | None = None
    close_reason: str | None = None
    invalidated: bool = False
    records_forwarded: int = Field(0, ge=0)
    buffered_records: int = Field(0, ge=0)
    resubscribe_attempts: int = Field(0, ge=0)
    gave_up: bool = False
    last_error: str | None = None


class ConnectionStats(BaseModel):
    """Statistics about WebSocket connections and the change feed."""

    total_connections: int = Field(..., ge=0)
    max_connections: int = Field(..., ge=0)
    messages_broadcast: int = Field(0, ge=0)
    messages_dropped: int = Field(0, ge=0)
    pending_messages: int = Field(0, ge=0)
    pipeline: PipelineStatus | None = Field(
        None, description="Absent when the change feed is disabled or MongoDB is not configured"
    )
