"""WebSocket router for realtime order updates.

Endpoints:
- WS /ws: receive ``orderChanged`` messages for every change to the orders collection
- GET /ws/stats: Connection and change feed statistics
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse
from starlette.websockets import WebSocketState

from changefeed_service.core.settings import get_websocket_settings
from changefeed_service.features.realtime.schemas import (
    ClientMessageType,
    ConnectedMessage,
    ConnectionStats,
    ErrorMessage,
    PipelineStatus,
    ServerPongMessage,
)
from changefeed_service.infra.logging import set_log_context
from changefeed_service.infra.metrics.prometheus import websocket_messages_received_total
from changefeed_service.infra.realtime import get_broadcast_hub, get_changefeed_pipeline

if TYPE_CHECKING:
    from changefeed_service.infra.realtime.hub import BroadcastHub

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/ws", tags=["realtime"])

_CLIENT_MESSAGE_TYPES = frozenset(t.value for t in ClientMessageType)


def _get_hub_safe() -> BroadcastHub | None:
    """Get broadcast hub, handling not-initialized case."""
    try:
        return get_broadcast_hub()
    except RuntimeError:
        return None


@router.websocket("")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """WebSocket connection endpoint.

    Every connected client receives every change to the orders collection,
    in commit order, starting from the moment it connected. Load current
    state with ``GET /api/v1/orders`` after connecting.

    Message Protocol:
        Client → Server:
        - {"type": "ping"}
        - {"type": "pong"}

        Server → Client:
        - {"type": "connected", "connection_id": "..."}
        - {"type": "orderChanged", "op": "...", "ns": {...}, "documentKey": ...,
           "fullDocument": {...} | null, "updateDescription": {...} | null}
        - {"type": "ping"}
        - {"type": "pong"}
        - {"type": "error", "code": "...", "message": "..."}
    """
    if not get_websocket_settings().enabled:
        await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER, reason="WebSocket disabled")
        return

    hub = _get_hub_safe()
    if hub is None:
        await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER, reason="Server not ready")
        return

    connection_id: str | None = None
    await websocket.accept()

    try:
        client = websocket.client
        connection_id = hub.register(
            websocket,
            metadata={"client": f"{client.host}:{client.port}" if client else None},
        )
        set_log_context(connection_id=connection_id)

        # Queued ahead of any broadcast that follows registration.
        hub.send_to_connection(
            connection_id,
            ConnectedMessage(connection_id=connection_id).model_dump(mode="json"),
        )

        await _handle_messages(websocket, connection_id, hub)

    except ConnectionRefusedError as e:
        logger.warning("WebSocket connection refused", extra={"reason": str(e)})
        await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER, reason=str(e))

    except WebSocketDisconnect:
        logger.debug("WebSocket client disconnected normally")

    except Exception as e:
        if websocket.application_state == WebSocketState.DISCONNECTED:
            # Closed by the hub after a failed or stalled send
            logger.debug("WebSocket closed by server", extra={"error": str(e)})
        else:
            logger.exception("WebSocket error", extra={"error": str(e)})

    finally:
        if connection_id is not None:
            await hub.unregister(connection_id)


async def _handle_messages(
    websocket: WebSocket,
    connection_id: str,
    hub: BroadcastHub,
) -> None:
    """Handle incoming WebSocket messages.

    Replies go through the hub's per-connection queue so they never
    interleave with a broadcast being written to the same socket.
    """
    async for raw_message in websocket.iter_text():
        hub.record_activity(connection_id)

        try:
            message = json.loads(raw_message)
        except json.JSONDecodeError:
            websocket_messages_received_total.labels(message_type="invalid").inc()
            error = ErrorMessage(code="invalid_json", message="Invalid JSON message")
            hub.send_to_connection(connection_id, error.model_dump(mode="json"))
            continue

        msg_type = message.get("type") if isinstance(message, dict) else None
        known = isinstance(msg_type, str) and msg_type in _CLIENT_MESSAGE_TYPES
        websocket_messages_received_total.labels(
            message_type=msg_type if known else "unknown"
        ).inc()

        if msg_type == ClientMessageType.PING:
            hub.send_to_connection(connection_id, ServerPongMessage().model_dump(mode="json"))

        elif msg_type == ClientMessageType.PONG:
            pass

        else:
            error = ErrorMessage(
                code="unknown_type",
                message=f"Unknown message type: {msg_type}",
            )
            hub.send_to_connection(connection_id, error.model_dump(mode="json"))


@router.get(
    "/stats",
    response_model=ConnectionStats,
    summary="Get WebSocket connection statistics",
    description="Returns connection counts and change feed pipeline state.",
)
async def get_stats() -> ConnectionStats | JSONResponse:
    """Get current WebSocket connection statistics."""
    hub = _get_hub_safe()
    if hub is None:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Broadcast hub not initialized"},
        )

    pipeline = get_changefeed_pipeline()
    pipeline_status = None
    if pipeline is not None:
        pipeline_status = PipelineStatus.model_validate(pipeline.status())

    return ConnectionStats(**hub.stats(), pipeline=pipeline_status)
