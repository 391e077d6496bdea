"""Realtime infrastructure: change feed propagation to WebSocket clients.

- FeedSubscriber: consume one collection's MongoDB change stream as ChangeRecords
- BroadcastHub: track client channels and fan messages out to all of them
- ChangeFeedPipeline: connect the two, with resubscription after transient errors

Architecture:
    writes ──► MongoDB ──change stream──► FeedSubscriber ──► ChangeFeedPipeline
                                                                   │
                              Client A ◄──┐                        ▼
                              Client B ◄──┼──────────────── BroadcastHub
                              Client C ◄──┘

Usage:
    from changefeed_service.infra.realtime import get_broadcast_hub

    hub = get_broadcast_hub()
    connection_id = hub.register(websocket)
"""

from changefeed_service.infra.realtime.exceptions import (
    ChangeFeedError,
    ChangeFeedInvalidatedError,
    SubscriptionStateError,
)
from changefeed_service.infra.realtime.hub import (
    BroadcastHub,
    ChannelInfo,
    get_broadcast_hub,
    start_broadcast_hub,
    stop_broadcast_hub,
)
from changefeed_service.infra.realtime.pipeline import (
    ChangeFeedPipeline,
    get_changefeed_pipeline,
    start_changefeed_pipeline,
    stop_changefeed_pipeline,
)
from changefeed_service.infra.realtime.records import (
    ORDER_CHANGED_EVENT,
    ChangeRecord,
    OperationType,
    UpdateDescription,
    normalize_change,
)
from changefeed_service.infra.realtime.subscriber import (
    CloseReason,
    FeedSubscriber,
    SubscriptionState,
)

__all__ = [
    # Records
    "ORDER_CHANGED_EVENT",
    "ChangeRecord",
    "OperationType",
    "UpdateDescription",
    "normalize_change",
    # Subscriber
    "CloseReason",
    "FeedSubscriber",
    "SubscriptionState",
    # Hub
    "BroadcastHub",
    "ChannelInfo",
    "get_broadcast_hub",
    "start_broadcast_hub",
    "stop_broadcast_hub",
    # Pipeline
    "ChangeFeedPipeline",
    "get_changefeed_pipeline",
    "start_changefeed_pipeline",
    "stop_changefeed_pipeline",
    # Errors
    "ChangeFeedError",
    "ChangeFeedInvalidatedError",
    "SubscriptionStateError",
]
