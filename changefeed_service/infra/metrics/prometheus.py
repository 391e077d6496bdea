"""Prometheus metrics for the change feed and WebSocket fan-out."""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

# Custom registry so tests and multiple app instances do not collide with
# the process-global default registry.
REGISTRY = CollectorRegistry()

# HTTP metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
    registry=REGISTRY,
)

http_errors_total = Counter(
    "http_errors_total",
    "Error responses by problem type",
    ["error_type", "status"],
    registry=REGISTRY,
)

# WebSocket metrics
websocket_connections_total = Gauge(
    "websocket_connections_total",
    "Current number of active WebSocket connections",
    registry=REGISTRY,
)

websocket_messages_received_total = Counter(
    "websocket_messages_received_total",
    "Total number of WebSocket messages received from clients",
    ["message_type"],
    registry=REGISTRY,
)

websocket_messages_sent_total = Counter(
    "websocket_messages_sent_total",
    "Total number of WebSocket messages sent to clients",
    ["message_type"],
    registry=REGISTRY,
)

websocket_messages_dropped_total = Counter(
    "websocket_messages_dropped_total",
    "Outbound messages discarded because a connection's send queue was full",
    registry=REGISTRY,
)

websocket_send_failures_total = Counter(
    "websocket_send_failures_total",
    "Sends that failed and caused the connection to be unregistered",
    registry=REGISTRY,
)

websocket_connection_duration_seconds = Histogram(
    "websocket_connection_duration_seconds",
    "Duration of WebSocket connections in seconds",
    buckets=(1, 5, 10, 30, 60, 120, 300, 600, 1800, 3600),
    registry=REGISTRY,
)

websocket_broadcast_recipients = Histogram(
    "websocket_broadcast_recipients",
    "Number of recipients per broadcast message",
    buckets=(0, 1, 5, 10, 25, 50, 100, 250, 500, 1000),
    registry=REGISTRY,
)

# Change feed metrics
changefeed_records_total = Counter(
    "changefeed_records_total",
    "Change records produced by the feed subscriber",
    ["operation"],
    registry=REGISTRY,
)

changefeed_skipped_events_total = Counter(
    "changefeed_skipped_events_total",
    "Native change events that do not map to a change record",
    ["operation"],
    registry=REGISTRY,
)

changefeed_errors_total = Counter(
    "changefeed_errors_total",
    "Transient change feed failures that closed a subscription",
    registry=REGISTRY,
)

changefeed_backfill_total = Counter(
    "changefeed_backfill_total",
    "Full-document lookups performed for update events",
    ["outcome"],
    registry=REGISTRY,
)

changefeed_resubscribes_total = Counter(
    "changefeed_resubscribes_total",
    "Subscriptions started after a transient error",
    registry=REGISTRY,
)

changefeed_subscription_active = Gauge(
    "changefeed_subscription_active",
    "1 while a change feed subscription is active, 0 otherwise",
    registry=REGISTRY,
)

changefeed_buffered_records = Gauge(
    "changefeed_buffered_records",
    "Records waiting between the subscriber and the broadcast hub",
    registry=REGISTRY,
)

# Retry metrics
retry_attempts_total = Counter(
    "retry_attempts_total",
    "Retries scheduled after a failed attempt",
    ["operation"],
    registry=REGISTRY,
)

retry_exhausted_total = Counter(
    "retry_exhausted_total",
    "Operations that failed after exhausting every attempt",
    ["operation"],
    registry=REGISTRY,
)

# Application info
application_info = Gauge(
    "application_info",
    "Service version and environment; always 1",
    ["version", "service", "environment"],
    registry=REGISTRY,
)
