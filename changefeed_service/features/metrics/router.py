"""Prometheus metrics endpoint for observability.

Endpoints:
    GET /metrics - Prometheus scrape endpoint

Metrics Exposed:
    HTTP Request Metrics:
        - http_requests_total - Total request count by method, path, status

    WebSocket Metrics:
        - websocket_connections_total - Currently registered channels
        - websocket_messages_sent_total / websocket_messages_received_total
        - websocket_messages_dropped_total - Oldest messages discarded on full send queues
        - websocket_send_failures_total - Sends that removed a channel

    Change Feed Metrics:
        - changefeed_records_total - Records by operation
        - changefeed_errors_total - Subscriptions closed by a transient error
        - changefeed_backfill_total - Full-document lookups by outcome
        - changefeed_resubscribes_total - Subscriptions started after an error
        - changefeed_subscription_active - 1 while the change stream is open

Example Prometheus Configuration:
    ```yaml
    scrape_configs:
      - job_name: 'changefeed-service'
        static_configs:
          - targets: ['localhost:3000']
        metrics_path: '/metrics'
        scrape_interval: 15s
    ```
"""

from __future__ import annotations

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from changefeed_service.infra.metrics.prometheus import REGISTRY

router = APIRouter(tags=["observability"])


@router.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics in text exposition format.

    Returns:
        Response with the service's metrics registry.
    """
    data = generate_latest(REGISTRY)
    return Response(
        content=data,
        media_type=CONTENT_TYPE_LATEST,
        headers={"Cache-Control": "no-cache, no-store, must-revalidate"},
    )
