"""Middleware configuration for FastAPI application."""
from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING

from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from changefeed_service.core.settings import get_app_settings
from changefeed_service.infra.logging.context import clear_log_context, set_log_context
from changefeed_service.infra.metrics.prometheus import http_requests_total

if TYPE_CHECKING:
    from fastapi import FastAPI

logger = logging.getLogger(__name__)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Add request ID to all requests and to their log records."""

    async def dispatch(self, request: Request, call_next):
        """Process request and add request ID.

        Args:
            request: Incoming request.
            call_next: Next middleware/handler.

        Returns:
            Response with X-Request-ID header.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        set_log_context(request_id=request_id)

        try:
            response = await call_next(request)
        finally:
            clear_log_context()

        response.headers["X-Request-ID"] = request_id
        return response


class MetricsMiddleware(BaseHTTPMiddleware):
    """Count HTTP requests by route template and status."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        # Route template keeps label cardinality bounded (/orders/{order_id})
        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or "unmatched"
        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status=str(response.status_code),
        ).inc()
        return response


def configure_middleware(app: FastAPI) -> None:
    """Configure middleware for the application.

    Args:
        app: FastAPI application instance.
    """
    app_settings = get_app_settings()

    cors_origins = app_settings.cors_origins or ["*"]
    logger.info(f"Configuring CORS with origins: {cors_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=app_settings.cors_allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
        max_age=3600,
    )

    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)
