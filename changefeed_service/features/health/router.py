"""Health check endpoints.

- GET /health/live: the process is up
- GET /health/ready: MongoDB answers a ping and the change feed is running
"""

from __future__ import annotations

import logging
from typing import Literal

from fastapi import APIRouter, Response, status
from pydantic import BaseModel

from changefeed_service.core.settings import get_app_settings, get_changefeed_settings
from changefeed_service.infra.database import get_mongo_client, is_mongo_ready
from changefeed_service.infra.realtime import get_changefeed_pipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


class LivenessResponse(BaseModel):
    status: Literal["alive"] = "alive"
    service: str
    version: str


class ReadinessResponse(BaseModel):
    ready: bool
    checks: dict[str, bool]


@router.get(
    "/live",
    response_model=LivenessResponse,
    summary="Liveness probe (Kubernetes)",
)
async def liveness_check() -> LivenessResponse:
    settings = get_app_settings()
    return LivenessResponse(service=settings.service_name, version=settings.version)


@router.get(
    "/ready",
    response_model=ReadinessResponse,
    responses={503: {"description": "Service not ready to accept traffic"}},
    summary="Readiness probe (Kubernetes)",
)
async def readiness_check(response: Response) -> ReadinessResponse:
    """Readiness probe.

    The change feed check is only included when the feed is enabled; a feed
    that gave up after repeated failures makes the service not ready.
    """
    checks = {"mongodb": await _mongo_alive()}

    if get_changefeed_settings().enabled:
        pipeline = get_changefeed_pipeline()
        checks["changefeed"] = pipeline is not None and not pipeline.status()["gave_up"]

    ready = all(checks.values())
    if not ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return ReadinessResponse(ready=ready, checks=checks)


async def _mongo_alive() -> bool:
    if not is_mongo_ready():
        return False
    try:
        await get_mongo_client().admin.command("ping")
    except Exception as e:
        logger.warning("MongoDB readiness ping failed", extra={"error": str(e)})
        return False
    return True
