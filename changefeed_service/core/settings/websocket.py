"""WebSocket configuration settings."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class WebSocketSettings(BaseSettings):
    """WebSocket server and connection settings.

    Environment variables use WS_ prefix.
    Example: WS_HEARTBEAT_INTERVAL=30
    """

    # ──────────────────────────────────────────────────────────────
    # Connection limits
    # ──────────────────────────────────────────────────────────────

    max_connections: int = Field(
        default=10000,
        ge=1,
        le=100000,
        description="Maximum concurrent WebSocket connections per instance",
    )

    send_queue_size: int = Field(
        default=256,
        ge=1,
        le=65536,
        description="Pending outbound messages kept per connection; the oldest is dropped on overflow",
    )

    # ──────────────────────────────────────────────────────────────
    # Heartbeat and timeout settings
    # ──────────────────────────────────────────────────────────────

    heartbeat_interval: float = Field(
        default=30.0,
        ge=0,
        le=300,
        description="Interval between ping messages in seconds (0 to disable)",
    )

    connection_timeout: float = Field(
        default=60.0,
        ge=0,
        le=600,
        description="Close connections with no successful send or inbound frame for this many seconds (0 to disable)",
    )

    # ──────────────────────────────────────────────────────────────
    # Feature flags
    # ──────────────────────────────────────────────────────────────

    enabled: bool = Field(
        default=True,
        description="Enable WebSocket endpoints",
    )

    model_config = SettingsConfigDict(
        env_prefix="WS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
    )
