"""Change feed (MongoDB change stream) settings."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

FullDocumentMode = Literal["default", "updateLookup", "whenAvailable", "required"]


class ChangeFeedSettings(BaseSettings):
    """Settings for the change feed subscriber and its supervisor.

    Environment variables use FEED_ prefix.
    Example: FEED_AUTO_RESUBSCRIBE=false
    """

    enabled: bool = Field(
        default=True,
        description="Start the change feed pipeline on application startup",
    )

    full_document: FullDocumentMode = Field(
        default="updateLookup",
        description="fullDocument option passed to watch(); updateLookup returns the post-image on update",
    )

    backfill_on_update: bool = Field(
        default=True,
        description="Look up the current document when an update event arrives without one",
    )

    buffer_size: int = Field(
        default=1024,
        ge=1,
        le=1_000_000,
        description="Records buffered between the subscriber and the broadcast hub",
    )

    max_await_time_ms: int | None = Field(
        default=None,
        ge=1,
        le=60_000,
        description="maxAwaitTimeMS for the change stream getMore",
    )

    # ──────────────────────────────────────────────────────────────
    # Resubscription after transient errors
    # ──────────────────────────────────────────────────────────────

    auto_resubscribe: bool = Field(
        default=True,
        description="Start a new subscription from the last token after a transient error",
    )

    resubscribe_initial_delay: float = Field(
        default=1.0,
        ge=0,
        le=60,
        description="Delay before the first resubscribe attempt in seconds",
    )

    resubscribe_max_delay: float = Field(
        default=30.0,
        ge=0,
        le=600,
        description="Upper bound for the resubscribe backoff in seconds",
    )

    max_resubscribe_attempts: int = Field(
        default=0,
        ge=0,
        le=10_000,
        description="Consecutive failed resubscribes before giving up (0 for unlimited)",
    )

    model_config = SettingsConfigDict(
        env_prefix="FEED_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
    )
