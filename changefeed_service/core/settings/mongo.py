"""MongoDB connection settings.

The change feed relies on MongoDB change streams, which are only available
on replica sets and sharded clusters. A standalone ``mongod`` accepts the
connection but the first ``watch()`` call fails.
"""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, Field, SecretStr, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class MongoSettings(BaseSettings):
    """MongoDB client configuration.

    Environment variables use MONGO_ prefix. The connection string is also
    read from ``MONGODB_URI`` for compatibility with common deployments.
    Example: MONGO_URI=mongodb://localhost:27017/?replicaSet=rs0
    """

    uri: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("MONGO_URI", "MONGODB_URI"),
        description="MongoDB connection string (may embed credentials)",
    )
    database: str = Field(
        default="orders_db",
        min_length=1,
        max_length=64,
        description="Database that holds the watched collection",
    )
    collection: str = Field(
        default="orders",
        min_length=1,
        max_length=120,
        description="Collection written by the orders API and watched by the change feed",
    )
    app_name: str = Field(
        default="changefeed-service",
        max_length=128,
        description="appName reported to the server for connection attribution",
    )
    server_selection_timeout_ms: int = Field(
        default=5000,
        ge=100,
        le=120_000,
        description="How long to wait for a suitable server before failing an operation",
    )
    connect_timeout_ms: int = Field(
        default=10_000,
        ge=100,
        le=120_000,
        description="Socket connect timeout",
    )
    max_pool_size: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Maximum connections in the driver pool",
    )
    ping_on_startup: bool = Field(
        default=True,
        description="Issue a ping during startup so misconfiguration fails fast",
    )
    startup_retry_attempts: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Startup ping attempts before giving up",
    )
    startup_retry_delay: float = Field(
        default=1.0,
        ge=0,
        le=60,
        description="Initial delay between startup ping attempts in seconds",
    )
    startup_require_mongo: bool = Field(
        default=False,
        description="Fail startup when MongoDB is configured but unreachable",
    )

    @field_validator("uri", mode="before")
    @classmethod
    def _blank_uri_is_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @computed_field
    @property
    def is_configured(self) -> bool:
        """MongoDB is configured when a connection string is present."""
        return self.uri is not None

    def client_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for ``AsyncMongoClient``."""
        return {
            "appname": self.app_name,
            "serverSelectionTimeoutMS": self.server_selection_timeout_ms,
            "connectTimeoutMS": self.connect_timeout_ms,
            "maxPoolSize": self.max_pool_size,
            "tz_aware": True,
        }

    def get_uri(self) -> str:
        """Return the connection string or raise if unset."""
        if self.uri is None:
            raise ValueError("MongoDB URI not configured")
        return self.uri.get_secret_value()

    model_config = SettingsConfigDict(
        env_prefix="MONGO_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
        populate_by_name=True,
    )
