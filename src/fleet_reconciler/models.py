"""Pydantic models for Fleet Reconciler configuration."""

from enum import Enum
from typing import Self

from pydantic import BaseModel, Field, HttpUrl, model_validator


class SourceKind(str, Enum):
    """The two independently fetched documents."""

    VEHICLE_FEED = "vehicle_feed"
    ROUTE_TABLE = "route_table"


class AuthType(str, Enum):
    """Type of authentication to apply."""

    HEADER = "header"
    QUERY = "query"


class DisplayBucket(str, Enum):
    """Visual classification of a fleet entry, in precedence order."""

    PINNED = "pinned"
    STALE = "stale"
    ACTIVE = "active"


class AuthConfig(BaseModel):
    """Configuration for source authentication.

    ``value`` has already had ``${ENV_VAR}`` references substituted by the
    time the model is built.
    """

    type: AuthType
    key: str
    value: str


class RetryConfig(BaseModel):
    """Configuration for in-cycle retries on transient failures.

    Waits are fixed; the poll interval is the outer retry loop.
    """

    max_attempts: int = Field(default=2, ge=1, le=5)
    wait_seconds: float = Field(default=1.0, ge=0.0, le=10.0)


class DefaultsConfig(BaseModel):
    """Default configuration values applied to both sources."""

    timeout_seconds: int = Field(default=15, ge=1, le=120)
    retry: RetryConfig = Field(default_factory=RetryConfig)


class SourceConfig(BaseModel):
    """Configuration for one fetched document (before defaults are applied)."""

    url: HttpUrl
    timeout_seconds: int | None = Field(default=None, ge=1, le=120)
    retry: RetryConfig | None = None
    auth: AuthConfig | None = None


class ReconcilerConfig(BaseModel):
    """Tuning for snapshot reconciliation."""

    stale_threshold_ms: int = Field(default=300_000, ge=1)
    trail_cap: int = Field(default=20, ge=1, le=1000)


class FleetFileConfig(BaseModel):
    """Schema for the fleet.yaml configuration file."""

    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    poll_interval_seconds: int = Field(default=10, ge=1, le=3600)
    vehicle_feed: SourceConfig
    route_table: SourceConfig
    reconciler: ReconcilerConfig = Field(default_factory=ReconcilerConfig)


class FeedSource(BaseModel):
    """A fully resolved source, ready for the fetcher."""

    kind: SourceKind
    url: HttpUrl
    timeout_seconds: int = Field(default=15, ge=1, le=120)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    auth: AuthConfig | None = None


class PollerConfig(BaseModel):
    """Everything the poller needs, flattened for runtime."""

    poll_interval_seconds: int = Field(default=10, ge=1, le=3600)
    vehicle_feed: FeedSource
    route_table: FeedSource
    reconciler: ReconcilerConfig = Field(default_factory=ReconcilerConfig)

    @model_validator(mode="after")
    def validate_source_kinds(self) -> Self:
        """Ensure each source slot holds the matching kind."""
        if self.vehicle_feed.kind is not SourceKind.VEHICLE_FEED:
            raise ValueError("vehicle_feed source must have kind 'vehicle_feed'")
        if self.route_table.kind is not SourceKind.ROUTE_TABLE:
            raise ValueError("route_table source must have kind 'route_table'")
        return self
