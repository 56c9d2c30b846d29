"""Shared pytest fixtures for Fleet Reconciler tests."""

from pathlib import Path
from typing import Any

import pytest

from fleet_reconciler.models import FeedSource, PollerConfig, RetryConfig, SourceKind

from .factories import ROUTE_TABLE_URL, VEHICLE_FEED_URL


@pytest.fixture
def sample_fleet_yaml() -> str:
    """Return sample fleet.yaml content."""
    return """
defaults:
  timeout_seconds: 20
  retry:
    max_attempts: 3
    wait_seconds: 0.5

poll_interval_seconds: 15

vehicle_feed:
  url: https://example.com/vehicles.json
  auth:
    type: header
    key: X-Api-Key
    value: "${TEST_FEED_KEY}"

route_table:
  url: https://example.com/routes.json
  timeout_seconds: 60

reconciler:
  stale_threshold_ms: 120000
  trail_cap: 5
"""


@pytest.fixture
def sample_fleet_file(tmp_path: Path, sample_fleet_yaml: str) -> Path:
    """Create a temporary fleet.yaml file."""
    fleet_file = tmp_path / "fleet.yaml"
    fleet_file.write_text(sample_fleet_yaml)
    return fleet_file


@pytest.fixture
def route_records() -> list[dict[str, Any]]:
    """Return a GTFS-style route table."""
    return [
        {"route_id": "10", "route_short_name": "10", "route_long_name": "West End"},
        {"route_id": "191", "route_short_name": "191", "route_long_name": "Riverdale / Airport"},
    ]


@pytest.fixture
def poller_config() -> PollerConfig:
    """Create a poller configuration with fast, single-attempt fetches."""
    retry = RetryConfig(max_attempts=1, wait_seconds=0.0)
    return PollerConfig(
        poll_interval_seconds=10,
        vehicle_feed=FeedSource(
            kind=SourceKind.VEHICLE_FEED,
            url=VEHICLE_FEED_URL,
            timeout_seconds=5,
            retry=retry,
        ),
        route_table=FeedSource(
            kind=SourceKind.ROUTE_TABLE,
            url=ROUTE_TABLE_URL,
            timeout_seconds=5,
            retry=retry,
        ),
    )
