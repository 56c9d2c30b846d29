"""Prometheus metrics for Fleet Reconciler."""

from collections.abc import Mapping

from prometheus_client import Counter, Gauge, Histogram

from fleet_reconciler.models import DisplayBucket

# Poll cycle metrics
poll_total = Counter(
    "fleet_poll_total",
    "Total poll cycles started",
)

poll_success = Counter(
    "fleet_poll_success_total",
    "Poll cycles whose result was applied to the snapshot",
)

poll_skipped = Counter(
    "fleet_poll_skipped_total",
    "Ticks skipped because a previous cycle was still in flight",
)

poll_discarded = Counter(
    "fleet_poll_discarded_total",
    "Cycles whose result arrived after shutdown and was dropped",
)

poll_duration = Histogram(
    "fleet_poll_duration_seconds",
    "Time to fetch both documents and reconcile",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0, 30.0],
    unit="seconds",
)

# Fetch metrics
fetch_errors = Counter(
    "fleet_fetch_errors_total",
    "Failed document fetches",
    ["source", "error_type"],
)

fetch_duration = Histogram(
    "fleet_fetch_duration_seconds",
    "Time to fetch one document",
    ["source"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    unit="seconds",
)

# Reconciliation metrics
records_accepted = Counter(
    "fleet_records_accepted_total",
    "Vehicle records upserted into the snapshot",
)

records_rejected = Counter(
    "fleet_records_rejected_total",
    "Vehicle records skipped during validation",
    ["reason"],
)

fleet_vehicles = Gauge(
    "fleet_vehicles",
    "Vehicles in the snapshot by display bucket",
    ["bucket"],
)

route_table_size = Gauge(
    "fleet_route_table_routes",
    "Routes in the current route table",
)

last_success_timestamp = Gauge(
    "fleet_last_success_timestamp",
    "Unix timestamp of the last applied poll cycle",
)


def record_poll_attempt() -> None:
    """Record the start of a poll cycle."""
    poll_total.inc()


def record_poll_skipped() -> None:
    """Record a tick skipped because a cycle was already in flight."""
    poll_skipped.inc()


def record_poll_discarded() -> None:
    """Record a cycle whose result was dropped after shutdown."""
    poll_discarded.inc()


def record_fetch_success(source: str, duration_seconds: float) -> None:
    """Record a successful document fetch.

    Args:
        source: Source kind (vehicle_feed or route_table).
        duration_seconds: Time taken to fetch in seconds.
    """
    fetch_duration.labels(source=source).observe(duration_seconds)


def record_fetch_error(source: str, error_type: str) -> None:
    """Record a failed document fetch.

    Args:
        source: Source kind (vehicle_feed or route_table).
        error_type: Type of error (e.g., "timeout", "transport", "http_503").
    """
    fetch_errors.labels(source=source, error_type=error_type).inc()


def record_poll_success(
    duration_seconds: float,
    accepted: int,
    rejected: Mapping[str, int],
    bucket_counts: Mapping[DisplayBucket, int],
    routes: int,
) -> None:
    """Record an applied poll cycle.

    Args:
        duration_seconds: End-to-end cycle time in seconds.
        accepted: Records upserted this cycle.
        rejected: Records skipped this cycle, per reason.
        bucket_counts: Snapshot entries per display bucket.
        routes: Size of the route table.
    """
    poll_success.inc()
    poll_duration.observe(duration_seconds)
    records_accepted.inc(accepted)
    for reason, count in rejected.items():
        records_rejected.labels(reason=reason).inc(count)
    set_bucket_counts(bucket_counts)
    route_table_size.set(routes)
    last_success_timestamp.set_to_current_time()


def set_bucket_counts(bucket_counts: Mapping[DisplayBucket, int]) -> None:
    """Set the per-bucket vehicle gauges.

    Args:
        bucket_counts: Snapshot entries per display bucket.
    """
    for bucket, count in bucket_counts.items():
        fleet_vehicles.labels(bucket=bucket.value).set(count)
