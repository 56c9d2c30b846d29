"""Fleet snapshot reconciliation.

Folds each vehicle feed into the previous snapshot: entries are upserted by
vehicle id, never removed, and carry a bounded position trail. Everything in
this module is synchronous and free of I/O.
"""

import math
import time
from collections import Counter
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any

from fleet_reconciler.logging import get_logger
from fleet_reconciler.models import DisplayBucket, ReconcilerConfig
from fleet_reconciler.normalize import (
    Position,
    Rejected,
    RouteTable,
    VehicleReport,
    ensure_route_table,
    extract_vehicle_records,
    normalize_id,
    parse_vehicle_report,
)

UNKNOWN_ROUTE_SHORT_NAME = "??"
UNKNOWN_ROUTE_LONG_NAME = "Route Details Unavailable"

DEFAULT_STALE_THRESHOLD_MS = 300_000
DEFAULT_TRAIL_CAP = 20

# Mean earth radius (IUGG)
EARTH_RADIUS_M = 6_371_008.8

logger = get_logger(__name__)


class UnknownVehicleError(KeyError):
    """Raised when a transition names a vehicle that is not in the snapshot."""

    def __init__(self, vehicle_id: Any) -> None:
        self.vehicle_id = vehicle_id
        super().__init__(f"Unknown vehicle: {vehicle_id!r}")


class ReconcilerDisposedError(RuntimeError):
    """Raised when a disposed ReconcilerState is used."""


def current_time_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def haversine_m(a: Position, b: Position) -> float:
    """Great-circle distance between two positions in meters."""
    lat1, lat2 = math.radians(a.latitude), math.radians(b.latitude)
    dlat = lat2 - lat1
    dlon = math.radians(b.longitude - a.longitude)
    s = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(s))


@dataclass(frozen=True)
class RouteName:
    """Display names for a route."""

    short_name: str
    long_name: str


UNKNOWN_ROUTE = RouteName(UNKNOWN_ROUTE_SHORT_NAME, UNKNOWN_ROUTE_LONG_NAME)


@dataclass(frozen=True)
class FleetSnapshotEntry:
    """UI-ready view of one vehicle. Timestamps are epoch milliseconds."""

    vehicle_id: str
    display_label: str
    position: Position
    last_seen_at: int
    first_seen_at: int
    route_id: str | None = None
    resolved_route_short_name: str = UNKNOWN_ROUTE_SHORT_NAME
    resolved_route_long_name: str = UNKNOWN_ROUTE_LONG_NAME
    is_stale: bool = False
    pinned: bool = False
    trail: tuple[Position, ...] = ()

    @property
    def trail_distance_m(self) -> float:
        """Distance covered along the trail, in meters."""
        return sum(
            haversine_m(a, b) for a, b in zip(self.trail, self.trail[1:], strict=False)
        )


type FleetSnapshot = Mapping[str, FleetSnapshotEntry]

EMPTY_SNAPSHOT: FleetSnapshot = MappingProxyType({})


@dataclass(frozen=True)
class IngestResult:
    """Outcome of folding one feed into a snapshot."""

    snapshot: FleetSnapshot
    accepted: int = 0
    rejected: Mapping[str, int] = field(default_factory=dict)

    @property
    def rejected_total(self) -> int:
        return sum(self.rejected.values())


def resolve_route(route_id: Any, route_table: Any) -> RouteName:
    """Look up display names for a route.

    Pure: the table is never modified. Unknown, blank or missing ids resolve
    to the "??" / "Route Details Unavailable" sentinel, as do individual
    names the table leaves empty.

    Args:
        route_id: Route identifier, numeric or string.
        route_table: A canonical route table or any raw representation
            accepted by normalize_route_table.

    Returns:
        The route's short and long display names.
    """
    key = normalize_id(route_id)
    if key is None:
        return UNKNOWN_ROUTE

    record = ensure_route_table(route_table).get(key)
    if record is None:
        return UNKNOWN_ROUTE

    return RouteName(
        short_name=record.short_name or UNKNOWN_ROUTE_SHORT_NAME,
        long_name=record.long_name or UNKNOWN_ROUTE_LONG_NAME,
    )


def compute_staleness(
    entry: FleetSnapshotEntry,
    now_ms: int,
    threshold_ms: int = DEFAULT_STALE_THRESHOLD_MS,
) -> bool:
    """Return True if the entry's last report is older than the threshold.

    The boundary is exclusive: exactly ``threshold_ms`` old is still fresh.
    """
    return (now_ms - entry.last_seen_at) > threshold_ms


def classify_display_bucket(entry: FleetSnapshotEntry) -> DisplayBucket:
    """Classify an entry for display. Pinned wins over stale, stale over active."""
    if entry.pinned:
        return DisplayBucket.PINNED
    if entry.is_stale:
        return DisplayBucket.STALE
    return DisplayBucket.ACTIVE


def _report_time_ms(report: VehicleReport, now_ms: int) -> int:
    if report.report_timestamp is None:
        return now_ms
    return int(report.report_timestamp * 1000)


def _upsert(
    existing: FleetSnapshotEntry | None,
    report: VehicleReport,
    route_table: RouteTable,
    now_ms: int,
    trail_cap: int,
) -> FleetSnapshotEntry:
    last_seen_at = _report_time_ms(report, now_ms)
    if existing is not None:
        last_seen_at = max(last_seen_at, existing.last_seen_at)

    route = resolve_route(report.route_id, route_table)
    display_label = report.label or report.vehicle_id

    if existing is None:
        return FleetSnapshotEntry(
            vehicle_id=report.vehicle_id,
            display_label=display_label,
            position=report.position,
            last_seen_at=last_seen_at,
            first_seen_at=now_ms,
            route_id=report.route_id,
            resolved_route_short_name=route.short_name,
            resolved_route_long_name=route.long_name,
            trail=(report.position,),
        )

    return replace(
        existing,
        display_label=display_label,
        position=report.position,
        last_seen_at=last_seen_at,
        route_id=report.route_id,
        resolved_route_short_name=route.short_name,
        resolved_route_long_name=route.long_name,
        trail=(*existing.trail, report.position)[-trail_cap:],
    )


def _with_staleness(
    entry: FleetSnapshotEntry,
    now_ms: int,
    threshold_ms: int,
) -> FleetSnapshotEntry:
    is_stale = compute_staleness(entry, now_ms, threshold_ms)
    if is_stale == entry.is_stale:
        return entry
    return replace(entry, is_stale=is_stale)


def ingest_vehicle_feed(
    raw_feed: Any,
    previous_snapshot: FleetSnapshot | None,
    route_table: Any = None,
    *,
    now_ms: int,
    stale_threshold_ms: int = DEFAULT_STALE_THRESHOLD_MS,
    trail_cap: int = DEFAULT_TRAIL_CAP,
) -> IngestResult:
    """Fold a raw vehicle feed into the previous snapshot.

    Invalid records are skipped and counted. Valid ones are upserted by
    vehicle id in feed order. A report older than the entry it would update
    is rejected as out_of_order, so last_seen_at never moves backwards.
    Vehicles absent from the feed keep their last known state. Staleness is
    recomputed for every entry.

    Args:
        raw_feed: ``{"entity": [...]}`` or a bare list of records.
        previous_snapshot: Snapshot from the previous cycle (not modified).
        route_table: Route table in any supported representation.
        now_ms: Current time in epoch milliseconds.
        stale_threshold_ms: Age after which an entry is stale.
        trail_cap: Maximum number of trail points kept per vehicle.

    Returns:
        IngestResult holding the new snapshot and per-reason reject counts.
    """
    table = ensure_route_table(route_table) if route_table is not None else {}
    cap = max(trail_cap, 1)

    entries: dict[str, FleetSnapshotEntry] = dict(previous_snapshot or {})
    accepted = 0
    rejected: Counter[str] = Counter()

    for raw in extract_vehicle_records(raw_feed):
        result = parse_vehicle_report(raw)
        if isinstance(result, Rejected):
            rejected[result.reason] += 1
            logger.debug("record_rejected", reason=result.reason, vehicle_id=result.record_id)
            continue

        report = result.report
        existing = entries.get(report.vehicle_id)
        if (
            existing is not None
            and report.report_timestamp is not None
            and _report_time_ms(report, now_ms) < existing.last_seen_at
        ):
            rejected["out_of_order"] += 1
            logger.debug(
                "record_rejected",
                reason="out_of_order",
                vehicle_id=report.vehicle_id,
                last_seen_at=existing.last_seen_at,
            )
            continue

        entries[report.vehicle_id] = _upsert(existing, report, table, now_ms, cap)
        accepted += 1

    snapshot = {
        vehicle_id: _with_staleness(entry, now_ms, stale_threshold_ms)
        for vehicle_id, entry in entries.items()
    }
    return IngestResult(
        snapshot=MappingProxyType(snapshot),
        accepted=accepted,
        rejected=dict(rejected),
    )


def refresh_staleness(
    snapshot: FleetSnapshot,
    now_ms: int,
    threshold_ms: int = DEFAULT_STALE_THRESHOLD_MS,
) -> FleetSnapshot:
    """Recompute is_stale for every entry without ingesting a feed.

    Returns the same snapshot object when no entry changed.
    """
    entries = {
        vehicle_id: _with_staleness(entry, now_ms, threshold_ms)
        for vehicle_id, entry in snapshot.items()
    }
    if all(entries[vehicle_id] is entry for vehicle_id, entry in snapshot.items()):
        return snapshot
    return MappingProxyType(entries)


def set_pinned(snapshot: FleetSnapshot, vehicle_id: Any, pinned: bool) -> FleetSnapshot:
    """Return a snapshot with one vehicle's pinned flag changed.

    Raises:
        UnknownVehicleError: If the vehicle is not in the snapshot.
    """
    key = normalize_id(vehicle_id)
    if key is None or key not in snapshot:
        raise UnknownVehicleError(vehicle_id)

    entries = dict(snapshot)
    entries[key] = replace(entries[key], pinned=pinned)
    return MappingProxyType(entries)


class ReconcilerState:
    """Owner of the in-memory fleet snapshot.

    Lifecycle is ``create -> ingest* -> dispose``. Presentation layers only
    ever read ``snapshot``; the pinned flag changes through ``set_pinned``.
    """

    def __init__(
        self,
        stale_threshold_ms: int = DEFAULT_STALE_THRESHOLD_MS,
        trail_cap: int = DEFAULT_TRAIL_CAP,
        clock: Callable[[], int] = current_time_ms,
    ) -> None:
        """Initialize an empty state.

        Args:
            stale_threshold_ms: Age after which an entry is stale.
            trail_cap: Maximum number of trail points kept per vehicle.
            clock: Returns the current time in epoch milliseconds.
        """
        self.stale_threshold_ms = stale_threshold_ms
        self.trail_cap = trail_cap
        self._clock = clock
        self._snapshot: FleetSnapshot = EMPTY_SNAPSHOT
        self._route_table: RouteTable = MappingProxyType({})
        self._last_success_at: int | None = None
        self._disposed = False

    @classmethod
    def from_config(
        cls,
        config: ReconcilerConfig,
        clock: Callable[[], int] = current_time_ms,
    ) -> "ReconcilerState":
        return cls(
            stale_threshold_ms=config.stale_threshold_ms,
            trail_cap=config.trail_cap,
            clock=clock,
        )

    @property
    def snapshot(self) -> FleetSnapshot:
        return self._snapshot

    @property
    def route_table(self) -> RouteTable:
        return self._route_table

    @property
    def has_snapshot(self) -> bool:
        """True once an ingest has succeeded, even if it carried no vehicles."""
        return self._last_success_at is not None

    @property
    def last_success_at(self) -> int | None:
        return self._last_success_at

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def _check_open(self) -> None:
        if self._disposed:
            raise ReconcilerDisposedError("ReconcilerState has been disposed")

    def ingest(
        self,
        raw_feed: Any,
        raw_route_table: Any = None,
        now_ms: int | None = None,
    ) -> IngestResult:
        """Fold one fetched feed/route-table pair into the snapshot.

        Args:
            raw_feed: The vehicle feed payload.
            raw_route_table: The route table payload, or None to reuse the
                previous cycle's table. A payload with no usable routes also
                keeps the previous table.
            now_ms: Override for the current time.

        Returns:
            The IngestResult, whose snapshot is now the current one.

        Raises:
            ReconcilerDisposedError: If the state has been disposed.
        """
        self._check_open()
        now = self._clock() if now_ms is None else now_ms

        if raw_route_table is not None:
            table = ensure_route_table(raw_route_table)
            if table:
                self._route_table = MappingProxyType(dict(table))
            else:
                logger.warning("route_table_empty", routes_retained=len(self._route_table))

        result = ingest_vehicle_feed(
            raw_feed,
            self._snapshot,
            self._route_table,
            now_ms=now,
            stale_threshold_ms=self.stale_threshold_ms,
            trail_cap=self.trail_cap,
        )
        self._snapshot = result.snapshot
        self._last_success_at = now
        return result

    def refresh_staleness(self, now_ms: int | None = None) -> FleetSnapshot:
        """Recompute staleness against the clock without a new feed."""
        self._check_open()
        now = self._clock() if now_ms is None else now_ms
        self._snapshot = refresh_staleness(self._snapshot, now, self.stale_threshold_ms)
        return self._snapshot

    def set_pinned(self, vehicle_id: Any, pinned: bool) -> FleetSnapshotEntry:
        """Flag or unflag a vehicle as pinned (out of service).

        Raises:
            UnknownVehicleError: If the vehicle is not in the snapshot.
            ReconcilerDisposedError: If the state has been disposed.
        """
        self._check_open()
        self._snapshot = set_pinned(self._snapshot, vehicle_id, pinned)
        entry = self._snapshot[normalize_id(vehicle_id)]  # type: ignore[index]
        logger.info("vehicle_pinned" if pinned else "vehicle_unpinned", vehicle_id=entry.vehicle_id)
        return entry

    def bucket_counts(self) -> dict[DisplayBucket, int]:
        """Count entries per display bucket."""
        counts = dict.fromkeys(DisplayBucket, 0)
        for entry in self._snapshot.values():
            counts[classify_display_bucket(entry)] += 1
        return counts

    def dispose(self) -> None:
        """Release the snapshot. Further use raises ReconcilerDisposedError."""
        self._disposed = True
        self._snapshot = EMPTY_SNAPSHOT
        self._route_table = MappingProxyType({})
