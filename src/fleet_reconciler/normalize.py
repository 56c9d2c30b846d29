"""Boundary adapters for upstream payloads.

The vehicle feed and route table come from uncontrolled third-party
producers. Every "accept either shape" branch lives here so the reconciler
only ever sees canonical records.
"""

import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

# Producer timestamps above this are taken to be milliseconds, not seconds.
_MILLISECOND_TIMESTAMP_FLOOR = 100_000_000_000


@dataclass(frozen=True)
class Position:
    """A WGS84 coordinate."""

    latitude: float
    longitude: float


@dataclass(frozen=True)
class VehicleReport:
    """One validated live-position report."""

    vehicle_id: str
    position: Position
    label: str | None = None
    route_id: str | None = None
    report_timestamp: float | None = None


@dataclass(frozen=True)
class RouteRecord:
    """One row of the route reference table."""

    route_id: str
    short_name: str | None = None
    long_name: str | None = None


@dataclass(frozen=True)
class Valid:
    """A record that passed validation."""

    report: VehicleReport


@dataclass(frozen=True)
class Rejected:
    """A record that failed validation, with a metrics-friendly reason."""

    reason: str
    record_id: str | None = None


type ValidationResult = Valid | Rejected
type RouteTable = Mapping[str, RouteRecord]


def safe_float(value: Any) -> float | None:
    """Parse a float, returning None for blanks, garbage, NaN and infinities."""
    if value is None or isinstance(value, bool) or value == "":
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(result):
        return None
    return result


def safe_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def normalize_id(value: Any) -> str | None:
    """Normalise a join key so numeric and string encodings compare equal.

    ``10``, ``10.0``, ``"10"`` and ``" 10 "`` all become ``"10"``.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return str(int(value)) if value.is_integer() else str(value)
    if isinstance(value, str):
        return value.strip() or None
    return None


def _first_present(mapping: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value is not None:
            return value
    return None


def _as_mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def extract_vehicle_records(payload: Any) -> list[Any]:
    """Unwrap a vehicle feed into its list of raw records.

    Accepts ``{"entity": [...]}`` or a bare list. Anything else yields an
    empty list.
    """
    if isinstance(payload, list):
        return payload
    if isinstance(payload, Mapping):
        entities = payload.get("entity")
        if isinstance(entities, list):
            return entities
    return []


def parse_report_timestamp(value: Any) -> float | None:
    """Parse a producer timestamp into epoch seconds.

    Raises:
        ValueError: If the value is present but not a usable timestamp.
    """
    if value is None:
        return None
    seconds = safe_float(value)
    if seconds is None or seconds < 0:
        raise ValueError(f"unparseable timestamp: {value!r}")
    if seconds >= _MILLISECOND_TIMESTAMP_FLOOR:
        seconds /= 1000.0
    return seconds


def _parse_position(raw: Any) -> Position | str:
    """Return a Position, or a rejection reason."""
    if not isinstance(raw, Mapping):
        return "missing_position"

    raw_lat = _first_present(raw, "latitude", "lat")
    raw_lon = _first_present(raw, "longitude", "lon", "lng")
    if raw_lat is None or raw_lon is None:
        return "missing_position"

    lat = safe_float(raw_lat)
    lon = safe_float(raw_lon)
    if lat is None or lon is None:
        return "invalid_position"
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        return "invalid_position"
    return Position(latitude=lat, longitude=lon)


def _is_gtfs_entity(raw: Mapping[str, Any]) -> bool:
    # In a GTFS-RT entity, "vehicle" is the VehiclePosition message; in a
    # flat record it would be the bare descriptor.
    inner = raw.get("vehicle")
    return isinstance(inner, Mapping) and any(
        key in inner for key in ("position", "trip", "timestamp")
    )


def parse_vehicle_report(raw: Any) -> ValidationResult:
    """Validate one raw feed record.

    Handles GTFS-Realtime JSON entities as well as flat records using either
    camelCase or snake_case keys.

    Args:
        raw: One element of the feed's record list.

    Returns:
        Valid with the canonical report, or Rejected with a reason.
    """
    if not isinstance(raw, Mapping):
        return Rejected("not_a_mapping")

    body = raw["vehicle"] if _is_gtfs_entity(raw) else raw
    descriptor = _as_mapping(body.get("vehicle"))

    vehicle_id = normalize_id(descriptor.get("id"))
    if vehicle_id is None:
        vehicle_id = normalize_id(_first_present(body, "vehicleId", "vehicle_id", "id"))
    if vehicle_id is None:
        # GTFS entity id as a last resort
        vehicle_id = normalize_id(raw.get("id"))
    if vehicle_id is None:
        return Rejected("missing_vehicle_id")

    position = _parse_position(body.get("position"))
    if isinstance(position, str):
        return Rejected(position, record_id=vehicle_id)

    try:
        timestamp = parse_report_timestamp(
            _first_present(body, "reportTimestamp", "report_timestamp", "timestamp")
        )
    except ValueError:
        return Rejected("invalid_timestamp", record_id=vehicle_id)

    trip = _as_mapping(body.get("trip"))
    route_id = normalize_id(
        _first_present(trip, "route_id", "routeId")
        if trip
        else _first_present(body, "routeId", "route_id")
    )

    label = safe_str(descriptor.get("label")) or safe_str(body.get("label"))

    return Valid(
        VehicleReport(
            vehicle_id=vehicle_id,
            position=position,
            label=label,
            route_id=route_id,
            report_timestamp=timestamp,
        )
    )


def _parse_route_record(raw: Mapping[str, Any], fallback_id: Any = None) -> RouteRecord | None:
    route_id = normalize_id(_first_present(raw, "route_id", "routeId", "id"))
    if route_id is None:
        route_id = normalize_id(fallback_id)
    if route_id is None:
        return None
    return RouteRecord(
        route_id=route_id,
        short_name=safe_str(_first_present(raw, "route_short_name", "shortName", "short_name")),
        long_name=safe_str(_first_present(raw, "route_long_name", "longName", "long_name")),
    )


def normalize_route_table(payload: Any) -> dict[str, RouteRecord]:
    """Convert any supported route table representation to the canonical one.

    Supported inputs:
    - a list of route records,
    - ``{"routes": [...]}``,
    - a flat ``{route_id: display_string}`` mapping, where the id doubles as
      the short name and the string is the long name.

    Records without a usable id are dropped. Later duplicates win. An
    ``{"error": ...}`` body without ``routes`` is an upstream failure, not a
    table, and yields nothing.
    """
    if isinstance(payload, Mapping):
        if isinstance(payload.get("routes"), list):
            payload = payload["routes"]
        elif "error" in payload:
            return {}

    table: dict[str, RouteRecord] = {}

    if isinstance(payload, list):
        for item in payload:
            if not isinstance(item, Mapping):
                continue
            record = _parse_route_record(item)
            if record is not None:
                table[record.route_id] = record
        return table

    if isinstance(payload, Mapping):
        for key, value in payload.items():
            if isinstance(value, RouteRecord):
                table[value.route_id] = value
                continue
            if isinstance(value, Mapping):
                record = _parse_route_record(value, fallback_id=key)
            else:
                route_id = normalize_id(key)
                record = (
                    RouteRecord(route_id=route_id, short_name=route_id, long_name=safe_str(value))
                    if route_id is not None
                    else None
                )
            if record is not None:
                table[record.route_id] = record

    return table


def ensure_route_table(payload: Any) -> RouteTable:
    """Return payload unchanged if already canonical, else normalise it."""
    if isinstance(payload, Mapping) and all(
        isinstance(value, RouteRecord) for value in payload.values()
    ):
        return payload
    return normalize_route_table(payload)
