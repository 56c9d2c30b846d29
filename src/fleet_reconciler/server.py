"""Health, metrics and read-only fleet API server."""

import json
import time
from typing import Any

from aiohttp import web
from prometheus_client import REGISTRY
from prometheus_client.openmetrics.exposition import (
    CONTENT_TYPE_LATEST,
    generate_latest,
)

from fleet_reconciler.logging import get_logger
from fleet_reconciler.metrics import set_bucket_counts
from fleet_reconciler.models import DisplayBucket
from fleet_reconciler.poller import FleetPoller, PollOutcome
from fleet_reconciler.reconciler import (
    FleetSnapshotEntry,
    ReconcilerState,
    UnknownVehicleError,
    classify_display_bucket,
)

logger = get_logger(__name__)


def serialize_entry(entry: FleetSnapshotEntry) -> dict[str, Any]:
    """Render a snapshot entry as the JSON document served to views."""
    return {
        "vehicle_id": entry.vehicle_id,
        "display_label": entry.display_label,
        "route_id": entry.route_id,
        "route_short_name": entry.resolved_route_short_name,
        "route_long_name": entry.resolved_route_long_name,
        "position": {
            "latitude": entry.position.latitude,
            "longitude": entry.position.longitude,
        },
        "last_seen_at": entry.last_seen_at,
        "first_seen_at": entry.first_seen_at,
        "is_stale": entry.is_stale,
        "pinned": entry.pinned,
        "bucket": classify_display_bucket(entry).value,
        "trail": [[point.latitude, point.longitude] for point in entry.trail],
        "trail_distance_m": round(entry.trail_distance_m, 1),
    }


def _json_error(status: int, **body: Any) -> web.Response:
    return web.Response(
        text=json.dumps(body),
        status=status,
        content_type="application/json",
    )


class FleetServer:
    """HTTP server for health checks, Prometheus metrics and the fleet view."""

    def __init__(
        self,
        state: ReconcilerState,
        port: int = 8080,
        poller: FleetPoller | None = None,
    ) -> None:
        """Initialize the server.

        Args:
            state: Reconciler state to serve.
            port: Port to listen on.
            poller: Optional poller for status reporting and manual refresh.
        """
        self.state = state
        self.port = port
        self.poller = poller
        self._start_time = time.time()
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def _get_health_status(self) -> dict[str, object]:
        uptime = time.time() - self._start_time

        status: dict[str, object] = {
            "status": "healthy",
            "uptime_seconds": round(uptime, 2),
        }

        if not self.state.is_disposed:
            self.state.refresh_staleness()
            counts = self.state.bucket_counts()
            status["fleet"] = {
                "vehicles": len(self.state.snapshot),
                **{bucket.value: count for bucket, count in counts.items()},
                "routes": len(self.state.route_table),
                "last_success_at": self.state.last_success_at,
            }

        if self.poller is not None:
            last_outcome = self.poller.last_outcome
            status["poller"] = {
                "running": self.poller.is_running,
                "interval_seconds": self.poller.interval_seconds,
                "in_flight": self.poller.in_flight,
                "consecutive_failures": self.poller.consecutive_failures,
                "last_outcome": last_outcome.value if last_outcome else None,
            }

        return status

    async def _handle_health(self, _request: web.Request) -> web.Response:
        """Handle /health endpoint."""
        return web.json_response(self._get_health_status())

    async def _handle_ready(self, _request: web.Request) -> web.Response:
        """Handle /ready endpoint.

        Not ready until the first snapshot exists; views show a loading
        placeholder until then.
        """
        if self.state.is_disposed or not self.state.has_snapshot:
            return _json_error(503, status="loading", reason="no_snapshot_yet")

        if self.poller is not None and not self.poller.is_running:
            return _json_error(503, status="not_ready", reason="poller_not_running")

        return web.json_response({"status": "ready"})

    async def _handle_metrics(self, _request: web.Request) -> web.Response:
        """Handle /metrics endpoint for Prometheus scraping."""
        if not self.state.is_disposed:
            self.state.refresh_staleness()
            set_bucket_counts(self.state.bucket_counts())
        metrics = generate_latest(REGISTRY)  # type: ignore[no-untyped-call]
        content_type = CONTENT_TYPE_LATEST.split(";")[0]
        return web.Response(
            body=metrics,
            content_type=content_type,
            charset="utf-8",
        )

    async def _handle_fleet(self, request: web.Request) -> web.Response:
        """Handle GET /fleet, optionally filtered by ``?bucket=``."""
        if self.state.is_disposed:
            return _json_error(503, error="state disposed")

        bucket_param = request.query.get("bucket")
        bucket: DisplayBucket | None = None
        if bucket_param is not None:
            try:
                bucket = DisplayBucket(bucket_param.lower())
            except ValueError:
                return _json_error(
                    400,
                    error=f"unknown bucket {bucket_param!r}",
                    buckets=[b.value for b in DisplayBucket],
                )

        snapshot = self.state.refresh_staleness()
        entries = [
            serialize_entry(entry)
            for entry in sorted(snapshot.values(), key=lambda e: e.display_label)
            if bucket is None or classify_display_bucket(entry) is bucket
        ]
        return web.json_response(entries)

    async def _handle_vehicle(self, request: web.Request) -> web.Response:
        """Handle GET /fleet/{vehicle_id}."""
        if self.state.is_disposed:
            return _json_error(503, error="state disposed")

        vehicle_id = request.match_info["vehicle_id"]
        entry = self.state.refresh_staleness().get(vehicle_id.strip())
        if entry is None:
            return _json_error(404, error=f"unknown vehicle {vehicle_id!r}")
        return web.json_response(serialize_entry(entry))

    async def _set_pinned(self, request: web.Request, pinned: bool) -> web.Response:
        if self.state.is_disposed:
            return _json_error(503, error="state disposed")

        vehicle_id = request.match_info["vehicle_id"]
        self.state.refresh_staleness()
        try:
            entry = self.state.set_pinned(vehicle_id, pinned)
        except UnknownVehicleError:
            return _json_error(404, error=f"unknown vehicle {vehicle_id!r}")
        return web.json_response(serialize_entry(entry))

    async def _handle_pin(self, request: web.Request) -> web.Response:
        """Handle PUT /fleet/{vehicle_id}/pin."""
        return await self._set_pinned(request, True)

    async def _handle_unpin(self, request: web.Request) -> web.Response:
        """Handle DELETE /fleet/{vehicle_id}/pin."""
        return await self._set_pinned(request, False)

    async def _handle_refresh(self, _request: web.Request) -> web.Response:
        """Handle POST /fleet/refresh by running a poll cycle now."""
        if self.poller is None:
            return _json_error(503, error="no poller")

        outcome = await self.poller.poll_once(trigger="manual")
        logger.info("manual_refresh", outcome=outcome.value)
        return web.json_response(
            {"outcome": outcome.value, "applied": outcome is PollOutcome.APPLIED},
            status=202,
        )

    def build_app(self) -> web.Application:
        """Create the aiohttp application with all routes registered."""
        app = web.Application()
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/ready", self._handle_ready)
        app.router.add_get("/metrics", self._handle_metrics)
        app.router.add_get("/fleet", self._handle_fleet)
        app.router.add_post("/fleet/refresh", self._handle_refresh)
        app.router.add_get("/fleet/{vehicle_id}", self._handle_vehicle)
        app.router.add_put("/fleet/{vehicle_id}/pin", self._handle_pin)
        app.router.add_delete("/fleet/{vehicle_id}/pin", self._handle_unpin)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, "0.0.0.0", self.port)
        await self._site.start()

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            self._app = None
            self._site = None
