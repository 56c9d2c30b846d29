"""Tests for the polling loop."""

import asyncio
from datetime import UTC, datetime
from typing import Any
from unittest.mock import MagicMock, patch

import httpx
import pytest
import respx
from httpx import Response

from fleet_reconciler.fetcher import FetchResult
from fleet_reconciler.models import DisplayBucket, FeedSource, PollerConfig, SourceKind
from fleet_reconciler.poller import FleetPoller, PollOutcome, _poller_registry
from fleet_reconciler.reconciler import UNKNOWN_ROUTE_SHORT_NAME, ReconcilerState

from .factories import BASE_MS, ROUTE_TABLE_URL, VEHICLE_FEED_URL, gtfs_entity


def make_state(now_ms: int = BASE_MS) -> ReconcilerState:
    return ReconcilerState(clock=lambda: now_ms)


def make_result(payload: Any) -> FetchResult:
    return FetchResult(
        payload=payload,
        headers={"content-type": "application/json"},
        status_code=200,
        fetch_timestamp=datetime.now(UTC),
        duration_ms=1.0,
        content_length=2,
    )


class BlockingFetch:
    """Stand-in for fetch_document that waits until released."""

    def __init__(self, feed: Any, routes: Any) -> None:
        self.release = asyncio.Event()
        self.entered = asyncio.Event()
        self.calls = 0
        self._payloads = {SourceKind.VEHICLE_FEED: feed, SourceKind.ROUTE_TABLE: routes}

    async def __call__(self, client: httpx.AsyncClient, source: FeedSource) -> FetchResult:
        self.calls += 1
        self.entered.set()
        await self.release.wait()
        return make_result(self._payloads[source.kind])


class TestPollOnce:
    """Tests for a single fetch-and-reconcile cycle."""

    @respx.mock
    async def test_applied(
        self, poller_config: PollerConfig, route_records: list[dict[str, Any]]
    ) -> None:
        """Test a successful cycle replaces the snapshot."""
        respx.get(VEHICLE_FEED_URL).mock(
            return_value=Response(
                200,
                json={"entity": [gtfs_entity("1", 33.7, -84.3), gtfs_entity("2", 33.8, -84.4)]},
            )
        )
        respx.get(ROUTE_TABLE_URL).mock(return_value=Response(200, json={"routes": route_records}))
        state = make_state()

        async with httpx.AsyncClient() as client:
            poller = FleetPoller(poller_config, state, client)
            outcome = await poller.poll_once()

        assert outcome is PollOutcome.APPLIED
        assert poller.last_outcome is PollOutcome.APPLIED
        assert poller.consecutive_failures == 0
        assert set(state.snapshot) == {"1", "2"}
        assert state.snapshot["1"].resolved_route_long_name == "West End"
        assert state.last_success_at == BASE_MS

    @respx.mock
    async def test_unknown_route_gets_sentinel(self, poller_config: PollerConfig) -> None:
        """Test a route id missing from the table resolves to the sentinel."""
        respx.get(VEHICLE_FEED_URL).mock(
            return_value=Response(200, json=[gtfs_entity("1", 1.0, 2.0, route_id="999")])
        )
        respx.get(ROUTE_TABLE_URL).mock(return_value=Response(200, json=[]))
        state = make_state()

        async with httpx.AsyncClient() as client:
            outcome = await FleetPoller(poller_config, state, client).poll_once()

        assert outcome is PollOutcome.APPLIED
        assert state.snapshot["1"].resolved_route_short_name == UNKNOWN_ROUTE_SHORT_NAME

    @pytest.mark.parametrize("failing_url", [VEHICLE_FEED_URL, ROUTE_TABLE_URL])
    @respx.mock
    async def test_either_failure_keeps_snapshot(
        self,
        poller_config: PollerConfig,
        route_records: list[dict[str, Any]],
        failing_url: str,
    ) -> None:
        """Test that one failing fetch leaves the previous snapshot untouched."""
        state = make_state()
        state.ingest([gtfs_entity("1", 1.0, 2.0)], route_records)
        before = state.snapshot

        responses = {
            VEHICLE_FEED_URL: Response(200, json=[gtfs_entity("2", 3.0, 4.0)]),
            ROUTE_TABLE_URL: Response(200, json=route_records),
        }
        responses[failing_url] = Response(503)
        for url, response in responses.items():
            respx.get(url).mock(return_value=response)

        async with httpx.AsyncClient() as client:
            poller = FleetPoller(poller_config, state, client)
            outcome = await poller.poll_once()

        assert outcome is PollOutcome.FAILED
        assert poller.consecutive_failures == 1
        assert state.snapshot is before

    @respx.mock
    async def test_failed_cycle_still_ages_entries(
        self, poller_config: PollerConfig, route_records: list[dict[str, Any]]
    ) -> None:
        """Test vehicles turn stale during an upstream outage."""
        now = [BASE_MS]
        state = ReconcilerState(clock=lambda: now[0])
        state.ingest([gtfs_entity("1", 1.0, 2.0)], route_records)
        assert state.bucket_counts()[DisplayBucket.ACTIVE] == 1

        respx.get(VEHICLE_FEED_URL).mock(return_value=Response(503))
        respx.get(ROUTE_TABLE_URL).mock(return_value=Response(200, json=route_records))
        now[0] = BASE_MS + 3_600_000

        async with httpx.AsyncClient() as client:
            outcome = await FleetPoller(poller_config, state, client).poll_once()

        assert outcome is PollOutcome.FAILED
        assert state.snapshot["1"].is_stale is True
        assert state.bucket_counts()[DisplayBucket.STALE] == 1

    @respx.mock
    async def test_invalid_payload_fails(self, poller_config: PollerConfig) -> None:
        """Test a non-JSON feed body fails the cycle."""
        respx.get(VEHICLE_FEED_URL).mock(return_value=Response(200, content=b"<html>"))
        respx.get(ROUTE_TABLE_URL).mock(return_value=Response(200, json=[]))
        state = make_state()

        async with httpx.AsyncClient() as client:
            outcome = await FleetPoller(poller_config, state, client).poll_once()

        assert outcome is PollOutcome.FAILED
        assert not state.has_snapshot

    @respx.mock
    async def test_success_resets_failure_count(
        self, poller_config: PollerConfig, route_records: list[dict[str, Any]]
    ) -> None:
        """Test consecutive failures reset after a successful cycle."""
        respx.get(VEHICLE_FEED_URL).mock(
            side_effect=[
                httpx.ConnectError("refused"),
                Response(200, json=[gtfs_entity("1", 1.0, 2.0)]),
            ]
        )
        respx.get(ROUTE_TABLE_URL).mock(return_value=Response(200, json=route_records))
        state = make_state()

        async with httpx.AsyncClient() as client:
            poller = FleetPoller(poller_config, state, client)
            assert await poller.poll_once() is PollOutcome.FAILED
            assert poller.consecutive_failures == 1
            assert await poller.poll_once() is PollOutcome.APPLIED

        assert poller.consecutive_failures == 0

    async def test_fetches_run_concurrently(
        self, poller_config: PollerConfig, route_records: list[dict[str, Any]]
    ) -> None:
        """Test both documents are requested before either completes."""
        fake = BlockingFetch([gtfs_entity("1", 1.0, 2.0)], route_records)
        state = make_state()

        with patch("fleet_reconciler.poller.fetch_document", fake):
            async with httpx.AsyncClient() as client:
                poller = FleetPoller(poller_config, state, client)
                task = asyncio.create_task(poller.poll_once())
                await fake.entered.wait()
                await asyncio.sleep(0)

                assert fake.calls == 2
                assert poller.in_flight

                fake.release.set()
                outcome = await task

        assert outcome is PollOutcome.APPLIED
        assert state.snapshot["1"].resolved_route_long_name == "West End"

    async def test_overlapping_cycle_is_skipped(
        self, poller_config: PollerConfig, route_records: list[dict[str, Any]]
    ) -> None:
        """Test a tick arriving mid-cycle is skipped rather than queued."""
        fake = BlockingFetch([gtfs_entity("1", 1.0, 2.0)], route_records)
        state = make_state()

        with patch("fleet_reconciler.poller.fetch_document", fake):
            async with httpx.AsyncClient() as client:
                poller = FleetPoller(poller_config, state, client)
                first = asyncio.create_task(poller.poll_once())
                await fake.entered.wait()

                second = await poller.poll_once()

                fake.release.set()
                first_outcome = await first

        assert second is PollOutcome.SKIPPED
        assert first_outcome is PollOutcome.APPLIED
        assert fake.calls == 2

    async def test_in_flight_result_discarded_after_stop(
        self, poller_config: PollerConfig, route_records: list[dict[str, Any]]
    ) -> None:
        """Test a cycle completing after stop() does not touch the state."""
        fake = BlockingFetch([gtfs_entity("1", 1.0, 2.0)], route_records)
        state = make_state()

        with patch("fleet_reconciler.poller.fetch_document", fake):
            async with httpx.AsyncClient() as client:
                poller = FleetPoller(poller_config, state, client)
                task = asyncio.create_task(poller.poll_once())
                await fake.entered.wait()

                await poller.stop()
                fake.release.set()
                outcome = await task

        assert outcome is PollOutcome.DISCARDED
        assert not state.has_snapshot
        assert len(state.snapshot) == 0

    async def test_in_flight_result_discarded_after_dispose(
        self, poller_config: PollerConfig, route_records: list[dict[str, Any]]
    ) -> None:
        """Test a cycle completing after the state is disposed is discarded."""
        fake = BlockingFetch([gtfs_entity("1", 1.0, 2.0)], route_records)
        state = make_state()

        with patch("fleet_reconciler.poller.fetch_document", fake):
            async with httpx.AsyncClient() as client:
                poller = FleetPoller(poller_config, state, client)
                task = asyncio.create_task(poller.poll_once())
                await fake.entered.wait()

                state.dispose()
                fake.release.set()
                outcome = await task

        assert outcome is PollOutcome.DISCARDED

    async def test_poll_after_stop_is_discarded(self, poller_config: PollerConfig) -> None:
        """Test poll_once after stop() does nothing."""
        fake = BlockingFetch([], [])
        state = make_state()

        with patch("fleet_reconciler.poller.fetch_document", fake):
            async with httpx.AsyncClient() as client:
                poller = FleetPoller(poller_config, state, client)
                await poller.stop()
                outcome = await poller.poll_once()

        assert outcome is PollOutcome.DISCARDED
        assert fake.calls == 0

    async def test_reconcile_error_fails_cycle(
        self, poller_config: PollerConfig, route_records: list[dict[str, Any]]
    ) -> None:
        """Test an exception while reconciling fails the cycle without raising."""
        fake = BlockingFetch([gtfs_entity("1", 1.0, 2.0)], route_records)
        fake.release.set()
        state = make_state()

        with (
            patch("fleet_reconciler.poller.fetch_document", fake),
            patch.object(state, "ingest", side_effect=RuntimeError("boom")),
        ):
            async with httpx.AsyncClient() as client:
                poller = FleetPoller(poller_config, state, client)
                outcome = await poller.poll_once()

        assert outcome is PollOutcome.FAILED
        assert poller.consecutive_failures == 1

    async def test_stale_counts_after_quiet_vehicle(
        self, poller_config: PollerConfig, route_records: list[dict[str, Any]]
    ) -> None:
        """Test a vehicle absent from later feeds ages into the stale bucket."""
        now = [BASE_MS]
        state = ReconcilerState(stale_threshold_ms=60_000, clock=lambda: now[0])
        feeds = [
            [gtfs_entity("1", 1.0, 2.0), gtfs_entity("2", 1.0, 2.0)],
            [gtfs_entity("2", 1.1, 2.1, timestamp=None)],
        ]

        async def fake_fetch(client: httpx.AsyncClient, source: FeedSource) -> FetchResult:
            if source.kind is SourceKind.VEHICLE_FEED:
                return make_result(feeds.pop(0))
            return make_result(route_records)

        with patch("fleet_reconciler.poller.fetch_document", fake_fetch):
            async with httpx.AsyncClient() as client:
                poller = FleetPoller(poller_config, state, client)
                await poller.poll_once()
                now[0] = BASE_MS + 120_000
                await poller.poll_once()

        counts = state.bucket_counts()
        assert counts[DisplayBucket.STALE] == 1
        assert counts[DisplayBucket.ACTIVE] == 1
        assert len(state.snapshot["2"].trail) == 2


class TestFleetPollerLifecycle:
    """Tests for scheduler start/stop."""

    def test_initialization(self, poller_config: PollerConfig) -> None:
        poller = FleetPoller(poller_config, make_state(), MagicMock())

        assert poller.is_running is False
        assert poller.is_closed is False
        assert poller.in_flight is False
        assert poller.interval_seconds == 10
        assert poller.last_outcome is None

    async def test_start_and_stop(self, poller_config: PollerConfig) -> None:
        """Test poller start and stop lifecycle."""
        fake = BlockingFetch([], [])
        fake.release.set()

        with patch("fleet_reconciler.poller.fetch_document", fake):
            async with httpx.AsyncClient() as client:
                poller = FleetPoller(poller_config, make_state(), client)

                await poller.start()
                assert poller.is_running is True
                assert _poller_registry.get(poller._id) is poller

                await poller.stop(wait=True)

        assert poller.is_running is False
        assert poller.is_closed is True
        assert poller._id not in _poller_registry

    async def test_stop_without_start(self, poller_config: PollerConfig) -> None:
        """Test that stop() is safe to call without start()."""
        async with httpx.AsyncClient() as client:
            poller = FleetPoller(poller_config, make_state(), client)
            await poller.stop()

        assert poller.is_closed is True

    async def test_restart_after_stop_raises(self, poller_config: PollerConfig) -> None:
        """Test that a stopped poller cannot be started again."""
        async with httpx.AsyncClient() as client:
            poller = FleetPoller(poller_config, make_state(), client)
            await poller.stop()

            with pytest.raises(RuntimeError, match="cannot be restarted"):
                await poller.start()
