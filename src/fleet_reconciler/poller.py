"""APScheduler-driven fetch-and-reconcile loop."""

import asyncio
import time
import uuid
from datetime import UTC, datetime
from enum import Enum

import httpx
from apscheduler import AsyncScheduler, CoalescePolicy
from apscheduler.triggers.interval import IntervalTrigger

from fleet_reconciler.fetcher import (
    FetchResult,
    InvalidPayloadError,
    NonRetryableError,
    fetch_document,
)
from fleet_reconciler.logging import get_logger, poll_context
from fleet_reconciler.metrics import (
    record_fetch_error,
    record_fetch_success,
    record_poll_attempt,
    record_poll_discarded,
    record_poll_skipped,
    record_poll_success,
)
from fleet_reconciler.models import DisplayBucket, FeedSource, PollerConfig
from fleet_reconciler.reconciler import ReconcilerState

logger = get_logger(__name__)

# APScheduler v4 cannot serialize bound methods or closures, so scheduled
# jobs go through a module-level function that looks the poller up here.
_poller_registry: dict[str, "FleetPoller"] = {}


async def _execute_scheduled_poll(poller_id: str) -> None:
    """Module-level function for APScheduler to call.

    Args:
        poller_id: Unique ID of the poller instance.
    """
    poller = _poller_registry.get(poller_id)
    if poller:
        await poller.poll_once(trigger="scheduled")


class PollOutcome(str, Enum):
    """What happened to one poll cycle."""

    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"
    DISCARDED = "discarded"


class FleetPoller:
    """Periodically fetches both documents and folds them into the state.

    Cycles never overlap: a tick that arrives while a cycle is in flight is
    skipped. After ``stop()`` any cycle still in flight is discarded instead
    of being applied.
    """

    def __init__(
        self,
        config: PollerConfig,
        state: ReconcilerState,
        http_client: httpx.AsyncClient,
        misfire_grace_time: float = 5.0,
    ) -> None:
        """Initialize the poller.

        Args:
            config: Resolved sources and poll interval.
            state: The reconciler state this poller feeds.
            http_client: Async HTTP client shared by both fetches.
            misfire_grace_time: Seconds after scheduled time to still run a tick.
        """
        self._id = str(uuid.uuid4())
        self._config = config
        self._state = state
        self._http_client = http_client
        self._misfire_grace_time = misfire_grace_time
        self._scheduler: AsyncScheduler | None = None
        self._lock = asyncio.Lock()
        self._closed = False
        self._consecutive_failures = 0
        self._cycles = 0
        self._last_outcome: PollOutcome | None = None

    @property
    def state(self) -> ReconcilerState:
        return self._state

    @property
    def interval_seconds(self) -> int:
        return self._config.poll_interval_seconds

    @property
    def is_running(self) -> bool:
        """Check if the scheduler is running."""
        return self._scheduler is not None and self._scheduler.state.name == "started"

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def last_outcome(self) -> PollOutcome | None:
        return self._last_outcome

    async def start(self) -> None:
        """Start the scheduler. The first tick fires immediately."""
        if self._closed:
            raise RuntimeError("FleetPoller cannot be restarted after stop()")

        _poller_registry[self._id] = self

        # APScheduler v4 requires the context manager protocol
        self._scheduler = AsyncScheduler()
        await self._scheduler.__aenter__()

        trigger = IntervalTrigger(
            seconds=self._config.poll_interval_seconds,
            start_time=datetime.now(UTC),
        )
        await self._scheduler.add_schedule(
            _execute_scheduled_poll,
            trigger=trigger,
            id=f"fleet-poll-{self._id}",
            kwargs={"poller_id": self._id},
            misfire_grace_time=self._misfire_grace_time,
            coalesce=CoalescePolicy.latest,  # Skip missed, run latest only
        )

        await self._scheduler.start_in_background()

    async def stop(self, wait: bool = True) -> None:
        """Stop polling. Results of a cycle still in flight are discarded.

        Args:
            wait: If True, wait for the scheduler to finish stopping.
        """
        self._closed = True

        if self._scheduler is not None:
            await self._scheduler.stop()
            if wait:
                await self._scheduler.wait_until_stopped()
            await self._scheduler.__aexit__(None, None, None)
            self._scheduler = None

        _poller_registry.pop(self._id, None)

    async def poll_once(self, trigger: str = "manual") -> PollOutcome:
        """Run one fetch-and-reconcile cycle.

        Used by scheduled ticks and manual refreshes alike. Never raises for
        fetch or payload problems; the previous snapshot is kept instead.

        Args:
            trigger: What started the cycle, for log context.

        Returns:
            The outcome of the cycle.
        """
        if self._closed:
            return self._finish(PollOutcome.DISCARDED)

        if self._lock.locked():
            record_poll_skipped()
            logger.info("poll_skipped", reason="cycle_in_flight", trigger=trigger)
            return PollOutcome.SKIPPED

        async with self._lock:
            self._cycles += 1
            with poll_context(self._cycles, trigger):
                return await self._run_cycle()

    async def _run_cycle(self) -> PollOutcome:
        record_poll_attempt()
        started = time.perf_counter()

        feed, routes = await asyncio.gather(
            self._fetch(self._config.vehicle_feed),
            self._fetch(self._config.route_table),
        )

        if self._closed or self._state.is_disposed:
            record_poll_discarded()
            logger.info("poll_discarded", reason="poller_stopped")
            return self._finish(PollOutcome.DISCARDED)

        if feed is None or routes is None:
            self._consecutive_failures += 1
            # Entries keep ageing while the upstream is down
            self._state.refresh_staleness()
            logger.warning(
                "poll_failed",
                consecutive_failures=self._consecutive_failures,
                vehicles_retained=len(self._state.snapshot),
            )
            return self._finish(PollOutcome.FAILED)

        try:
            result = self._state.ingest(feed.payload, routes.payload)
        except Exception as e:
            self._consecutive_failures += 1
            logger.exception(
                "reconcile_error",
                error_type=type(e).__name__,
                error_message=str(e),
            )
            return self._finish(PollOutcome.FAILED)

        duration = time.perf_counter() - started
        self._consecutive_failures = 0
        bucket_counts = self._state.bucket_counts()
        record_poll_success(
            duration,
            result.accepted,
            result.rejected,
            bucket_counts,
            len(self._state.route_table),
        )
        logger.info(
            "poll_success",
            accepted=result.accepted,
            rejected=result.rejected_total,
            vehicles=len(result.snapshot),
            stale=bucket_counts[DisplayBucket.STALE],
            routes=len(self._state.route_table),
            duration_ms=round(duration * 1000, 1),
        )
        return self._finish(PollOutcome.APPLIED)

    def _finish(self, outcome: PollOutcome) -> PollOutcome:
        self._last_outcome = outcome
        return outcome

    async def _fetch(self, source: FeedSource) -> FetchResult | None:
        """Fetch one document, logging and counting any failure."""
        kind = source.kind.value
        try:
            result = await fetch_document(self._http_client, source)

        except NonRetryableError as e:
            record_fetch_error(kind, f"http_{e.status_code}")
            logger.warning("fetch_non_retryable", source=kind, status_code=e.status_code)

        except InvalidPayloadError as e:
            record_fetch_error(kind, "invalid_payload")
            logger.error("fetch_invalid_payload", source=kind, error_message=str(e))

        except httpx.TimeoutException:
            record_fetch_error(kind, "timeout")
            logger.error("fetch_timeout", source=kind)

        except httpx.TransportError as e:
            record_fetch_error(kind, "transport")
            logger.error(
                "fetch_transport_error",
                source=kind,
                error_type=type(e).__name__,
                error_message=str(e),
            )

        except httpx.HTTPStatusError as e:
            record_fetch_error(kind, f"http_{e.response.status_code}")
            logger.error("fetch_http_error", source=kind, status_code=e.response.status_code)

        except Exception as e:
            record_fetch_error(kind, "unknown")
            logger.exception(
                "fetch_unknown_error",
                source=kind,
                error_type=type(e).__name__,
                error_message=str(e),
            )

        else:
            record_fetch_success(kind, result.duration_ms / 1000.0)
            logger.debug("fetch_success", source=kind, duration_ms=result.duration_ms)
            return result

        return None
