"""Main entry point for Fleet Reconciler."""

import asyncio
import signal

from fleet_reconciler.config import Settings, build_poller_config, load_fleet_file
from fleet_reconciler.fetcher import create_http_client
from fleet_reconciler.logging import configure_logging, get_logger
from fleet_reconciler.poller import FleetPoller
from fleet_reconciler.reconciler import ReconcilerState
from fleet_reconciler.server import FleetServer


async def run() -> None:
    """Run the Fleet Reconciler service."""
    settings = Settings()

    configure_logging(settings.log_level, settings.log_format)
    logger = get_logger(__name__)

    logger.info(
        "starting",
        config_path=str(settings.config_path),
        health_port=settings.health_port,
    )

    fleet_config = load_fleet_file(settings.config_path)
    poller_config = build_poller_config(fleet_config)

    logger.info(
        "loaded_config",
        vehicle_feed=str(poller_config.vehicle_feed.url),
        route_table=str(poller_config.route_table.url),
        poll_interval_seconds=poller_config.poll_interval_seconds,
        stale_threshold_ms=poller_config.reconciler.stale_threshold_ms,
        trail_cap=poller_config.reconciler.trail_cap,
    )

    state = ReconcilerState.from_config(poller_config.reconciler)
    http_client = create_http_client(settings.max_connections)
    poller = FleetPoller(config=poller_config, state=state, http_client=http_client)
    server = FleetServer(state=state, port=settings.health_port, poller=poller)

    shutdown_event = asyncio.Event()

    def handle_shutdown(signum: int, _frame: object) -> None:
        logger.info("shutdown_signal_received", signal=signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    try:
        await server.start()
        logger.info("server_started", port=settings.health_port)

        await poller.start()
        logger.info("poller_started", interval_seconds=poller.interval_seconds)

        await shutdown_event.wait()

    finally:
        logger.info("shutting_down")

        await poller.stop(wait=True)
        logger.info("poller_stopped")

        await server.stop()
        logger.info("server_stopped")

        state.dispose()
        await http_client.aclose()

        logger.info("shutdown_complete")


def main() -> None:
    """Entry point for the Fleet Reconciler."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
