import argparse
import signal
import sys
import threading

import uvicorn
from loguru import logger
from sqlalchemy import text

from app.core.config import Settings, get_settings
from app.db import session_scope
from app.main import create_app
from pipelines.context import OrchestratorContext, build_context
from pipelines.market_monitor import MarketStateMonitor
from pipelines.service import PeriodicService
from pipelines.vote_aggregation import VoteAggregationEngine


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the vote aggregator and market monitor")
    parser.add_argument("--once", action="store_true", help="Run each service once and exit")
    parser.add_argument(
        "--validate",
        action="store_true",
        help="Check store, RPC, and backend authority, then exit",
    )
    parser.add_argument("--dry-run", action="store_true", help="Never send transactions")
    parser.add_argument("--no-api", action="store_true", help="Do not serve /healthz and /status")
    return parser.parse_args()


def configure_logging(settings: Settings) -> None:
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level, enqueue=True, backtrace=False)


def validate_environment(context: OrchestratorContext) -> bool:
    ok = True
    try:
        with session_scope(context.session_factory) as session:
            session.execute(text("SELECT 1"))
        logger.info("Store reachable")
    except Exception as exc:  # noqa: BLE001 - reported as a failed check
        logger.error("Store check failed: {}", exc)
        ok = False

    try:
        slot = context.chain.get_slot()
        logger.info("RPC reachable at slot {}", slot)
    except Exception as exc:  # noqa: BLE001 - reported as a failed check
        logger.error("RPC check failed: {}", exc)
        return False

    try:
        if not context.submitter.validate_authority() and not context.settings.dry_run:
            ok = False
    except Exception as exc:  # noqa: BLE001 - reported as a failed check
        logger.error("Backend authority check failed: {}", exc)
        ok = False
    return ok


def build_services(context: OrchestratorContext) -> list[PeriodicService]:
    settings = context.settings
    aggregator = VoteAggregationEngine(
        settings,
        session_factory=context.session_factory,
        submitter=context.submitter,
        broadcaster=context.broadcaster,
        locks=context.locks,
        policy=context.policy,
    )
    monitor = MarketStateMonitor(
        settings,
        session_factory=context.session_factory,
        submitter=context.submitter,
        broadcaster=context.broadcaster,
        locks=context.locks,
    )
    return [
        PeriodicService(aggregator, interval_ms=settings.poll_interval_ms),
        PeriodicService(monitor, interval_ms=settings.monitor_poll_interval_ms),
    ]


def _start_status_api(context: OrchestratorContext, services: list[PeriodicService]) -> uvicorn.Server | None:
    port = context.settings.status_api_port
    if port is None:
        return None
    app = create_app(services, session_factory=context.session_factory, debug=context.settings.debug)
    server = uvicorn.Server(uvicorn.Config(app, host="0.0.0.0", port=port, log_level="warning"))
    thread = threading.Thread(target=server.run, name="status-api", daemon=True)
    thread.start()
    logger.info("Status API listening on port {}", port)
    return server


def main() -> int:
    args = parse_args()
    settings = get_settings()
    if args.dry_run:
        settings = settings.model_copy(update={"dry_run": True})
    configure_logging(settings)

    context = build_context(settings)
    try:
        if not validate_environment(context):
            logger.error("Environment validation failed")
            return 1
        if args.validate:
            logger.info("Environment validation passed")
            return 0

        services = build_services(context)
        if args.once:
            for service in services:
                service.run_once()
            failed = any(service.state().error_count for service in services)
            return 1 if failed else 0

        shutdown = threading.Event()

        def _request_shutdown(signum, _frame) -> None:
            logger.info("Received signal {}; shutting down", signal.Signals(signum).name)
            shutdown.set()

        signal.signal(signal.SIGINT, _request_shutdown)
        signal.signal(signal.SIGTERM, _request_shutdown)

        server = None if args.no_api else _start_status_api(context, services)
        for service in services:
            service.start()

        shutdown.wait()

        clean = True
        for service in services:
            clean = service.stop(timeout=settings.shutdown_timeout_seconds) and clean
        if server is not None:
            server.should_exit = True
        if not clean:
            logger.warning("Exiting with runs still in flight")
        return 0
    finally:
        context.close()


if __name__ == "__main__":
    sys.exit(main())
