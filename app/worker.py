# app/worker.py
"""
Headless scheduler process.

    python -m app.worker

Runs the dispatch and retention timers without the HTTP app.  Use it with
``RUN_MODE=web`` on the HTTP process so that only one scheduler is active.
"""
from __future__ import annotations

import asyncio
import signal
import sys

from app.config import Settings, settings
from app.core.dispatch.engine import DispatchContext, DispatchEngine, DispatchOptions
from app.infra.db_async import close_pool, init_pool
from app.infra.fcm_transport import FcmPushTransport
from app.infra.logging_config import get_logger, setup_logging
from app.infra.pg_endpoint_repo_async import get_endpoint_store
from app.infra.pg_notification_repo_async import get_notification_store
from app.infra.scheduler import DispatchScheduler

logger = get_logger(__name__)


def build_dispatch_engine(s: Settings = settings) -> DispatchEngine:
    """Wire the Postgres stores and the FCM transport into one engine."""
    ctx = DispatchContext(
        notifications=get_notification_store(),
        endpoints=get_endpoint_store(),
        transport=FcmPushTransport.from_settings(s),
        options=DispatchOptions.from_settings(s),
    )
    return DispatchEngine(ctx)


async def run_worker(stop_event: asyncio.Event | None = None) -> None:
    stop_event = stop_event or asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Not available on Windows or off the main thread
            logger.debug(f"Signal handler for {sig.name} not installed")

    await init_pool()
    scheduler = DispatchScheduler.from_settings(build_dispatch_engine(), settings)
    try:
        await scheduler.start()
        logger.info("Worker running, waiting for shutdown signal")
        await stop_event.wait()
    finally:
        await scheduler.stop()
        await close_pool()
        logger.info("Worker stopped")


def main() -> int:
    setup_logging(level=settings.log_level, use_json=settings.is_production)
    logger.info(f"Starting dispatch worker: env={settings.app_env}")
    asyncio.run(run_worker())
    return 0


if __name__ == "__main__":
    sys.exit(main())
