"""
Ingestion Service — Entry Point

    python -m docingest.main

Runs the in-process drivers on one asyncio loop:
  - ProcessingQueue   tick every queue_interval_seconds (15)
  - AutoRetrySweeper  sweep every auto_retry_interval_seconds (60)

Startup: configure logging, verify DB connectivity (refuse to start without it).
Shutdown (SIGINT / SIGTERM): stop both loops, release the isolation workers,
dispose the connection pool.

Use either this runner or the Celery beat/worker pair, never both against
the same database unless settings.claim_atomically is on.
"""

from __future__ import annotations

import asyncio
import logging
import signal

from docingest.core.config import settings
from docingest.db.session import check_db_health, engine
from docingest.observability.tracing import configure_logging
from docingest.services.queue import ProcessingQueue
from docingest.services.sweeper import AutoRetrySweeper
from docingest.workers.isolation import shutdown_isolation

logger = logging.getLogger(__name__)


async def run() -> None:
    logger.info(
        "Starting ingestion service | env=%s mode=%s interval=%.0fs",
        settings.app_env, settings.resolved_processing_mode, settings.queue_interval_seconds,
    )

    db_health = await check_db_health()
    if db_health["status"] != "ok":
        logger.critical("Database health check failed at startup: %s", db_health)
        raise RuntimeError(f"DB unavailable: {db_health}")
    logger.info("Database: connected")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support; Ctrl+C still raises
            pass

    queue = ProcessingQueue()
    sweeper = AutoRetrySweeper()
    queue.start()
    sweeper.start()

    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down ingestion service")
        await queue.stop()
        await sweeper.stop()
        await shutdown_isolation()
        await engine.dispose()


def main() -> None:
    configure_logging()
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
