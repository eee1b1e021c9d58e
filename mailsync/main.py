"""
Mail sync engine runner.

Connects to MongoDB, ensures indexes, starts the coordinator and the
scheduler, and runs until SIGINT or SIGTERM.

Usage:
    mailsync
    python -m mailsync.main
"""

import asyncio
import logging
import signal

from mailsync.core.config import settings
from mailsync.core.database import db_manager
from mailsync.services.janitor import CacheJanitor
from mailsync.workers.coordinator import AccountSyncCoordinator
from mailsync.workers.scheduler import SyncScheduler

logger = logging.getLogger(__name__)


async def serve():
    """Run the engine until a shutdown signal arrives."""
    await db_manager.connect()
    await db_manager.ensure_indexes()

    coordinator = AccountSyncCoordinator(db_manager.db)
    scheduler = SyncScheduler(coordinator, CacheJanitor(db_manager.db))

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    try:
        await coordinator.start()
        scheduler.start()
        logger.info("Mail sync engine running")
        await shutdown.wait()
        logger.info("Shutdown requested")
    finally:
        await scheduler.stop()
        await coordinator.stop()
        await db_manager.disconnect()
        logger.info("Mail sync engine stopped")


def run():
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    asyncio.run(serve())


if __name__ == "__main__":
    run()
