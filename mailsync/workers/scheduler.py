"""
Sync Scheduler

Three independent cadences on the running event loop:

- quick sync (every 5 minutes by default), run once at startup
- deep sync with body prefetch (hourly)
- cache cleanup (daily)

A failing run is logged and the loop waits for its next tick.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from mailsync.core.config import settings
from mailsync.services.janitor import CacheJanitor
from mailsync.workers.coordinator import AccountSyncCoordinator

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs the coordinator and janitor on fixed intervals."""

    def __init__(
        self,
        coordinator: AccountSyncCoordinator,
        janitor: CacheJanitor,
        quick_interval: Optional[float] = None,
        deep_interval: Optional[float] = None,
        cleanup_interval: Optional[float] = None,
    ):
        self.coordinator = coordinator
        self.janitor = janitor
        self.quick_interval = quick_interval or settings.quick_sync_interval_seconds
        self.deep_interval = deep_interval or settings.deep_sync_interval_seconds
        self.cleanup_interval = cleanup_interval or settings.cleanup_interval_seconds
        self._tasks: List[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return bool(self._tasks)

    def start(self):
        if self.is_running:
            return
        self._tasks = [
            asyncio.create_task(
                self._loop("quick sync", self.quick_interval, self.coordinator.sync_all_accounts, run_immediately=True)
            ),
            asyncio.create_task(
                self._loop("deep sync", self.deep_interval, self.coordinator.deep_sync_all_accounts)
            ),
            asyncio.create_task(
                self._loop("cache cleanup", self.cleanup_interval, self.janitor.sweep)
            ),
        ]
        logger.info(
            f"Scheduler started (quick every {self.quick_interval}s, deep every {self.deep_interval}s, "
            f"cleanup every {self.cleanup_interval}s)"
        )

    async def stop(self):
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Scheduler stopped")

    async def _loop(
        self,
        name: str,
        interval: float,
        job: Callable[[], Awaitable[object]],
        run_immediately: bool = False,
    ):
        if not run_immediately:
            await asyncio.sleep(interval)
        while True:
            logger.info(f"Running scheduled {name}")
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Scheduled {name} failed")
            await asyncio.sleep(interval)
