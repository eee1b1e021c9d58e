"""
Background Task Pool

A fixed number of asyncio workers draining a FIFO queue. Used for body
prefetch jobs and on-demand sync triggers so callers never block on
them. Each submission returns a TaskHandle that can be awaited.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from mailsync.core.config import settings

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskHandle:
    """Tracks one submitted job."""

    def __init__(self, name: str):
        self.name = name
        self.status = TaskStatus.QUEUED
        self.result: Any = None
        self.error: Optional[str] = None
        self.submitted_at = datetime.utcnow()
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None
        self._done = asyncio.Event()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    async def wait(self) -> Any:
        """Wait for the job to finish and return its result."""
        await self._done.wait()
        return self.result

    def _finish(self, status: TaskStatus, error: Optional[str] = None):
        self.status = status
        self.error = error
        self.finished_at = datetime.utcnow()
        self._done.set()

    def __repr__(self) -> str:
        return f"TaskHandle(name={self.name!r}, status={self.status.value})"


class TaskPool:
    """Bounded pool of background workers."""

    def __init__(self, workers: Optional[int] = None):
        self.workers = workers or settings.task_pool_workers
        self._queue: Optional[asyncio.Queue] = None
        self._worker_tasks: List[asyncio.Task] = []
        self._running = 0
        self._completed = 0
        self._failed = 0

    @property
    def is_running(self) -> bool:
        return bool(self._worker_tasks)

    def start(self):
        if self.is_running:
            return
        self._queue = asyncio.Queue()
        self._worker_tasks = [
            asyncio.create_task(self._worker(index), name=f"task-pool-{index}")
            for index in range(self.workers)
        ]
        logger.info(f"Task pool started with {self.workers} workers")

    async def stop(self):
        """Cancel the workers; queued jobs are marked cancelled."""
        if not self.is_running:
            return
        for task in self._worker_tasks:
            task.cancel()
        await asyncio.gather(*self._worker_tasks, return_exceptions=True)
        self._worker_tasks = []

        while not self._queue.empty():
            handle, _ = self._queue.get_nowait()
            handle._finish(TaskStatus.CANCELLED)
            self._queue.task_done()
        logger.info("Task pool stopped")

    def submit(self, name: str, job: Callable[[], Awaitable[Any]]) -> TaskHandle:
        """
        Queue `job` (a zero-argument coroutine function).

        Raises:
            RuntimeError: If the pool has not been started
        """
        if not self.is_running:
            raise RuntimeError("Task pool is not running")
        handle = TaskHandle(name)
        self._queue.put_nowait((handle, job))
        logger.debug(f"Queued task {name} ({self._queue.qsize()} waiting)")
        return handle

    async def join(self):
        """Wait until every queued job has finished."""
        if self._queue is not None:
            await self._queue.join()

    def stats(self) -> Dict[str, int]:
        return {
            "workers": len(self._worker_tasks),
            "queued": self._queue.qsize() if self._queue is not None else 0,
            "running": self._running,
            "completed": self._completed,
            "failed": self._failed,
        }

    async def _worker(self, index: int):
        while True:
            item: Tuple[TaskHandle, Callable[[], Awaitable[Any]]] = await self._queue.get()
            handle, job = item
            handle.status = TaskStatus.RUNNING
            handle.started_at = datetime.utcnow()
            self._running += 1
            try:
                handle.result = await job()
                self._completed += 1
                handle._finish(TaskStatus.COMPLETED)
            except asyncio.CancelledError:
                handle._finish(TaskStatus.CANCELLED)
                raise
            except Exception as e:
                logger.error(f"Task {handle.name} failed on worker {index}: {e}", exc_info=True)
                self._failed += 1
                handle._finish(TaskStatus.FAILED, str(e))
            finally:
                self._running -= 1
                self._queue.task_done()
