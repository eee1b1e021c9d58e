"""
Unit tests for the background task pool.
"""

import asyncio

import pytest

from mailsync.workers.task_pool import TaskPool, TaskStatus


class TestTaskPool:
    """Tests for TaskPool."""

    @pytest.mark.asyncio
    async def test_submit_and_wait(self):
        pool = TaskPool(workers=2)
        pool.start()

        async def job():
            return 42

        handle = pool.submit("answer", job)
        assert await handle.wait() == 42
        assert handle.status == TaskStatus.COMPLETED
        assert handle.started_at is not None
        await pool.stop()

    @pytest.mark.asyncio
    async def test_submit_requires_start(self):
        pool = TaskPool(workers=1)

        async def job():
            return None

        with pytest.raises(RuntimeError):
            pool.submit("early", job)

    @pytest.mark.asyncio
    async def test_failure_is_recorded_and_worker_survives(self):
        pool = TaskPool(workers=1)
        pool.start()

        async def broken():
            raise ValueError("boom")

        async def fine():
            return "ok"

        failed = pool.submit("broken", broken)
        succeeded = pool.submit("fine", fine)
        await pool.join()

        assert failed.status == TaskStatus.FAILED
        assert failed.error == "boom"
        assert await succeeded.wait() == "ok"
        assert pool.stats()["failed"] == 1
        assert pool.stats()["completed"] == 1
        await pool.stop()

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        pool = TaskPool(workers=2)
        pool.start()
        active = 0
        peak = 0

        async def job():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

        for index in range(6):
            pool.submit(f"job-{index}", job)
        await pool.join()

        assert peak == 2
        assert pool.stats()["completed"] == 6
        await pool.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_queued_jobs(self):
        pool = TaskPool(workers=1)
        pool.start()
        release = asyncio.Event()

        async def blocker():
            await release.wait()

        running = pool.submit("blocker", blocker)
        queued = pool.submit("queued", blocker)
        await asyncio.sleep(0)
        await pool.stop()

        assert running.status == TaskStatus.CANCELLED
        assert queued.status == TaskStatus.CANCELLED
        assert queued.done
        assert not pool.is_running
