"""
Test Job Queue
FIFO order, concurrency bound and failure reporting
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from services.job_queue import JobQueue


class TestJobQueue:

    @pytest.mark.asyncio
    async def test_single_worker_runs_in_submission_order(self):
        queue = JobQueue(concurrency=1)
        seen = []

        async def record(value):
            seen.append(value)

        queue.start()
        for i in range(5):
            queue.submit(record, i)
        await queue.join()
        await queue.stop()

        assert seen == [0, 1, 2, 3, 4]
        assert queue.metrics['completed'] == 5

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        queue = JobQueue(concurrency=2)
        running = 0
        peak = 0

        async def slow():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

        queue.start()
        for _ in range(6):
            queue.submit(slow)
        await queue.join()
        await queue.stop()

        assert peak == 2

    @pytest.mark.asyncio
    async def test_failure_goes_to_observer_and_queue_keeps_running(self):
        observer = AsyncMock()
        queue = JobQueue(concurrency=1, on_failure=observer)
        after = MagicMock()

        async def explode():
            raise RuntimeError("handler bug")

        async def fine():
            after()

        queue.start()
        queue.submit(explode, name="explode")
        queue.submit(fine)
        await queue.join()
        await queue.stop()

        observer.assert_awaited_once()
        job, error = observer.await_args.args
        assert job.name == "explode"
        assert isinstance(error, RuntimeError)
        after.assert_called_once()
        assert queue.metrics['failed'] == 1

    @pytest.mark.asyncio
    async def test_broken_observer_does_not_kill_worker(self):
        def bad_observer(job, error):
            raise ValueError("observer bug")

        queue = JobQueue(concurrency=1, on_failure=bad_observer)
        done = asyncio.Event()

        async def explode():
            raise RuntimeError("handler bug")

        async def finish():
            done.set()

        queue.start()
        queue.submit(explode)
        queue.submit(finish)
        await asyncio.wait_for(done.wait(), timeout=1)
        await queue.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_workers(self):
        queue = JobQueue(concurrency=3)
        queue.start()
        assert queue.is_running
        await queue.stop()
        assert not queue.is_running

    def test_zero_concurrency_rejected(self):
        with pytest.raises(ValueError):
            JobQueue(concurrency=0)
