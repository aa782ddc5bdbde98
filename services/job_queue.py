"""
Job Queue
Bounded-concurrency FIFO dispatcher for inbound chat events.

Workers take jobs in submission order; at most ``concurrency`` run at once. The queue
gives no per-user exclusion; handlers that touch per-user state take advisory locks.
A failing job is reported to the failure observers and never stops its worker.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from config import Config

logger = logging.getLogger(__name__)

FailureObserver = Callable[["Job", BaseException], Optional[Awaitable[None]]]


@dataclass
class Job:
    name: str
    handler: Callable[..., Awaitable[Any]]
    args: tuple = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)
    enqueued_at: float = field(default_factory=time.monotonic)


class JobQueue:

    def __init__(self, concurrency: Optional[int] = None, on_failure: Optional[FailureObserver] = None):
        self.concurrency = Config.JOB_QUEUE_CONCURRENCY if concurrency is None else concurrency
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._queue: asyncio.Queue = asyncio.Queue()
        self._workers: List[asyncio.Task] = []
        self._failure_observers: List[FailureObserver] = [on_failure] if on_failure else []
        self.running = 0

        self.metrics = {
            'submitted': 0,
            'completed': 0,
            'failed': 0,
        }

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    def add_failure_observer(self, observer: FailureObserver) -> None:
        self._failure_observers.append(observer)

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"job-worker-{i}") for i in range(self.concurrency)
        ]
        logger.info(f"🚀 JOB_QUEUE_STARTED: {self.concurrency} workers")

    def submit(self, handler: Callable[..., Awaitable[Any]], *args, name: Optional[str] = None, **kwargs) -> Job:
        job = Job(name=name or getattr(handler, "__name__", "job"), handler=handler, args=args, kwargs=kwargs)
        self._queue.put_nowait(job)
        self.metrics['submitted'] += 1
        return job

    async def join(self) -> None:
        """Wait until every submitted job has finished"""
        await self._queue.join()

    async def stop(self, drain: bool = False) -> None:
        if drain:
            await self.join()
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info(f"🛑 JOB_QUEUE_STOPPED: {self.pending} jobs left unprocessed")

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            self.running += 1
            try:
                await job.handler(*job.args, **job.kwargs)
                self.metrics['completed'] += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.metrics['failed'] += 1
                logger.error(f"❌ JOB_FAILED: {job.name} on worker {index}: {e}", exc_info=True)
                await self._report_failure(job, e)
            finally:
                self.running -= 1
                self._queue.task_done()

    async def _report_failure(self, job: Job, error: BaseException) -> None:
        for observer in self._failure_observers:
            try:
                outcome = observer(job, error)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception as observer_error:
                logger.error(f"❌ Failure observer {observer!r} raised: {observer_error}", exc_info=True)
