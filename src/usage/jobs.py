"""Bounded background job queue for work kept off the response path.

Jobs are zero-argument coroutine factories. ``submit`` never blocks or
raises: when the queue is full (or not running) the job is dropped and
counted. Failures are logged and counted per job name, so lost
accounting shows up in ``/health`` instead of vanishing.
"""

import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from src.logging.audit import get_audit_logger

Job = Callable[[], Awaitable[None]]


@dataclass
class JobStats:
    submitted: int = 0
    completed: int = 0
    failed: int = 0
    dropped: int = 0
    failed_by_name: dict[str, int] = field(default_factory=lambda: defaultdict(int))

    def as_dict(self) -> dict:
        return {
            "submitted": self.submitted,
            "completed": self.completed,
            "failed": self.failed,
            "dropped": self.dropped,
            "failed_by_name": dict(self.failed_by_name),
        }


class BackgroundJobQueue:

    def __init__(self, maxsize: int = 1000, workers: int = 2):
        self._maxsize = maxsize
        self._worker_count = max(1, workers)
        self._queue: asyncio.Queue[tuple[str, Job]] | None = None
        self._workers: list[asyncio.Task] = []
        self.stats = JobStats()

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def start(self) -> None:
        """Spawn workers on the running event loop."""
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self._maxsize)
        self._workers = [
            asyncio.create_task(self._worker(), name=f"background-job-worker-{i}")
            for i in range(self._worker_count)
        ]

    def submit(self, name: str, job: Job) -> bool:
        """Enqueue without waiting. Returns False if the job was dropped."""
        if self._queue is None or not self.running:
            self._drop(name, "queue not running")
            return False
        try:
            self._queue.put_nowait((name, job))
        except asyncio.QueueFull:
            self._drop(name, "queue full")
            return False
        self.stats.submitted += 1
        return True

    def _drop(self, name: str, reason: str) -> None:
        self.stats.dropped += 1
        get_audit_logger().warning(
            "Background job dropped",
            extra={"audit_data": {"job": name, "reason": reason, "dropped_total": self.stats.dropped}},
        )

    async def _worker(self) -> None:
        assert self._queue is not None
        while True:
            name, job = await self._queue.get()
            try:
                await job()
            except Exception:
                self.stats.failed += 1
                self.stats.failed_by_name[name] += 1
                get_audit_logger().exception(
                    "Background job failed",
                    extra={"audit_data": {"job": name, "failed_total": self.stats.failed}},
                )
            else:
                self.stats.completed += 1
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every submitted job has finished."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self, timeout: float = 5.0) -> None:
        """Drain pending jobs (bounded by ``timeout``), then cancel workers."""
        if not self.running:
            return
        try:
            await asyncio.wait_for(self.join(), timeout=timeout)
        except asyncio.TimeoutError:
            get_audit_logger().warning(
                "Background jobs abandoned at shutdown",
                extra={"audit_data": {"pending": self.pending}},
            )
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
