import asyncio
import logging
from collections.abc import Callable

from taskengine.models import Task
from taskengine.worker import TaskExecutor

logger = logging.getLogger("taskengine.scheduler")


class WorkerPool:
    """At most ``size`` executors in flight, one task each."""

    def __init__(
        self,
        executor: TaskExecutor,
        size: int,
        on_release: Callable[[], None] | None = None,
    ) -> None:
        self._executor = executor
        self._size = max(1, size)
        self._on_release = on_release
        self._running: dict[str, asyncio.Task[Task]] = {}

    @property
    def size(self) -> int:
        return self._size

    @property
    def free_slots(self) -> int:
        return self._size - len(self._running)

    def active_task_ids(self) -> list[str]:
        return sorted(self._running)

    def submit(self, task: Task) -> asyncio.Task[Task]:
        if task.id in self._running:
            raise RuntimeError(f"Task '{task.id}' is already running in this pool")
        if self.free_slots <= 0:
            raise RuntimeError("Worker pool is full")

        job = asyncio.create_task(self._executor.execute(task), name=f"task:{task.id}")
        self._running[task.id] = job
        job.add_done_callback(lambda finished, task_id=task.id: self._release(task_id, finished))
        return job

    def _release(self, task_id: str, job: asyncio.Task[Task]) -> None:
        self._running.pop(task_id, None)
        if not job.cancelled():
            exc = job.exception()
            if exc is not None:
                logger.error(
                    "worker_crashed",
                    extra={"task_id": task_id, "error": str(exc)},
                    exc_info=exc,
                )
        if self._on_release is not None:
            self._on_release()

    async def join(self) -> None:
        if self._running:
            await asyncio.gather(*self._running.values(), return_exceptions=True)

    async def shutdown(self, grace_seconds: float) -> None:
        jobs = list(self._running.values())
        if not jobs:
            return

        _, pending = await asyncio.wait(jobs, timeout=max(grace_seconds, 0.0))
        if pending:
            logger.warning(
                "workers_cancelled",
                extra={"count": len(pending), "grace_seconds": grace_seconds},
            )
            for job in pending:
                job.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
