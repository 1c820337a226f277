import asyncio
import logging
from datetime import datetime, timedelta, timezone

from taskengine.db import TaskFilter, TaskStore
from taskengine.errors import (
    InvalidTransitionError,
    StoreUnavailableError,
    TaskConflictError,
)
from taskengine.models import ControlRequest, LogLevel, Task, TaskStatus
from taskengine.retry import expand_retry
from taskengine.scheduler.pool import WorkerPool

logger = logging.getLogger("taskengine.scheduler")


class Scheduler:
    """Claims runnable tasks and hands them to the worker pool.

    Each tick expands RETRY tasks, admits PENDING tasks to QUEUED, cancels
    tasks past ``max_task_seconds`` and then claims the best candidates
    (priority descending, creation order ascending) while both a pool slot
    and the global RUNNING limit allow. A claim that loses its
    compare-and-swap moves on to the next candidate.
    """

    def __init__(
        self,
        store: TaskStore,
        pool: WorkerPool,
        concurrency_limit: int,
        poll_interval_seconds: float = 2.0,
        max_task_seconds: int = 0,
    ) -> None:
        self._store = store
        self._pool = pool
        self._concurrency_limit = max(1, concurrency_limit)
        self._poll_interval_seconds = poll_interval_seconds
        self._max_task_seconds = max_task_seconds
        self._loop: asyncio.AbstractEventLoop | None = None
        self._wake_event: asyncio.Event | None = None
        self._runner: asyncio.Task[None] | None = None
        self._stopping = False

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    def start(self) -> None:
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._wake_event = asyncio.Event()
        self._stopping = False
        self._runner = asyncio.create_task(self._run(), name="taskengine-scheduler")
        logger.info(
            "scheduler_started",
            extra={
                "pool_size": self._pool.size,
                "concurrency_limit": self._concurrency_limit,
            },
        )

    def wake(self) -> None:
        """Request an immediate tick; safe to call from any thread."""

        loop = self._loop
        event = self._wake_event
        if loop is None or event is None or loop.is_closed():
            return
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        if current is loop:
            event.set()
        else:
            loop.call_soon_threadsafe(event.set)

    async def stop(self) -> None:
        if self._runner is None:
            return
        self._stopping = True
        self.wake()
        await self._runner
        self._runner = None
        logger.info("scheduler_stopped")

    async def _run(self) -> None:
        backoff = 1.0
        while not self._stopping:
            try:
                await self.tick()
                backoff = 1.0
                timeout = self._poll_interval_seconds
            except StoreUnavailableError as exc:
                logger.warning(
                    "scheduler_store_unavailable",
                    extra={"error": str(exc), "retry_delay_seconds": backoff},
                )
                timeout = backoff
                backoff = min(backoff * 2, 30.0)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "scheduler_tick_failed", extra={"error": str(exc)}, exc_info=exc
                )
                timeout = self._poll_interval_seconds

            if self._stopping:
                break
            await self._wait(timeout)

    async def _wait(self, timeout: float) -> None:
        assert self._wake_event is not None
        try:
            await asyncio.wait_for(self._wake_event.wait(), timeout)
        except asyncio.TimeoutError:
            pass
        self._wake_event.clear()

    async def tick(self) -> list[Task]:
        await asyncio.to_thread(self._expand_retries)
        await asyncio.to_thread(self._admit_pending)
        if self._max_task_seconds > 0:
            await asyncio.to_thread(self._enforce_max_duration)
        return await self._claim_available()

    def _expand_retries(self) -> None:
        retries = self._store.list_tasks(
            TaskFilter(statuses=(TaskStatus.RETRY,), newest_first=False)
        )
        for task in retries:
            try:
                expand_retry(self._store, task.id)
            except (TaskConflictError, InvalidTransitionError) as exc:
                logger.debug(
                    "retry_expand_skipped", extra={"task_id": task.id, "error": str(exc)}
                )

    def _admit_pending(self) -> None:
        pending = self._store.list_tasks(
            TaskFilter(statuses=(TaskStatus.PENDING,), newest_first=False)
        )
        for task in pending:
            try:
                self._store.update_status(task.id, TaskStatus.PENDING, TaskStatus.QUEUED)
            except TaskConflictError:
                continue

    def _enforce_max_duration(self) -> None:
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self._max_task_seconds)
        for task in self._store.list_overdue(cutoff):
            if task.control_request == ControlRequest.CANCEL:
                continue
            try:
                self._store.request_control(task.id, ControlRequest.CANCEL)
            except InvalidTransitionError:
                continue
            self._store.append_log(
                task.id,
                LogLevel.WARN,
                f"Cancelling: exceeded the maximum duration of {self._max_task_seconds}s",
            )
            logger.warning(
                "task_over_time",
                extra={"task_id": task.id, "max_task_seconds": self._max_task_seconds},
            )

    async def _claim_available(self) -> list[Task]:
        counts = await asyncio.to_thread(self._store.count_by_status)
        free = min(
            self._pool.free_slots,
            self._concurrency_limit - counts[TaskStatus.RUNNING],
        )
        if free <= 0:
            return []

        candidates = await asyncio.to_thread(self._store.list_claimable, free * 2)
        claimed: list[Task] = []
        for candidate in candidates:
            if len(claimed) >= free:
                break
            try:
                task = await asyncio.to_thread(self._store.claim, candidate.id)
            except TaskConflictError:
                logger.debug("claim_conflict", extra={"task_id": candidate.id})
                continue

            self._pool.submit(task)
            claimed.append(task)
            logger.info(
                "task_claimed",
                extra={
                    "task_id": task.id,
                    "priority": task.priority,
                    "resume_cursor": task.resume_cursor,
                },
            )
        return claimed
