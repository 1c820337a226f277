import asyncio
import logging
from datetime import datetime, timezone

from taskengine.control import TaskControl
from taskengine.db import TaskStore
from taskengine.models import TaskStatus
from taskengine.notifications import (
    LoggingNotifier,
    NotificationDispatcher,
    Notifier,
    WebhookNotifier,
)
from taskengine.processors import ProcessorRegistry, default_registry
from taskengine.scheduler import Scheduler, WorkerPool
from taskengine.service.settings import Settings
from taskengine.worker import TaskExecutor

logger = logging.getLogger("taskengine")


def build_notifier(settings: Settings) -> Notifier:
    if not settings.webhook_url:
        return LoggingNotifier()
    return WebhookNotifier(
        settings.webhook_url,
        secret=settings.webhook_secret,
        notify_on_completion=settings.notify_on_completion,
        notify_on_failure=settings.notify_on_failure,
        notify_on_cancel=settings.notify_on_cancel,
    )


class TaskEngine:
    def __init__(
        self,
        settings: Settings,
        store: TaskStore | None = None,
        registry: ProcessorRegistry | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.settings = settings
        self._owns_store = store is None
        self.store = store or TaskStore(settings.db_url)
        self.registry = registry or default_registry(settings)
        self.dispatcher = NotificationDispatcher(notifier or build_notifier(settings))
        self._stopping = False
        self._started_at: datetime | None = None

        self.executor = TaskExecutor.from_settings(
            settings,
            self.store,
            self.registry,
            self.dispatcher,
            should_stop=lambda: self._stopping,
        )
        self.pool = WorkerPool(
            self.executor, settings.worker_pool_size, on_release=self.wake
        )
        self.scheduler = Scheduler(
            self.store,
            self.pool,
            concurrency_limit=settings.concurrency_limit,
            poll_interval_seconds=settings.poll_interval_seconds,
            max_task_seconds=settings.max_task_seconds,
        )
        self.control = TaskControl(
            self.store, self.registry, self.dispatcher, wake=self.wake
        )

    def wake(self) -> None:
        self.scheduler.wake()

    async def start(self) -> None:
        self._stopping = False
        recovered = await asyncio.to_thread(self.store.recover_interrupted)
        for task in recovered:
            if task.status == TaskStatus.CANCELLED:
                self.dispatcher.dispatch(task)

        self.scheduler.start()
        self._started_at = datetime.now(timezone.utc)
        logger.info(
            "engine_started",
            extra={
                "recovered_tasks": len(recovered),
                "worker_pool_size": self.pool.size,
                "task_types": [task_type.value for task_type in self.registry.types()],
            },
        )

    async def stop(self) -> None:
        self._stopping = True
        await self.scheduler.stop()
        await self.pool.shutdown(self.settings.shutdown_grace_seconds)
        self.dispatcher.close(wait=True)
        if self._owns_store:
            self.store.close()
        logger.info("engine_stopped")

    async def drain(self) -> None:
        """Claim and run tasks until nothing runnable is left."""

        while True:
            claimed = await self.scheduler.tick()
            if not claimed and not self.pool.active_task_ids():
                return
            await self.pool.join()

    def status(self) -> dict[str, object]:
        counts = self.store.count_by_status()
        return {
            "running": self.scheduler.running,
            "started_at": self._started_at,
            "worker_pool_size": self.pool.size,
            "free_slots": self.pool.free_slots,
            "concurrency_limit": self.settings.concurrency_limit,
            "active_task_ids": self.pool.active_task_ids(),
            "task_counts": {status.value: count for status, count in counts.items()},
            "task_types": [task_type.value for task_type in self.registry.types()],
        }


_default_engine: TaskEngine | None = None


def init_engine(settings: Settings, **kwargs: object) -> TaskEngine:
    global _default_engine
    _default_engine = TaskEngine(settings, **kwargs)  # type: ignore[arg-type]
    return _default_engine


def get_engine() -> TaskEngine:
    if _default_engine is None:
        raise RuntimeError("Task engine is not initialized")
    return _default_engine
