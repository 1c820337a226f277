import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Protocol

from pydantic import BaseModel

from taskengine.models import TERMINAL_STATUSES, Task, TaskStatus, TaskType
from taskengine.progress import format_duration

logger = logging.getLogger("taskengine.notifications")


class TaskSummary(BaseModel):
    task_id: str
    task_type: TaskType
    title: str
    status: TaskStatus
    processed_items: int
    total_items: int
    failed_items: int
    succeeded_items: int
    percentage: int
    duration: str | None = None
    error: str | None = None
    scope_id: str | None = None
    owner_id: str | None = None
    retry_of: str | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_task(cls, task: Task) -> "TaskSummary":
        progress = task.progress
        return cls(
            task_id=task.id,
            task_type=task.type,
            title=task.title,
            status=task.status,
            processed_items=progress.processed_items,
            total_items=progress.total_items,
            failed_items=progress.failed_items,
            succeeded_items=progress.processed_items - progress.failed_items,
            percentage=progress.percentage,
            duration=format_duration(task.started_at, task.completed_at),
            error=task.error,
            scope_id=task.scope_id,
            owner_id=task.owner_id,
            retry_of=task.retry_of,
            completed_at=task.completed_at,
        )


class Notifier(Protocol):
    def notify(self, task_id: str, status: TaskStatus, summary: TaskSummary) -> None: ...


class LoggingNotifier:
    def notify(self, task_id: str, status: TaskStatus, summary: TaskSummary) -> None:
        logger.info(
            "task_finished",
            extra={
                "task_id": task_id,
                "status": status.value,
                "title": summary.title,
                "processed_items": summary.processed_items,
                "total_items": summary.total_items,
                "failed_items": summary.failed_items,
                "duration": summary.duration,
            },
        )


class NotificationDispatcher:
    """Delivers terminal-status notifications off the worker's path.

    Callers invoke :meth:`dispatch` once, after winning the terminal
    transition. Delivery runs on a small thread pool; notifier errors are
    logged and never reach the caller.
    """

    def __init__(self, notifier: Notifier | None = None, max_workers: int = 2) -> None:
        self._notifier = notifier or LoggingNotifier()
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, max_workers), thread_name_prefix="taskengine-notify"
        )
        self._closed = False

    @property
    def notifier(self) -> Notifier:
        return self._notifier

    def dispatch(self, task: Task) -> Future[None] | None:
        if task.status not in TERMINAL_STATUSES:
            raise ValueError(f"Task '{task.id}' is not terminal: {task.status.value}")

        summary = TaskSummary.from_task(task)
        if self._closed:
            logger.warning(
                "notification_dropped",
                extra={"task_id": task.id, "status": task.status.value},
            )
            return None
        return self._executor.submit(self._deliver, task.id, task.status, summary)

    def _deliver(self, task_id: str, status: TaskStatus, summary: TaskSummary) -> None:
        try:
            self._notifier.notify(task_id, status, summary)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "notification_failed",
                extra={"task_id": task_id, "status": status.value, "error": str(exc)},
            )

    def close(self, wait: bool = True) -> None:
        self._closed = True
        self._executor.shutdown(wait=wait)
