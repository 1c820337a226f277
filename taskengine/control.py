import logging
from collections.abc import Callable

from taskengine.db import TaskFilter, TaskStore, new_task_id
from taskengine.errors import (
    InvalidTransitionError,
    PayloadValidationError,
    TaskConflictError,
    TaskNotFoundError,
)
from taskengine.models import (
    TERMINAL_STATUSES,
    ControlRequest,
    ItemResult,
    LogLevel,
    Task,
    TaskDetail,
    TaskLogEntry,
    TaskStatus,
    TaskType,
    parse_payload,
)
from taskengine.notifications import NotificationDispatcher
from taskengine.processors import ProcessorRegistry
from taskengine.retry import create_retry_task, retry_in_place

logger = logging.getLogger("taskengine.control")

_CANCEL_ATTEMPTS = 3


class TaskControl:
    """Operations offered to callers; errors surface as ``TaskEngineError`` subclasses."""

    def __init__(
        self,
        store: TaskStore,
        registry: ProcessorRegistry,
        dispatcher: NotificationDispatcher,
        wake: Callable[[], None] | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._dispatcher = dispatcher
        self._wake = wake or (lambda: None)

    def create_task(
        self,
        task_type: TaskType,
        title: str,
        payload: dict[str, object],
        description: str | None = None,
        priority: int = 5,
        scope_id: str | None = None,
        owner_id: str | None = None,
    ) -> str:
        self._registry.get(task_type)
        try:
            task = Task(
                id=new_task_id(),
                type=task_type,
                title=title,
                description=description,
                payload=parse_payload(task_type, payload),
                priority=priority,
                scope_id=scope_id,
                owner_id=owner_id,
            )
        except ValueError as exc:
            raise PayloadValidationError(str(exc)) from exc

        self._store.create_task(task)
        self._store.append_log(task.id, LogLevel.INFO, f"Task created: {task.title}")
        self._wake()
        return task.id

    def get_task(self, task_id: str) -> Task:
        task = self._store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def get_task_detail(self, task_id: str, log_limit: int = 10) -> TaskDetail:
        task = self.get_task(task_id)
        return TaskDetail(task=task, recent_logs=self._store.list_logs(task_id, log_limit))

    def list_tasks(
        self,
        scope_id: str | None = None,
        statuses: list[TaskStatus] | None = None,
        owner_id: str | None = None,
        task_type: TaskType | None = None,
        limit: int = 50,
    ) -> list[Task]:
        return self._store.list_tasks(
            TaskFilter(
                scope_id=scope_id,
                owner_id=owner_id,
                statuses=tuple(statuses or ()),
                task_type=task_type,
                limit=limit,
            )
        )

    def pause_task(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if task.status != TaskStatus.RUNNING:
            raise InvalidTransitionError(
                task_id, task.status, TaskStatus.PAUSED, "only RUNNING tasks can be paused"
            )

        updated = self._store.request_control(task_id, ControlRequest.PAUSE)
        self._store.append_log(task_id, LogLevel.INFO, "Pause requested")
        logger.info("task_pause_requested", extra={"task_id": task_id})
        return updated

    def resume_task(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if task.status != TaskStatus.PAUSED:
            raise InvalidTransitionError(
                task_id, task.status, TaskStatus.QUEUED, "only PAUSED tasks can be resumed"
            )

        resumed = self._store.update_status(task_id, TaskStatus.PAUSED, TaskStatus.QUEUED)
        self._store.append_log(
            task_id,
            LogLevel.INFO,
            f"Resume requested at item {resumed.resume_cursor + 1}",
        )
        logger.info("task_resumed", extra={"task_id": task_id})
        self._wake()
        return resumed

    def cancel_task(self, task_id: str) -> Task:
        """Cancel a task.

        A RUNNING task gets a cancel request that its worker honours at the
        next checkpoint. Tasks that are not running are cancelled directly
        and notified here.
        """

        for _ in range(_CANCEL_ATTEMPTS):
            task = self.get_task(task_id)

            if task.status == TaskStatus.RUNNING:
                try:
                    updated = self._store.request_control(task_id, ControlRequest.CANCEL)
                except InvalidTransitionError:
                    continue
                self._store.append_log(task_id, LogLevel.INFO, "Cancellation requested")
                logger.info("task_cancel_requested", extra={"task_id": task_id})
                return updated

            if task.status in {TaskStatus.PENDING, TaskStatus.QUEUED, TaskStatus.PAUSED}:
                try:
                    cancelled = self._store.update_status(
                        task_id, task.status, TaskStatus.CANCELLED
                    )
                except TaskConflictError:
                    continue
                self._store.append_log(
                    task_id, LogLevel.WARN, f"Cancelled while {task.status.value}"
                )
                logger.info("task_cancelled", extra={"task_id": task_id})
                self._dispatcher.dispatch(cancelled)
                self._wake()
                return cancelled

            reason = (
                "task has already finished"
                if task.status in TERMINAL_STATUSES
                else "task is awaiting retry"
            )
            raise InvalidTransitionError(task_id, task.status, TaskStatus.CANCELLED, reason)

        raise TaskConflictError(
            task_id, f"Task '{task_id}' kept changing while cancelling; try again"
        )

    def delete_task(self, task_id: str) -> None:
        self._store.delete_task(task_id)

    def retry_task(self, task_id: str, in_place: bool = False) -> str:
        """Queue the failed items again.

        By default a new task holding only those items is created and its id
        returned. With ``in_place`` a FAILED task starts a fresh run under its
        own id.
        """

        task = self.get_task(task_id)
        if in_place:
            retried_id = retry_in_place(self._store, task)
        else:
            retried_id = create_retry_task(self._store, task)

        logger.info(
            "task_retried",
            extra={"task_id": task_id, "retry_task_id": retried_id, "in_place": in_place},
        )
        self._wake()
        return retried_id

    def task_results(
        self, task_id: str, failed_only: bool = False, run: int | None = None
    ) -> list[ItemResult]:
        return self._store.item_results(task_id, run=run, failed_only=failed_only)

    def task_logs(self, task_id: str, limit: int = 100) -> list[TaskLogEntry]:
        self.get_task(task_id)
        return self._store.list_logs(task_id, limit)
