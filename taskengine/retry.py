import logging

from taskengine.db import TaskStore, new_task_id
from taskengine.errors import InvalidTransitionError, TaskNotFoundError
from taskengine.models import LogLevel, Task, TaskPayload, TaskStatus

logger = logging.getLogger("taskengine.retry")

_RETRY_SUFFIX = " (retry)"


def check_retryable(task: Task) -> None:
    if task.status == TaskStatus.FAILED:
        return
    if task.status == TaskStatus.COMPLETED and task.progress.failed_items > 0:
        return
    raise InvalidTransitionError(
        task.id,
        task.status,
        TaskStatus.RETRY,
        "only FAILED tasks or COMPLETED tasks with failed items can be retried",
    )


def retry_items(store: TaskStore, task: Task) -> TaskPayload:
    """Payload holding the items of the current run that did not succeed.

    For a COMPLETED task these are exactly the failed items; a FAILED task
    also contributes the items it never reached.
    """

    succeeded = {
        result.item_index
        for result in store.item_results(task.id, run=task.run)
        if result.success
    }
    items = [
        item for index, item in enumerate(task.payload.items) if index not in succeeded
    ]
    if not items:
        raise InvalidTransitionError(
            task.id, task.status, TaskStatus.RETRY, "there are no failed items to retry"
        )
    return task.payload.model_copy(update={"items": items})


def expand_retry(store: TaskStore, task_id: str) -> Task:
    """Move a RETRY task to QUEUED, resetting it first if its run already started."""

    task = store.get_task(task_id, include_results=False)
    if task is None:
        raise TaskNotFoundError(task_id)
    if task.status != TaskStatus.RETRY:
        raise InvalidTransitionError(
            task_id, task.status, TaskStatus.QUEUED, "task is not awaiting retry"
        )

    if task.progress.processed_items > 0:
        task = store.reset_for_retry(task_id, retry_items(store, task))
    queued = store.update_status(task_id, TaskStatus.RETRY, TaskStatus.QUEUED)
    logger.info(
        "retry_expanded",
        extra={"task_id": task_id, "total_items": queued.progress.total_items},
    )
    return queued


def create_retry_task(store: TaskStore, task: Task) -> str:
    check_retryable(task)
    payload = retry_items(store, task)

    title = task.title if task.title.endswith(_RETRY_SUFFIX) else f"{task.title}{_RETRY_SUFFIX}"
    retry = Task(
        id=new_task_id(),
        type=task.type,
        title=title[:256],
        description=task.description,
        status=TaskStatus.RETRY,
        payload=payload,
        priority=task.priority,
        owner_id=task.owner_id,
        scope_id=task.scope_id,
        retry_of=task.id,
    )
    store.create_task(retry)
    store.append_log(
        task.id,
        LogLevel.INFO,
        f"Retry task {retry.id} created for {len(payload.items)} items",
    )
    store.append_log(
        retry.id,
        LogLevel.INFO,
        f"Retrying {len(payload.items)} items of task {task.id}",
    )
    expand_retry(store, retry.id)
    return retry.id


def retry_in_place(store: TaskStore, task: Task) -> str:
    if task.status != TaskStatus.FAILED:
        raise InvalidTransitionError(
            task.id,
            task.status,
            TaskStatus.RETRY,
            "only FAILED tasks can be retried in place",
        )
    payload = retry_items(store, task)

    store.update_status(task.id, TaskStatus.FAILED, TaskStatus.RETRY)
    reset = store.reset_for_retry(task.id, payload)
    store.append_log(
        task.id,
        LogLevel.INFO,
        f"Run {reset.run} started in place for {len(payload.items)} items",
    )
    store.update_status(task.id, TaskStatus.RETRY, TaskStatus.QUEUED)
    return task.id
