import asyncio

import pytest

from fakes import RecordingNotifier, ScriptedProcessor, make_executor, make_registry, make_store
from taskengine.control import TaskControl
from taskengine.db import TaskStore
from taskengine.errors import (
    InvalidTransitionError,
    PayloadValidationError,
    TaskConflictError,
    TaskNotFoundError,
    TaskStillActiveError,
    UnknownTaskTypeError,
)
from taskengine.models import BulkImportPayload, TaskStatus, TaskType
from taskengine.notifications import NotificationDispatcher


def _rows(count: int) -> dict[str, object]:
    return {
        "entity": "rows",
        "items": [{"id": f"item-{index + 1}", "value": index} for index in range(count)],
    }


def _setup(tmp_path, processor: ScriptedProcessor | None = None):
    store = make_store(tmp_path)
    notifier = RecordingNotifier()
    dispatcher = NotificationDispatcher(notifier)
    processor = processor or ScriptedProcessor()
    control = TaskControl(store, make_registry(processor), dispatcher)
    return store, control, dispatcher, notifier, processor


def _run(store: TaskStore, processor: ScriptedProcessor, task_id: str) -> None:
    executor, dispatcher = make_executor(store, processor)
    asyncio.run(executor.execute(store.claim(task_id)))
    dispatcher.close()


def test_create_task_validates_payload_shape(tmp_path) -> None:
    store, control, dispatcher, _, _ = _setup(tmp_path)
    woken: list[bool] = []
    control = TaskControl(
        store, make_registry(ScriptedProcessor()), dispatcher, wake=lambda: woken.append(True)
    )

    task_id = control.create_task(
        TaskType.BULK_IMPORT, "Rows", _rows(3), description="three rows", scope_id="s1"
    )
    task = control.get_task(task_id)
    assert task.status == TaskStatus.PENDING
    assert task.progress.total_items == 3
    assert task.description == "three rows"
    assert woken == [True]
    assert control.task_logs(task_id)[0].message == "Task created: Rows"

    with pytest.raises(PayloadValidationError):
        control.create_task(TaskType.BULK_IMPORT, "Rows", {"items": []})
    with pytest.raises(PayloadValidationError):
        control.create_task(
            TaskType.BULK_IMPORT, "Rows", {**_rows(1), "kind": "BULK_ACCOUNT_CREATION"}
        )
    with pytest.raises(UnknownTaskTypeError):
        control.create_task(TaskType.BULK_ACCOUNT_CREATION, "Accounts", {"items": []})
    dispatcher.close()


def test_get_unknown_task(tmp_path) -> None:
    _, control, dispatcher, _, _ = _setup(tmp_path)
    with pytest.raises(TaskNotFoundError):
        control.get_task("task-missing")
    with pytest.raises(TaskNotFoundError):
        control.task_logs("task-missing")
    dispatcher.close()


def test_list_tasks_newest_first_with_filters(tmp_path) -> None:
    _, control, dispatcher, _, _ = _setup(tmp_path)
    first = control.create_task(TaskType.BULK_IMPORT, "One", _rows(1), scope_id="a")
    second = control.create_task(TaskType.BULK_IMPORT, "Two", _rows(1), scope_id="b")
    third = control.create_task(TaskType.BULK_IMPORT, "Three", _rows(1), scope_id="a")
    control.cancel_task(second)

    assert [task.id for task in control.list_tasks()] == [third, second, first]
    assert [task.id for task in control.list_tasks(scope_id="a")] == [third, first]
    assert [task.id for task in control.list_tasks(statuses=[TaskStatus.CANCELLED])] == [second]
    assert len(control.list_tasks(limit=1)) == 1
    dispatcher.close()


def test_pause_and_resume_rules(tmp_path) -> None:
    store, control, dispatcher, _, _ = _setup(tmp_path)
    task_id = control.create_task(TaskType.BULK_IMPORT, "Rows", _rows(3))

    with pytest.raises(InvalidTransitionError):
        control.pause_task(task_id)
    with pytest.raises(InvalidTransitionError):
        control.resume_task(task_id)

    store.claim(task_id)
    assert control.pause_task(task_id).status == TaskStatus.RUNNING
    store.update_status(task_id, TaskStatus.RUNNING, TaskStatus.PAUSED)

    resumed = control.resume_task(task_id)
    assert resumed.status == TaskStatus.QUEUED
    dispatcher.close()


def test_cancel_non_running_task_notifies_once(tmp_path) -> None:
    store, control, dispatcher, notifier, _ = _setup(tmp_path)
    pending = control.create_task(TaskType.BULK_IMPORT, "Pending", _rows(2))
    paused = control.create_task(TaskType.BULK_IMPORT, "Paused", _rows(2))
    store.claim(paused)
    store.update_status(paused, TaskStatus.RUNNING, TaskStatus.PAUSED)

    assert control.cancel_task(pending).status == TaskStatus.CANCELLED
    assert control.cancel_task(paused).status == TaskStatus.CANCELLED
    with pytest.raises(InvalidTransitionError):
        control.cancel_task(pending)

    dispatcher.close()
    assert sorted((call[0], call[1]) for call in notifier.calls) == sorted(
        [(pending, TaskStatus.CANCELLED), (paused, TaskStatus.CANCELLED)]
    )


def test_cancel_running_task_only_sets_request(tmp_path) -> None:
    store, control, dispatcher, notifier, _ = _setup(tmp_path)
    task_id = control.create_task(TaskType.BULK_IMPORT, "Rows", _rows(2))
    store.claim(task_id)

    requested = control.cancel_task(task_id)
    dispatcher.close()

    assert requested.status == TaskStatus.RUNNING
    assert requested.control_request is not None
    assert notifier.calls == []


def test_delete_requires_finished_task(tmp_path) -> None:
    store, control, dispatcher, _, processor = _setup(tmp_path)
    task_id = control.create_task(TaskType.BULK_IMPORT, "Rows", _rows(2))

    with pytest.raises(TaskConflictError, match="task still active"):
        control.delete_task(task_id)
    store.claim(task_id)
    with pytest.raises(TaskStillActiveError):
        control.delete_task(task_id)

    store.update_status(task_id, TaskStatus.RUNNING, TaskStatus.PAUSED)
    store.update_status(task_id, TaskStatus.PAUSED, TaskStatus.QUEUED)
    _run(store, processor, task_id)

    control.delete_task(task_id)
    with pytest.raises(TaskNotFoundError):
        control.get_task(task_id)
    dispatcher.close()


def test_retry_creates_task_with_failed_items_only(tmp_path) -> None:
    processor = ScriptedProcessor(fail_ids={"item-2", "item-4"})
    store, control, dispatcher, _, _ = _setup(tmp_path, processor)
    task_id = control.create_task(TaskType.BULK_IMPORT, "Rows", _rows(5), priority=7)
    _run(store, processor, task_id)
    assert control.get_task(task_id).status == TaskStatus.COMPLETED

    retry_id = control.retry_task(task_id)
    assert retry_id != task_id

    retry = control.get_task(retry_id)
    assert retry.status == TaskStatus.QUEUED
    assert retry.retry_of == task_id
    assert retry.title == "Rows (retry)"
    assert retry.priority == 7
    assert isinstance(retry.payload, BulkImportPayload)
    assert [item["id"] for item in retry.payload.items] == ["item-2", "item-4"]
    assert retry.progress.total_items == 2

    original = control.get_task(task_id)
    assert original.status == TaskStatus.COMPLETED
    dispatcher.close()


def test_retry_in_place_starts_fresh_run(tmp_path) -> None:
    processor = ScriptedProcessor(raise_at=2)
    store, control, dispatcher, _, _ = _setup(tmp_path, processor)
    task_id = control.create_task(TaskType.BULK_IMPORT, "Rows", _rows(4))
    _run(store, processor, task_id)
    assert control.get_task(task_id).status == TaskStatus.FAILED

    assert control.retry_task(task_id, in_place=True) == task_id

    task = control.get_task(task_id)
    assert task.status == TaskStatus.QUEUED
    assert task.run == 2
    assert task.error is None
    assert task.progress.processed_items == 0
    assert [item["id"] for item in task.payload.items] == ["item-3", "item-4"]

    processor.raise_at = None
    _run(store, processor, task_id)
    finished = control.get_task(task_id)
    assert finished.status == TaskStatus.COMPLETED
    assert finished.progress.processed_items == 2
    assert len(control.task_results(task_id)) == 2
    assert len(control.task_results(task_id, run=1)) == 2
    dispatcher.close()


def test_retry_rejections(tmp_path) -> None:
    processor = ScriptedProcessor()
    store, control, dispatcher, _, _ = _setup(tmp_path, processor)

    pending = control.create_task(TaskType.BULK_IMPORT, "Pending", _rows(2))
    with pytest.raises(InvalidTransitionError):
        control.retry_task(pending)

    clean = control.create_task(TaskType.BULK_IMPORT, "Clean", _rows(2))
    _run(store, processor, clean)
    with pytest.raises(InvalidTransitionError):
        control.retry_task(clean)

    processor.fail_ids = {"item-1"}
    partial = control.create_task(TaskType.BULK_IMPORT, "Partial", _rows(2))
    _run(store, processor, partial)
    with pytest.raises(InvalidTransitionError):
        control.retry_task(partial, in_place=True)
    dispatcher.close()
