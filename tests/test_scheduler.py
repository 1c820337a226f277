import asyncio
import threading

import pytest

from fakes import RecordingNotifier, ScriptedProcessor, make_registry, make_store, make_task
from taskengine.engine import TaskEngine
from taskengine.models import ControlRequest, TaskStatus
from taskengine.service.settings import Settings


def _engine(tmp_path, processor: ScriptedProcessor, **overrides: object) -> TaskEngine:
    options: dict[str, object] = {
        "worker_pool_size": 1,
        "concurrency_limit": 1,
        "poll_interval_seconds": 0.05,
        "store_retry_base_seconds": 0.0,
        "shutdown_grace_seconds": 2.0,
    }
    options.update(overrides)
    settings = Settings(**options)  # type: ignore[arg-type]
    return TaskEngine(
        settings,
        store=make_store(tmp_path),
        registry=make_registry(processor),
        notifier=RecordingNotifier(),
    )


async def _wait_for_status(engine: TaskEngine, task_id: str, status: TaskStatus) -> None:
    for _ in range(200):
        task = engine.store.get_task(task_id, include_results=False)
        if task is not None and task.status == status:
            return
        await asyncio.sleep(0.05)
    raise AssertionError(f"{task_id} never reached {status.value}")


@pytest.mark.asyncio
async def test_highest_priority_oldest_first(tmp_path) -> None:
    processor = ScriptedProcessor()
    engine = _engine(tmp_path, processor)

    low = engine.store.create_task(make_task(count=1, priority=1))
    mid_old = engine.store.create_task(make_task(count=1, priority=5))
    high = engine.store.create_task(make_task(count=1, priority=9))
    mid_new = engine.store.create_task(make_task(count=1, priority=5))

    await engine.drain()
    engine.dispatcher.close()

    assert processor.started_tasks == [high, mid_old, mid_new, low]
    for task_id in (low, mid_old, high, mid_new):
        task = engine.store.get_task(task_id)
        assert task is not None and task.status == TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_concurrency_limit_caps_running_tasks(tmp_path) -> None:
    gate = threading.Event()
    processor = ScriptedProcessor(on_item=lambda task_id, index: gate.wait(timeout=10))
    engine = _engine(tmp_path, processor, worker_pool_size=4, concurrency_limit=2)

    task_ids = [engine.store.create_task(make_task(count=2)) for _ in range(3)]

    claimed = await engine.scheduler.tick()
    assert len(claimed) == 2
    assert engine.store.count_by_status()[TaskStatus.RUNNING] == 2
    assert await engine.scheduler.tick() == []

    gate.set()
    await engine.drain()
    engine.dispatcher.close()

    for task_id in task_ids:
        task = engine.store.get_task(task_id)
        assert task is not None and task.status == TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_retry_tasks_are_expanded_and_run(tmp_path) -> None:
    processor = ScriptedProcessor()
    engine = _engine(tmp_path, processor)

    task_id = engine.store.create_task(make_task(count=3, status=TaskStatus.RETRY))

    await engine.drain()
    engine.dispatcher.close()

    task = engine.store.get_task(task_id)
    assert task is not None
    assert task.status == TaskStatus.COMPLETED
    assert task.progress.processed_items == 3


@pytest.mark.asyncio
async def test_overdue_task_gets_cancel_request(tmp_path) -> None:
    processor = ScriptedProcessor()
    engine = _engine(tmp_path, processor, max_task_seconds=1)

    task_id = engine.store.create_task(make_task(count=3))
    engine.store.claim(task_id)
    await asyncio.sleep(1.2)

    await engine.scheduler.tick()
    engine.dispatcher.close()

    task = engine.store.get_task(task_id)
    assert task is not None
    assert task.status == TaskStatus.RUNNING
    assert task.control_request == ControlRequest.CANCEL


@pytest.mark.asyncio
async def test_engine_recovers_and_resumes_interrupted_task(tmp_path) -> None:
    processor = ScriptedProcessor()
    engine = _engine(tmp_path, processor)

    task_id = engine.store.create_task(make_task(count=4))
    engine.store.claim(task_id)

    await engine.start()
    try:
        await _wait_for_status(engine, task_id, TaskStatus.COMPLETED)
    finally:
        await engine.stop()

    task = engine.store.get_task(task_id)
    assert task is not None
    assert task.progress.processed_items == 4
    assert not engine.scheduler.running


@pytest.mark.asyncio
async def test_engine_wakes_on_create(tmp_path) -> None:
    processor = ScriptedProcessor()
    engine = _engine(tmp_path, processor, poll_interval_seconds=30.0)

    await engine.start()
    try:
        task_id = engine.control.create_task(
            make_task().type, "Woken", {"entity": "rows", "items": [{"id": "item-1", "value": 0}]}
        )
        await _wait_for_status(engine, task_id, TaskStatus.COMPLETED)
        status = engine.status()
    finally:
        await engine.stop()

    assert status["running"] is True
    assert status["worker_pool_size"] == 1
    assert status["task_counts"]["COMPLETED"] == 1
