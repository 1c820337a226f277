import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from taskengine.db import TaskStore
from taskengine.errors import (
    PayloadValidationError,
    StoreUnavailableError,
    TaskConflictError,
)
from taskengine.models import ControlRequest, LogLevel, Task, TaskStatus
from taskengine.notifications import NotificationDispatcher
from taskengine.processors import ItemContext, ItemFailure, ItemProcessor, ProcessorRegistry
from taskengine.progress import Checkpointer, ItemOutcome
from taskengine.service.settings import Settings

logger = logging.getLogger("taskengine.worker")

_LABEL_LIMIT = 512
_REASON_LIMIT = 2048


def _process_item(
    processor: ItemProcessor, item: dict[str, object], context: ItemContext
) -> ItemOutcome:
    label = processor.describe_item(item, context)
    if label is not None:
        label = label[:_LABEL_LIMIT]

    try:
        output = processor.process(item, context)
    except ItemFailure as exc:
        return ItemOutcome(
            index=context.index,
            success=False,
            label=label,
            reason=(exc.reason or "Item failed")[:_REASON_LIMIT],
        )
    return ItemOutcome(index=context.index, success=True, label=label, output=output)


class TaskExecutor:
    """Runs one claimed task until it reaches its next resting status.

    Items are processed strictly in order starting at ``resume_cursor``.
    Progress is checkpointed every ``checkpoint_every_items`` items or
    ``checkpoint_interval_ms`` milliseconds, whichever comes first, and pause
    or cancel requests are read from the snapshot each checkpoint returns.
    A request is therefore honoured once the in-flight item finishes and
    within at most K items or T milliseconds of being made.
    """

    def __init__(
        self,
        store: TaskStore,
        registry: ProcessorRegistry,
        dispatcher: NotificationDispatcher,
        checkpoint_every_items: int = 1,
        checkpoint_interval_ms: int = 1000,
        store_retry_attempts: int = 5,
        store_retry_base_seconds: float = 0.5,
        store_retry_max_seconds: float = 30.0,
        should_stop: Callable[[], bool] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._registry = registry
        self._dispatcher = dispatcher
        self._checkpoint_every_items = checkpoint_every_items
        self._checkpoint_interval_ms = checkpoint_interval_ms
        self._store_retry_attempts = max(1, store_retry_attempts)
        self._store_retry_base_seconds = store_retry_base_seconds
        self._store_retry_max_seconds = store_retry_max_seconds
        self._should_stop = should_stop or (lambda: False)
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: TaskStore,
        registry: ProcessorRegistry,
        dispatcher: NotificationDispatcher,
        should_stop: Callable[[], bool] | None = None,
    ) -> "TaskExecutor":
        return cls(
            store,
            registry,
            dispatcher,
            checkpoint_every_items=settings.checkpoint_every_items,
            checkpoint_interval_ms=settings.checkpoint_interval_ms,
            store_retry_attempts=settings.store_retry_attempts,
            store_retry_base_seconds=settings.store_retry_base_seconds,
            store_retry_max_seconds=settings.store_retry_max_seconds,
            should_stop=should_stop,
        )

    async def execute(self, task: Task) -> Task:
        try:
            return await self._run(task)
        except StoreUnavailableError as exc:
            logger.error(
                "task_store_unavailable", extra={"task_id": task.id, "error": str(exc)}
            )
            return await self._fail_after_outage(task, exc)
        except TaskConflictError as exc:
            logger.warning(
                "task_ownership_lost", extra={"task_id": task.id, "error": str(exc)}
            )
            current = await asyncio.to_thread(self._store.get_task, task.id, False)
            return current or task

    async def _run(self, task: Task) -> Task:
        try:
            processor = self._registry.get(task.type)
            processor.validate(task.payload)
        except PayloadValidationError as exc:
            logger.warning(
                "task_validation_failed", extra={"task_id": task.id, "error": str(exc)}
            )
            return await self._finalize(
                task.id,
                TaskStatus.FAILED,
                LogLevel.ERROR,
                f"Payload validation failed: {exc}",
                error=f"Payload validation failed: {exc}",
            )

        items = task.payload.items
        total = len(items)
        if task.resume_cursor > 0:
            await self._log(
                task.id,
                LogLevel.INFO,
                f"Resumed at item {task.resume_cursor + 1} of {total}",
            )
        else:
            await self._log(task.id, LogLevel.INFO, f"Started processing {total} items")
        logger.info(
            "task_started",
            extra={
                "task_id": task.id,
                "task_type": task.type.value,
                "resume_cursor": task.resume_cursor,
                "total_items": total,
            },
        )

        checkpointer = Checkpointer(
            every_items=self._checkpoint_every_items,
            interval_ms=self._checkpoint_interval_ms,
            clock=self._clock,
        )
        snapshot = task
        index = task.resume_cursor
        stopping = False

        while index < total:
            if self._should_stop():
                stopping = True
                break

            context = ItemContext(task_id=task.id, index=index, payload=task.payload)
            try:
                outcome = await asyncio.to_thread(
                    _process_item, processor, items[index], context
                )
            except Exception as exc:  # noqa: BLE001
                return await self._fail_fatal(task, checkpointer, index, exc)

            checkpointer.record(outcome)
            index += 1
            details = {"item_index": outcome.index, "label": outcome.label}
            if outcome.success:
                await self._log(
                    task.id,
                    LogLevel.INFO,
                    f"Item {outcome.index + 1} succeeded: {outcome.label or '-'}",
                    details,
                )
            else:
                await self._log(
                    task.id,
                    LogLevel.WARN,
                    f"Item {outcome.index + 1} failed: {outcome.reason}",
                    details,
                )

            if checkpointer.due():
                snapshot = await self._checkpoint(task.id, checkpointer)
                if snapshot.control_request is not None:
                    break

        if checkpointer.pending:
            snapshot = await self._checkpoint(task.id, checkpointer)
        if stopping:
            current = await self._store_call(self._store.get_task, task.id, False)
            snapshot = current or snapshot

        processed = snapshot.progress.processed_items
        if snapshot.control_request == ControlRequest.CANCEL:
            return await self._finalize(
                task.id,
                TaskStatus.CANCELLED,
                LogLevel.WARN,
                f"Cancelled after {processed} of {total} items",
            )

        if index < total:
            try:
                return await self._hold(task.id, snapshot, total)
            except TaskConflictError:
                current = await self._store_call(self._store.get_task, task.id, False)
                if (
                    current is None
                    or current.status != TaskStatus.RUNNING
                    or current.control_request != ControlRequest.CANCEL
                ):
                    raise
                return await self._finalize(
                    task.id,
                    TaskStatus.CANCELLED,
                    LogLevel.WARN,
                    f"Cancelled after {current.progress.processed_items} of {total} items",
                )

        failed = snapshot.progress.failed_items
        if failed < snapshot.progress.total_items:
            return await self._finalize(
                task.id,
                TaskStatus.COMPLETED,
                LogLevel.INFO,
                f"Completed: {processed - failed} succeeded, {failed} failed",
            )
        return await self._finalize(
            task.id,
            TaskStatus.FAILED,
            LogLevel.ERROR,
            f"All {failed} items failed",
            error=f"All {failed} items failed",
        )

    async def _hold(self, task_id: str, snapshot: Task, total: int) -> Task:
        """Pause or release a task that stopped before its last item.

        Raises :class:`TaskConflictError` when a cancel arrived after the
        snapshot was read.
        """

        processed = snapshot.progress.processed_items
        if snapshot.control_request == ControlRequest.PAUSE:
            paused = await self._store_call(
                self._store.update_status,
                task_id,
                TaskStatus.RUNNING,
                TaskStatus.PAUSED,
                None,
                True,
            )
            await self._log(
                task_id, LogLevel.INFO, f"Paused after {processed} of {total} items"
            )
            logger.info(
                "task_paused",
                extra={"task_id": task_id, "resume_cursor": paused.resume_cursor},
            )
            return paused

        released = await self._store_call(self._store.requeue_running, task_id)
        await self._log(
            task_id,
            LogLevel.INFO,
            f"Released at item {released.resume_cursor + 1} for engine shutdown",
        )
        logger.info(
            "task_released",
            extra={"task_id": task_id, "resume_cursor": released.resume_cursor},
        )
        return released

    async def _checkpoint(self, task_id: str, checkpointer: Checkpointer) -> Task:
        delta = checkpointer.take()
        assert delta is not None
        return await self._store_call(self._store.append_progress, task_id, delta)

    async def _fail_fatal(
        self, task: Task, checkpointer: Checkpointer, index: int, exc: Exception
    ) -> Task:
        logger.error(
            "task_item_crashed",
            extra={"task_id": task.id, "item_index": index, "error": str(exc)},
            exc_info=exc,
        )
        if checkpointer.pending:
            await self._checkpoint(task.id, checkpointer)

        reason = f"Unhandled {type(exc).__name__} at item {index + 1}: {exc}"
        return await self._finalize(
            task.id, TaskStatus.FAILED, LogLevel.FATAL, reason, error=reason[:2048]
        )

    async def _fail_after_outage(self, task: Task, exc: StoreUnavailableError) -> Task:
        reason = f"Infrastructure error: {exc}"[:2048]
        try:
            return await self._finalize(
                task.id, TaskStatus.FAILED, LogLevel.FATAL, reason, error=reason
            )
        except (StoreUnavailableError, TaskConflictError) as final_exc:
            # Left RUNNING; recover_interrupted requeues it on the next start.
            logger.error(
                "task_finalize_failed",
                extra={"task_id": task.id, "error": str(final_exc)},
            )
            return task

    async def _finalize(
        self,
        task_id: str,
        status: TaskStatus,
        level: LogLevel,
        message: str,
        error: str | None = None,
    ) -> Task:
        finished = await self._store_call(
            self._store.update_status, task_id, TaskStatus.RUNNING, status, error
        )
        logger.info(
            "task_finished",
            extra={
                "task_id": task_id,
                "status": status.value,
                "processed_items": finished.progress.processed_items,
                "failed_items": finished.progress.failed_items,
                "total_items": finished.progress.total_items,
            },
        )
        await self._log(task_id, level, message)
        self._dispatcher.dispatch(finished)
        return finished

    async def _store_call(self, fn: Callable[..., Any], *args: Any) -> Any:
        delay = self._store_retry_base_seconds
        for attempt in range(1, self._store_retry_attempts + 1):
            try:
                return await asyncio.to_thread(fn, *args)
            except StoreUnavailableError as exc:
                if attempt >= self._store_retry_attempts:
                    raise
                logger.warning(
                    "store_call_retry",
                    extra={
                        "operation": getattr(fn, "__name__", "store_call"),
                        "attempt": attempt,
                        "error": str(exc),
                        "retry_delay_seconds": delay,
                    },
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._store_retry_max_seconds)
        raise AssertionError("unreachable")

    async def _log(
        self,
        task_id: str,
        level: LogLevel,
        message: str,
        details: dict[str, object] | None = None,
    ) -> None:
        try:
            await asyncio.to_thread(
                self._store.append_log, task_id, level, message, details
            )
        except StoreUnavailableError as exc:
            logger.warning(
                "task_log_write_failed", extra={"task_id": task_id, "error": str(exc)}
            )
