import json
import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import case, create_engine, delete, func, or_, select, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from taskengine.db.migrate import apply_migrations
from taskengine.db.orm import ItemResultRecord, TaskLogRecord, TaskRecord
from taskengine.errors import (
    InvalidTransitionError,
    StoreUnavailableError,
    TaskConflictError,
    TaskNotFoundError,
    TaskStillActiveError,
)
from taskengine.models import (
    TERMINAL_STATUSES,
    ControlRequest,
    ItemResult,
    LogLevel,
    Task,
    TaskLogEntry,
    TaskPayload,
    TaskResults,
    TaskStatus,
    TaskType,
    is_transition_allowed,
    load_payload,
)
from taskengine.progress import ProgressDelta, build_progress, compute_percentage

logger = logging.getLogger("taskengine.db")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _encode_json(value: dict[str, object] | None) -> str:
    return json.dumps(value or {}, separators=(",", ":"), default=str)


def _decode_json(value: str | None) -> dict[str, object]:
    if not value:
        return {}
    decoded = json.loads(value)
    if isinstance(decoded, dict):
        return decoded
    return {"value": decoded}


def new_task_id() -> str:
    return f"task-{uuid.uuid4().hex[:12]}"


@dataclass(slots=True)
class TaskFilter:
    scope_id: str | None = None
    owner_id: str | None = None
    statuses: tuple[TaskStatus, ...] = ()
    task_type: TaskType | None = None
    limit: int | None = None
    newest_first: bool = True


class TaskStore:
    """Durable task state backed by SQLite.

    Status changes go through :meth:`update_status` (compare-and-swap on the
    stored status) and counters through :meth:`append_progress` (SQL-side
    increments in one transaction). No other method writes either.
    """

    def __init__(self, db_url: str) -> None:
        apply_migrations(db_url)
        self._engine = create_engine(
            db_url,
            future=True,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        self._session_factory = sessionmaker(
            bind=self._engine, autoflush=False, expire_on_commit=False
        )

    @contextmanager
    def _begin(self) -> Iterator[Session]:
        try:
            with self._session_factory.begin() as session:
                yield session
        except (OperationalError, InterfaceError) as exc:
            raise StoreUnavailableError(f"Task store unavailable: {exc}") from exc

    @contextmanager
    def _read(self) -> Iterator[Session]:
        try:
            with self._session_factory() as session:
                yield session
        except (OperationalError, InterfaceError) as exc:
            raise StoreUnavailableError(f"Task store unavailable: {exc}") from exc

    def _to_item_result(self, row: ItemResultRecord) -> ItemResult:
        return ItemResult(
            item_index=row.item_index,
            run=row.run,
            success=bool(row.success),
            label=row.label,
            reason=row.reason,
            output=_decode_json(row.output_json) if row.output_json else None,
            created_at=_as_utc(row.created_at) or _utc_now(),
        )

    def _to_task(
        self, row: TaskRecord, item_rows: list[ItemResultRecord] | None = None
    ) -> Task:
        return Task(
            id=row.id,
            type=TaskType(row.type),
            title=row.title,
            description=row.description,
            status=TaskStatus(row.status),
            payload=load_payload(_decode_json(row.payload_json)),
            progress=build_progress(
                row.processed_items, row.total_items, row.failed_items
            ),
            results=TaskResults(
                succeeded=row.processed_items - row.failed_items,
                failed=row.failed_items,
                items=[self._to_item_result(item) for item in item_rows or []],
            ),
            priority=row.priority,
            owner_id=row.owner_id,
            scope_id=row.scope_id,
            resume_cursor=row.resume_cursor,
            control_request=(
                ControlRequest(row.control_request) if row.control_request else None
            ),
            run=row.run,
            retry_of=row.retry_of,
            error=row.error,
            created_at=_as_utc(row.created_at) or _utc_now(),
            updated_at=_as_utc(row.updated_at) or _utc_now(),
            started_at=_as_utc(row.started_at),
            completed_at=_as_utc(row.completed_at),
        )

    def _item_rows(
        self,
        session: Session,
        task_id: str,
        run: int,
        failed_only: bool = False,
    ) -> list[ItemResultRecord]:
        stmt = select(ItemResultRecord).where(
            ItemResultRecord.task_id == task_id, ItemResultRecord.run == run
        )
        if failed_only:
            stmt = stmt.where(ItemResultRecord.success == 0)
        stmt = stmt.order_by(ItemResultRecord.item_index.asc(), ItemResultRecord.id.asc())
        return list(session.scalars(stmt).all())

    def _load_for_update(self, session: Session, task_id: str) -> TaskRecord:
        row = session.get(TaskRecord, task_id, populate_existing=True)
        if row is None:
            raise TaskNotFoundError(task_id)
        return row

    def create_task(self, task: Task | dict[str, object]) -> str:
        payload = Task.model_validate(task)
        if payload.status not in {TaskStatus.PENDING, TaskStatus.RETRY}:
            raise ValueError(
                f"Tasks are created PENDING or RETRY, not {payload.status.value}"
            )

        with self._begin() as session:
            if session.get(TaskRecord, payload.id) is not None:
                raise TaskConflictError(payload.id, f"Task '{payload.id}' already exists")

            sequence = (session.scalar(select(func.max(TaskRecord.sequence))) or 0) + 1
            row = TaskRecord(
                id=payload.id,
                sequence=sequence,
                type=payload.type.value,
                title=payload.title,
                description=payload.description,
                status=payload.status.value,
                payload_json=_encode_json(payload.payload.model_dump(mode="json")),
                priority=payload.priority,
                owner_id=payload.owner_id,
                scope_id=payload.scope_id,
                processed_items=0,
                total_items=len(payload.payload.items),
                failed_items=0,
                percentage=0,
                resume_cursor=0,
                control_request=None,
                run=payload.run,
                retry_of=payload.retry_of,
                error=None,
                created_at=payload.created_at,
                updated_at=payload.updated_at,
                started_at=None,
                completed_at=None,
            )
            session.add(row)

        logger.info(
            "task_created",
            extra={
                "task_id": payload.id,
                "task_type": payload.type.value,
                "status": payload.status.value,
                "total_items": len(payload.payload.items),
            },
        )
        return payload.id

    def get_task(self, task_id: str, include_results: bool = True) -> Task | None:
        with self._read() as session:
            row = session.get(TaskRecord, task_id)
            if row is None:
                return None
            item_rows = (
                self._item_rows(session, task_id, row.run) if include_results else None
            )
            return self._to_task(row, item_rows)

    def list_tasks(
        self, task_filter: TaskFilter | None = None, include_results: bool = False
    ) -> list[Task]:
        task_filter = task_filter or TaskFilter()

        stmt = select(TaskRecord)
        if task_filter.scope_id is not None:
            stmt = stmt.where(TaskRecord.scope_id == task_filter.scope_id)
        if task_filter.owner_id is not None:
            stmt = stmt.where(TaskRecord.owner_id == task_filter.owner_id)
        if task_filter.statuses:
            stmt = stmt.where(
                TaskRecord.status.in_([status.value for status in task_filter.statuses])
            )
        if task_filter.task_type is not None:
            stmt = stmt.where(TaskRecord.type == task_filter.task_type.value)

        if task_filter.newest_first:
            stmt = stmt.order_by(TaskRecord.created_at.desc(), TaskRecord.sequence.desc())
        else:
            stmt = stmt.order_by(TaskRecord.created_at.asc(), TaskRecord.sequence.asc())
        if task_filter.limit is not None:
            stmt = stmt.limit(task_filter.limit)

        with self._read() as session:
            rows = session.scalars(stmt).all()
            return [
                self._to_task(
                    row,
                    self._item_rows(session, row.id, row.run) if include_results else None,
                )
                for row in rows
            ]

    def list_claimable(self, limit: int) -> list[Task]:
        """PENDING/QUEUED tasks, highest priority first, then oldest first."""

        stmt = (
            select(TaskRecord)
            .where(
                TaskRecord.status.in_(
                    [TaskStatus.PENDING.value, TaskStatus.QUEUED.value]
                )
            )
            .order_by(TaskRecord.priority.desc(), TaskRecord.sequence.asc())
            .limit(limit)
        )
        with self._read() as session:
            return [self._to_task(row) for row in session.scalars(stmt).all()]

    def list_overdue(self, started_before: datetime) -> list[Task]:
        stmt = select(TaskRecord).where(
            TaskRecord.status == TaskStatus.RUNNING.value,
            TaskRecord.started_at.is_not(None),
            TaskRecord.started_at < started_before,
        )
        with self._read() as session:
            return [self._to_task(row) for row in session.scalars(stmt).all()]

    def count_by_status(self) -> dict[TaskStatus, int]:
        with self._read() as session:
            rows = session.execute(
                select(TaskRecord.status, func.count(TaskRecord.id)).group_by(
                    TaskRecord.status
                )
            ).all()
        counts = {status: 0 for status in TaskStatus}
        for status, count in rows:
            counts[TaskStatus(status)] = int(count)
        return counts

    def update_status(
        self,
        task_id: str,
        from_status: TaskStatus,
        to_status: TaskStatus,
        error: str | None = None,
        unless_cancelling: bool = False,
    ) -> Task:
        """Compare-and-swap the status of ``task_id`` from ``from_status``.

        With ``unless_cancelling`` the swap also requires that no cancel is
        pending, so a cancel accepted while RUNNING is never cleared by a
        pause or release.
        """

        if not is_transition_allowed(from_status, to_status):
            raise InvalidTransitionError(task_id, from_status, to_status)

        now = _utc_now()
        values: dict[str, object] = {"status": to_status.value, "updated_at": now}
        if from_status == TaskStatus.RUNNING:
            values["control_request"] = None
        if to_status == TaskStatus.RUNNING:
            values["started_at"] = func.coalesce(TaskRecord.started_at, now)
        if to_status in TERMINAL_STATUSES:
            values["completed_at"] = now
        if error is not None:
            values["error"] = error

        stmt = update(TaskRecord).where(
            TaskRecord.id == task_id,
            TaskRecord.status == from_status.value,
        )
        if unless_cancelling:
            stmt = stmt.where(
                or_(
                    TaskRecord.control_request.is_(None),
                    TaskRecord.control_request != ControlRequest.CANCEL.value,
                )
            )

        with self._begin() as session:
            result = session.execute(
                stmt.values(**values).execution_options(synchronize_session=False)
            )
            row = self._load_for_update(session, task_id)
            if result.rowcount == 0:
                if row.status == from_status.value:
                    raise TaskConflictError(
                        task_id, f"Task '{task_id}' has a pending cancel"
                    )
                raise TaskConflictError(
                    task_id,
                    f"Task '{task_id}' is {row.status}, expected {from_status.value}",
                )
            task = self._to_task(row)

        logger.debug(
            "task_status_changed",
            extra={
                "task_id": task_id,
                "from_status": from_status.value,
                "to_status": to_status.value,
            },
        )
        return task

    def claim(self, task_id: str) -> Task:
        """Move a PENDING or QUEUED task to RUNNING.

        PENDING tasks pass through QUEUED first; every step is a
        compare-and-swap, so concurrent claimers see exactly one winner and
        the rest get :class:`TaskConflictError`.
        """

        task = self.get_task(task_id, include_results=False)
        if task is None:
            raise TaskNotFoundError(task_id)

        if task.status == TaskStatus.PENDING:
            self.update_status(task_id, TaskStatus.PENDING, TaskStatus.QUEUED)
        elif task.status != TaskStatus.QUEUED:
            raise TaskConflictError(
                task_id, f"Task '{task_id}' is {task.status.value}, not claimable"
            )
        return self.update_status(task_id, TaskStatus.QUEUED, TaskStatus.RUNNING)

    def requeue_running(self, task_id: str) -> Task:
        """Release a RUNNING task back to the queue at its current cursor."""

        self.update_status(
            task_id, TaskStatus.RUNNING, TaskStatus.PAUSED, unless_cancelling=True
        )
        return self.update_status(task_id, TaskStatus.PAUSED, TaskStatus.QUEUED)

    def request_control(self, task_id: str, request: ControlRequest) -> Task:
        now = _utc_now()
        stmt = update(TaskRecord).where(
            TaskRecord.id == task_id,
            TaskRecord.status == TaskStatus.RUNNING.value,
        )
        if request == ControlRequest.PAUSE:
            # A pending cancel wins over a later pause.
            stmt = stmt.where(
                or_(
                    TaskRecord.control_request.is_(None),
                    TaskRecord.control_request == ControlRequest.PAUSE.value,
                )
            )

        with self._begin() as session:
            result = session.execute(
                stmt.values(control_request=request.value, updated_at=now).execution_options(
                    synchronize_session=False
                )
            )
            row = self._load_for_update(session, task_id)
            if result.rowcount == 0:
                current = TaskStatus(row.status)
                requested = (
                    TaskStatus.PAUSED
                    if request == ControlRequest.PAUSE
                    else TaskStatus.CANCELLED
                )
                if current != TaskStatus.RUNNING:
                    raise InvalidTransitionError(
                        task_id, current, requested, "task is not running"
                    )
                raise InvalidTransitionError(
                    task_id, current, requested, "cancellation already requested"
                )
            return self._to_task(row)

    def append_progress(self, task_id: str, delta: ProgressDelta) -> Task:
        now = _utc_now()
        processed = delta.processed
        failed = delta.failed

        with self._begin() as session:
            result = session.execute(
                update(TaskRecord)
                .where(
                    TaskRecord.id == task_id,
                    TaskRecord.status == TaskStatus.RUNNING.value,
                    TaskRecord.processed_items + processed <= TaskRecord.total_items,
                )
                .values(
                    processed_items=TaskRecord.processed_items + processed,
                    failed_items=TaskRecord.failed_items + failed,
                    resume_cursor=case(
                        (TaskRecord.resume_cursor < delta.resume_cursor, delta.resume_cursor),
                        else_=TaskRecord.resume_cursor,
                    ),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            row = self._load_for_update(session, task_id)
            if result.rowcount == 0:
                if row.status != TaskStatus.RUNNING.value:
                    raise TaskConflictError(
                        task_id,
                        f"Task '{task_id}' is {row.status}; progress is only recorded while RUNNING",
                    )
                raise TaskConflictError(
                    task_id,
                    f"Task '{task_id}' progress would exceed {row.total_items} items",
                )

            row.percentage = compute_percentage(row.processed_items, row.total_items)
            for outcome in delta.outcomes:
                session.add(
                    ItemResultRecord(
                        task_id=task_id,
                        run=row.run,
                        item_index=outcome.index,
                        success=1 if outcome.success else 0,
                        label=outcome.label,
                        reason=outcome.reason,
                        output_json=(
                            _encode_json(outcome.output)
                            if outcome.output is not None
                            else None
                        ),
                        created_at=now,
                    )
                )
            session.flush()
            return self._to_task(row)

    def reset_for_retry(self, task_id: str, payload: TaskPayload) -> Task:
        """Start a fresh run with ``payload``; only legal while the task is RETRY."""

        now = _utc_now()
        with self._begin() as session:
            result = session.execute(
                update(TaskRecord)
                .where(
                    TaskRecord.id == task_id,
                    TaskRecord.status == TaskStatus.RETRY.value,
                )
                .values(
                    payload_json=_encode_json(payload.model_dump(mode="json")),
                    total_items=len(payload.items),
                    processed_items=0,
                    failed_items=0,
                    percentage=0,
                    resume_cursor=0,
                    run=TaskRecord.run + 1,
                    control_request=None,
                    error=None,
                    started_at=None,
                    completed_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            row = self._load_for_update(session, task_id)
            if result.rowcount == 0:
                raise InvalidTransitionError(
                    task_id,
                    TaskStatus(row.status),
                    TaskStatus.RETRY,
                    "a fresh run can only be prepared for a RETRY task",
                )
            return self._to_task(row)

    def delete_task(self, task_id: str) -> None:
        with self._begin() as session:
            result = session.execute(
                delete(TaskRecord)
                .where(
                    TaskRecord.id == task_id,
                    TaskRecord.status.in_([status.value for status in TERMINAL_STATUSES]),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                row = session.get(TaskRecord, task_id)
                if row is None:
                    raise TaskNotFoundError(task_id)
                raise TaskStillActiveError(task_id, TaskStatus(row.status))

            session.execute(
                delete(ItemResultRecord)
                .where(ItemResultRecord.task_id == task_id)
                .execution_options(synchronize_session=False)
            )
            session.execute(
                delete(TaskLogRecord)
                .where(TaskLogRecord.task_id == task_id)
                .execution_options(synchronize_session=False)
            )

        logger.info("task_deleted", extra={"task_id": task_id})

    def item_results(
        self, task_id: str, run: int | None = None, failed_only: bool = False
    ) -> list[ItemResult]:
        with self._read() as session:
            row = session.get(TaskRecord, task_id)
            if row is None:
                raise TaskNotFoundError(task_id)
            rows = self._item_rows(
                session, task_id, run if run is not None else row.run, failed_only
            )
            return [self._to_item_result(item) for item in rows]

    def append_log(
        self,
        task_id: str,
        level: LogLevel,
        message: str,
        details: dict[str, object] | None = None,
    ) -> TaskLogEntry:
        now = _utc_now()
        with self._begin() as session:
            row = TaskLogRecord(
                task_id=task_id,
                level=level.value,
                message=message[:2048],
                details_json=_encode_json(details) if details is not None else None,
                created_at=now,
            )
            session.add(row)
            session.flush()
            return self._to_log_entry(row)

    def list_logs(self, task_id: str, limit: int | None = None) -> list[TaskLogEntry]:
        stmt = (
            select(TaskLogRecord)
            .where(TaskLogRecord.task_id == task_id)
            .order_by(TaskLogRecord.id.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._read() as session:
            return [self._to_log_entry(row) for row in session.scalars(stmt).all()]

    def _to_log_entry(self, row: TaskLogRecord) -> TaskLogEntry:
        return TaskLogEntry(
            id=row.id,
            task_id=row.task_id,
            level=LogLevel(row.level),
            message=row.message,
            details=_decode_json(row.details_json) if row.details_json else None,
            created_at=_as_utc(row.created_at) or _utc_now(),
        )

    def recover_interrupted(self) -> list[Task]:
        """Settle tasks left RUNNING by a previous process.

        Tasks with a pending cancel are cancelled; everything else is
        requeued and resumes from its ``resume_cursor``.
        """

        recovered: list[Task] = []
        running = self.list_tasks(
            TaskFilter(statuses=(TaskStatus.RUNNING,), newest_first=False)
        )
        for task in running:
            try:
                if task.control_request == ControlRequest.CANCEL:
                    settled = self.update_status(
                        task.id, TaskStatus.RUNNING, TaskStatus.CANCELLED
                    )
                else:
                    settled = self.requeue_running(task.id)
            except TaskConflictError:
                logger.warning("task_recovery_conflict", extra={"task_id": task.id})
                continue

            self.append_log(
                task.id,
                LogLevel.WARN,
                f"Recovered after interruption at item {settled.resume_cursor} "
                f"of {settled.progress.total_items}; now {settled.status.value}",
            )
            recovered.append(settled)

        if recovered:
            logger.info(
                "tasks_recovered",
                extra={
                    "count": len(recovered),
                    "task_ids": [task.id for task in recovered],
                },
            )
        return recovered

    def close(self) -> None:
        self._engine.dispose()
