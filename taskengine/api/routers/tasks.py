from fastapi import APIRouter, Body, Depends, HTTPException, Query, Response, status

from taskengine.api.auth import require_api_key
from taskengine.api.schemas import (
    TaskCreateRequest,
    TaskCreateResponse,
    TaskRetryRequest,
    TaskRetryResponse,
)
from taskengine.control import TaskControl
from taskengine.engine import get_engine
from taskengine.errors import (
    InvalidTransitionError,
    PayloadValidationError,
    StoreUnavailableError,
    TaskConflictError,
    TaskEngineError,
    TaskNotFoundError,
)
from taskengine.models import ItemResult, Task, TaskDetail, TaskLogEntry, TaskStatus, TaskType

router = APIRouter(
    prefix="/v1/tasks", tags=["tasks"], dependencies=[Depends(require_api_key)]
)


def _control() -> TaskControl:
    return get_engine().control


def _http_error(exc: TaskEngineError) -> HTTPException:
    if isinstance(exc, TaskNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, (InvalidTransitionError, TaskConflictError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, PayloadValidationError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, StoreUnavailableError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _parse_task_type(raw: str) -> TaskType:
    normalized = raw.strip().upper().replace("-", "_")
    mapping = {
        "BULK_IMPORT": TaskType.BULK_IMPORT,
        "IMPORT": TaskType.BULK_IMPORT,
        "BULK_ACCOUNT_CREATION": TaskType.BULK_ACCOUNT_CREATION,
        "BULK_CLERK_CREATION": TaskType.BULK_ACCOUNT_CREATION,
        "ACCOUNTS": TaskType.BULK_ACCOUNT_CREATION,
    }

    task_type = mapping.get(normalized)
    if task_type is None:
        raise HTTPException(status_code=422, detail=f"Unsupported task_type '{raw}'")
    return task_type


def _parse_statuses(raw: list[str] | None) -> list[TaskStatus]:
    statuses: list[TaskStatus] = []
    for value in raw or []:
        for part in value.split(","):
            normalized = part.strip().upper()
            if not normalized:
                continue
            try:
                statuses.append(TaskStatus(normalized))
            except ValueError as exc:
                raise HTTPException(
                    status_code=422, detail=f"Unsupported status '{part.strip()}'"
                ) from exc
    return statuses


@router.post("", response_model=TaskCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_task_route(
    payload: TaskCreateRequest = Body(
        ...,
        examples={
            "accounts": {
                "summary": "Create student accounts",
                "value": {
                    "task_type": "BULK_ACCOUNT_CREATION",
                    "title": "Grade 5 student accounts",
                    "priority": 7,
                    "scope_id": "branch-1",
                    "payload": {
                        "account_type": "student",
                        "branch_id": "branch-1",
                        "items": [
                            {
                                "first_name": "Asha",
                                "last_name": "Rao",
                                "official_email": "asha.rao@school.example",
                            }
                        ],
                    },
                },
            }
        },
    ),
) -> TaskCreateResponse:
    """Create a background task; the scheduler picks it up on its next tick."""

    task_type = _parse_task_type(payload.task_type)
    try:
        task_id = _control().create_task(
            task_type,
            payload.title,
            payload.payload,
            description=payload.description,
            priority=payload.priority,
            scope_id=payload.scope_id,
            owner_id=payload.owner_id,
        )
    except TaskEngineError as exc:
        raise _http_error(exc) from exc
    return TaskCreateResponse(task_id=task_id)


@router.get("", response_model=list[Task])
async def list_tasks_route(
    scope_id: str | None = Query(default=None),
    owner_id: str | None = Query(default=None),
    task_status: list[str] | None = Query(default=None, alias="status"),
    task_type: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
) -> list[Task]:
    """List tasks newest first. ``status`` may repeat or hold a comma-separated list."""

    statuses = _parse_statuses(task_status)
    parsed_type = _parse_task_type(task_type) if task_type else None
    try:
        return _control().list_tasks(
            scope_id=scope_id,
            statuses=statuses,
            owner_id=owner_id,
            task_type=parsed_type,
            limit=limit,
        )
    except TaskEngineError as exc:
        raise _http_error(exc) from exc


@router.get("/{task_id}", response_model=TaskDetail)
async def get_task_route(task_id: str) -> TaskDetail:
    """Return a task with its current-run item results and its 10 most recent log entries."""

    try:
        return _control().get_task_detail(task_id)
    except TaskEngineError as exc:
        raise _http_error(exc) from exc


@router.get("/{task_id}/results", response_model=list[ItemResult])
async def task_results_route(
    task_id: str,
    failed_only: bool = Query(default=False),
    run: int | None = Query(default=None, ge=1),
) -> list[ItemResult]:
    try:
        return _control().task_results(task_id, failed_only=failed_only, run=run)
    except TaskEngineError as exc:
        raise _http_error(exc) from exc


@router.get("/{task_id}/logs", response_model=list[TaskLogEntry])
async def task_logs_route(
    task_id: str, limit: int = Query(default=100, ge=1, le=1000)
) -> list[TaskLogEntry]:
    try:
        return _control().task_logs(task_id, limit=limit)
    except TaskEngineError as exc:
        raise _http_error(exc) from exc


@router.post("/{task_id}/pause", response_model=Task)
async def pause_task_route(task_id: str) -> Task:
    """Request a pause; the worker stops after the in-flight item at its next checkpoint."""

    try:
        return _control().pause_task(task_id)
    except TaskEngineError as exc:
        raise _http_error(exc) from exc


@router.post("/{task_id}/resume", response_model=Task)
async def resume_task_route(task_id: str) -> Task:
    try:
        return _control().resume_task(task_id)
    except TaskEngineError as exc:
        raise _http_error(exc) from exc


@router.post("/{task_id}/cancel", response_model=Task)
async def cancel_task_route(task_id: str) -> Task:
    """Cancel a task. RUNNING tasks stop at their next checkpoint; others are cancelled at once."""

    try:
        return _control().cancel_task(task_id)
    except TaskEngineError as exc:
        raise _http_error(exc) from exc


@router.post("/{task_id}/retry", response_model=TaskRetryResponse)
async def retry_task_route(
    task_id: str,
    payload: TaskRetryRequest | None = Body(default=None),
) -> TaskRetryResponse:
    """Queue the failed items again, as a new task unless ``in_place`` is set."""

    in_place = payload.in_place if payload is not None else False
    try:
        retried_id = _control().retry_task(task_id, in_place=in_place)
    except TaskEngineError as exc:
        raise _http_error(exc) from exc
    return TaskRetryResponse(task_id=retried_id, retry_of=task_id, in_place=in_place)


@router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_task_route(task_id: str) -> Response:
    """Delete a finished task; active tasks must be cancelled first."""

    try:
        _control().delete_task(task_id)
    except TaskEngineError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
