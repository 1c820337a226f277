from datetime import datetime, timezone

from pydantic import BaseModel, Field, computed_field, model_validator

from taskengine.models.enums import (
    ControlRequest,
    LogLevel,
    TaskStatus,
    TaskType,
    ui_status as _ui_status,
)
from taskengine.models.payloads import TaskPayload


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TaskProgress(BaseModel):
    processed_items: int = Field(default=0, ge=0)
    total_items: int = Field(default=0, ge=0)
    failed_items: int = Field(default=0, ge=0)
    percentage: int = Field(default=0, ge=0, le=100)

    @model_validator(mode="after")
    def check_counters(self) -> "TaskProgress":
        if self.processed_items > self.total_items:
            raise ValueError("processed_items cannot exceed total_items")
        if self.failed_items > self.processed_items:
            raise ValueError("failed_items cannot exceed processed_items")
        return self


class ItemResult(BaseModel):
    item_index: int = Field(ge=0)
    run: int = Field(default=1, ge=1)
    success: bool
    label: str | None = Field(default=None, max_length=512)
    reason: str | None = Field(default=None, max_length=2048)
    output: dict[str, object] | None = None
    created_at: datetime = Field(default_factory=_utc_now)


class TaskResults(BaseModel):
    succeeded: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    items: list[ItemResult] = Field(default_factory=list)


class Task(BaseModel):
    id: str = Field(min_length=1, max_length=128)
    type: TaskType
    title: str = Field(min_length=1, max_length=256)
    description: str | None = Field(default=None, max_length=2048)
    status: TaskStatus = TaskStatus.PENDING
    payload: TaskPayload
    progress: TaskProgress = Field(default_factory=TaskProgress)
    results: TaskResults = Field(default_factory=TaskResults)
    priority: int = Field(default=5, ge=1, le=10)
    owner_id: str | None = Field(default=None, max_length=128)
    scope_id: str | None = Field(default=None, max_length=128)
    resume_cursor: int = Field(default=0, ge=0)
    control_request: ControlRequest | None = None
    run: int = Field(default=1, ge=1)
    retry_of: str | None = Field(default=None, max_length=128)
    error: str | None = Field(default=None, max_length=2048)
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @model_validator(mode="after")
    def check_payload_kind(self) -> "Task":
        if self.payload.kind != self.type.value:
            raise ValueError(
                f"Payload kind '{self.payload.kind}' does not match task type '{self.type.value}'"
            )
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def ui_status(self) -> str:
        return _ui_status(self.status)


class TaskLogEntry(BaseModel):
    id: int | None = None
    task_id: str = Field(min_length=1, max_length=128)
    level: LogLevel = LogLevel.INFO
    message: str = Field(min_length=1, max_length=2048)
    details: dict[str, object] | None = None
    created_at: datetime = Field(default_factory=_utc_now)


class TaskDetail(BaseModel):
    task: Task
    recent_logs: list[TaskLogEntry] = Field(default_factory=list)
