from datetime import datetime

from pydantic import BaseModel, Field


class TaskCreateRequest(BaseModel):
    task_type: str = Field(min_length=1, max_length=64)
    title: str = Field(min_length=1, max_length=256)
    description: str | None = Field(default=None, max_length=2048)
    payload: dict[str, object]
    priority: int = Field(default=5, ge=1, le=10)
    scope_id: str | None = Field(default=None, max_length=128)
    owner_id: str | None = Field(default=None, max_length=128)


class TaskCreateResponse(BaseModel):
    task_id: str


class TaskRetryRequest(BaseModel):
    in_place: bool = False


class TaskRetryResponse(BaseModel):
    task_id: str
    retry_of: str
    in_place: bool


class ProcessMetrics(BaseModel):
    pid: int
    cpu_percent: float
    rss_mb: float
    threads: int


class EngineStatusResponse(BaseModel):
    running: bool
    started_at: datetime | None = None
    worker_pool_size: int
    free_slots: int
    concurrency_limit: int
    active_task_ids: list[str] = Field(default_factory=list)
    task_counts: dict[str, int] = Field(default_factory=dict)
    task_types: list[str] = Field(default_factory=list)
    process: ProcessMetrics
