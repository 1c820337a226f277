import os

import psutil
from fastapi import APIRouter, Depends, status

from taskengine.api.auth import require_api_key
from taskengine.api.schemas import EngineStatusResponse, ProcessMetrics
from taskengine.engine import get_engine

router = APIRouter(
    prefix="/v1/engine", tags=["engine"], dependencies=[Depends(require_api_key)]
)


def _process_metrics() -> ProcessMetrics:
    process = psutil.Process(os.getpid())
    with process.oneshot():
        return ProcessMetrics(
            pid=process.pid,
            cpu_percent=float(process.cpu_percent(interval=None)),
            rss_mb=round(process.memory_info().rss / (1024**2), 3),
            threads=process.num_threads(),
        )


@router.get("/status", response_model=EngineStatusResponse)
async def engine_status() -> EngineStatusResponse:
    """Scheduler state, worker pool occupancy, task counts per status and process metrics."""

    payload = get_engine().status()
    return EngineStatusResponse.model_validate({**payload, "process": _process_metrics()})


@router.post("/wake", status_code=status.HTTP_202_ACCEPTED)
async def wake_engine() -> dict[str, str]:
    """Ask the scheduler to look for runnable tasks now instead of at the next poll."""

    get_engine().wake()
    return {"status": "accepted"}
