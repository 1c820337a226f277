from fastapi import APIRouter

from taskengine.engine import get_engine
from taskengine.service.models import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
@router.get("/api/health", response_model=HealthResponse, include_in_schema=False)
async def health() -> HealthResponse:
    """Health check endpoint.

    Example response:
    {
      "status": "ok",
      "engine_running": true
    }
    """

    try:
        engine_running = get_engine().scheduler.running
    except RuntimeError:
        engine_running = None
    return HealthResponse(status="ok", engine_running=engine_running)
