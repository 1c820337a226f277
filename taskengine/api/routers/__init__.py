from taskengine.api.routers.engine import router as engine_router
from taskengine.api.routers.health import router as health_router
from taskengine.api.routers.tasks import router as tasks_router

__all__ = [
    "engine_router",
    "health_router",
    "tasks_router",
]
