import logging
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from taskengine.api.routers import engine_router, health_router, tasks_router
from taskengine.engine import init_engine
from taskengine.service.logging_config import configure_logging
from taskengine.service.settings import Settings

load_dotenv()

settings = Settings.from_env()
configure_logging(settings.log_level)
logger = logging.getLogger("taskengine")


@asynccontextmanager
async def lifespan(_: FastAPI):
    engine = init_engine(settings)
    await engine.start()
    logger.info(
        "service_started",
        extra={"host": settings.host, "port": settings.port, "db_url": settings.db_url},
    )
    try:
        yield
    finally:
        await engine.stop()


app = FastAPI(title="Task Engine", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins or [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health_router)
app.include_router(tasks_router)
app.include_router(engine_router)


def main() -> None:
    uvicorn.run(
        "taskengine.service.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
