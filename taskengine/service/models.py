from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str
    engine_running: bool | None = None
