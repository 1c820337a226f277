import hmac

from fastapi import Header, HTTPException, status

from taskengine.engine import get_engine

_API_KEY_HEADER = "X-Task-Engine-Key"


def require_api_key(
    x_task_engine_key: str | None = Header(default=None, alias=_API_KEY_HEADER),
) -> None:
    expected = get_engine().settings.api_key
    if not expected:
        return

    provided = (x_task_engine_key or "").strip()
    if not hmac.compare_digest(provided, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
