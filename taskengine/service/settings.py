import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(slots=True)
class Settings:
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    cors_origins: list[str] | None = None
    db_url: str = "sqlite:///./taskengine.db"
    api_key: str = ""
    worker_pool_size: int = 4
    concurrency_limit: int = 4
    poll_interval_seconds: float = 2.0
    checkpoint_every_items: int = 1
    checkpoint_interval_ms: int = 1000
    max_task_seconds: int = 0
    store_retry_attempts: int = 5
    store_retry_base_seconds: float = 0.5
    store_retry_max_seconds: float = 30.0
    shutdown_grace_seconds: float = 10.0
    webhook_url: str = ""
    webhook_secret: str = ""
    notify_on_completion: bool = True
    notify_on_failure: bool = True
    notify_on_cancel: bool = True
    account_service_url: str = ""
    account_service_token: str = ""
    import_sink: str = "database"

    @classmethod
    def from_env(cls) -> "Settings":
        cors_origins = [
            origin.strip()
            for origin in os.getenv(
                "TASK_ENGINE_CORS_ORIGINS", "http://localhost:5173"
            ).split(",")
            if origin.strip()
        ]

        return cls(
            host=os.getenv("TASK_ENGINE_HOST", "0.0.0.0"),
            port=int(os.getenv("TASK_ENGINE_PORT", "8000")),
            log_level=os.getenv("TASK_ENGINE_LOG_LEVEL", "INFO"),
            cors_origins=cors_origins,
            db_url=os.getenv("TASK_ENGINE_DB_URL", "sqlite:///./taskengine.db"),
            api_key=os.getenv("TASK_ENGINE_API_KEY", "").strip(),
            worker_pool_size=max(1, int(os.getenv("TASK_ENGINE_WORKER_POOL_SIZE", "4"))),
            concurrency_limit=max(1, int(os.getenv("TASK_ENGINE_CONCURRENCY_LIMIT", "4"))),
            poll_interval_seconds=float(
                os.getenv("TASK_ENGINE_POLL_INTERVAL_SECONDS", "2")
            ),
            checkpoint_every_items=max(
                1, int(os.getenv("TASK_ENGINE_CHECKPOINT_EVERY_ITEMS", "1"))
            ),
            checkpoint_interval_ms=max(
                0, int(os.getenv("TASK_ENGINE_CHECKPOINT_INTERVAL_MS", "1000"))
            ),
            max_task_seconds=max(0, int(os.getenv("TASK_ENGINE_MAX_TASK_SECONDS", "0"))),
            store_retry_attempts=max(
                1, int(os.getenv("TASK_ENGINE_STORE_RETRY_ATTEMPTS", "5"))
            ),
            store_retry_base_seconds=float(
                os.getenv("TASK_ENGINE_STORE_RETRY_BASE_SECONDS", "0.5")
            ),
            store_retry_max_seconds=float(
                os.getenv("TASK_ENGINE_STORE_RETRY_MAX_SECONDS", "30")
            ),
            shutdown_grace_seconds=float(
                os.getenv("TASK_ENGINE_SHUTDOWN_GRACE_SECONDS", "10")
            ),
            webhook_url=os.getenv("TASK_ENGINE_WEBHOOK_URL", "").strip(),
            webhook_secret=os.getenv("TASK_ENGINE_WEBHOOK_SECRET", "").strip(),
            notify_on_completion=_env_bool("TASK_ENGINE_NOTIFY_ON_COMPLETION", True),
            notify_on_failure=_env_bool("TASK_ENGINE_NOTIFY_ON_FAILURE", True),
            notify_on_cancel=_env_bool("TASK_ENGINE_NOTIFY_ON_CANCEL", True),
            account_service_url=os.getenv("TASK_ENGINE_ACCOUNT_SERVICE_URL", "").strip(),
            account_service_token=os.getenv(
                "TASK_ENGINE_ACCOUNT_SERVICE_TOKEN", ""
            ).strip(),
            import_sink=os.getenv("TASK_ENGINE_IMPORT_SINK", "database").strip().lower(),
        )
