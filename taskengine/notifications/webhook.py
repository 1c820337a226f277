import hashlib
import hmac
import json
import logging
import time
from collections.abc import Callable

import httpx

from taskengine.models import TaskStatus
from taskengine.notifications.dispatcher import TaskSummary

logger = logging.getLogger("taskengine.notifications")

_SIGNATURE_HEADER = "X-Task-Engine-Signature"


class WebhookNotifier:
    """POSTs a JSON summary of each finished task to a webhook.

    5xx answers and transport errors are retried with exponential backoff;
    4xx answers are not retried.
    """

    def __init__(
        self,
        url: str,
        secret: str = "",
        client: httpx.Client | None = None,
        attempts: int = 3,
        backoff_seconds: float = 0.5,
        notify_on_completion: bool = True,
        notify_on_failure: bool = True,
        notify_on_cancel: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._url = url
        self._secret = secret
        self._client = client or httpx.Client(timeout=10.0)
        self._owns_client = client is None
        self._attempts = max(1, attempts)
        self._backoff_seconds = backoff_seconds
        self._enabled = {
            TaskStatus.COMPLETED: notify_on_completion,
            TaskStatus.FAILED: notify_on_failure,
            TaskStatus.CANCELLED: notify_on_cancel,
        }
        self._sleep = sleep

    def _headers(self, body: bytes) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._secret:
            digest = hmac.new(self._secret.encode(), body, hashlib.sha256).hexdigest()
            headers[_SIGNATURE_HEADER] = f"sha256={digest}"
        return headers

    def notify(self, task_id: str, status: TaskStatus, summary: TaskSummary) -> None:
        if not self._enabled.get(status, False):
            logger.debug(
                "webhook_skipped", extra={"task_id": task_id, "status": status.value}
            )
            return

        body = json.dumps(
            {
                "event": "task.finished",
                "task_id": task_id,
                "status": status.value,
                "summary": summary.model_dump(mode="json"),
            },
            separators=(",", ":"),
        ).encode()
        headers = self._headers(body)

        delay = self._backoff_seconds
        last_error: Exception | None = None
        for attempt in range(1, self._attempts + 1):
            try:
                response = self._client.post(self._url, content=body, headers=headers)
                if response.status_code < 500:
                    response.raise_for_status()
                    logger.info(
                        "webhook_delivered",
                        extra={
                            "task_id": task_id,
                            "status": status.value,
                            "attempt": attempt,
                        },
                    )
                    return
                last_error = httpx.HTTPStatusError(
                    f"Webhook answered {response.status_code}",
                    request=response.request,
                    response=response,
                )
            except httpx.TransportError as exc:
                last_error = exc

            if attempt < self._attempts:
                logger.warning(
                    "webhook_retry",
                    extra={
                        "task_id": task_id,
                        "attempt": attempt,
                        "error": str(last_error),
                        "retry_delay_seconds": delay,
                    },
                )
                self._sleep(delay)
                delay = min(delay * 2, 30.0)

        assert last_error is not None
        raise last_error

    def close(self) -> None:
        if self._owns_client:
            self._client.close()
