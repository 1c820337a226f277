import logging
import re
import threading
import uuid
from typing import Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from taskengine.errors import PayloadValidationError
from taskengine.models import AccountType, BulkAccountCreationPayload, TaskPayload, TaskType
from taskengine.processors.base import (
    ItemContext,
    ItemFailure,
    ItemProcessor,
    validation_reason,
)

logger = logging.getLogger("taskengine.processors")

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class AccountItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    first_name: str = Field(min_length=1, max_length=128)
    last_name: str = Field(min_length=1, max_length=128)
    email: str | None = Field(default=None, max_length=256)
    official_email: str | None = Field(default=None, max_length=256)
    personal_email: str | None = Field(default=None, max_length=256)
    entity_id: str | None = Field(default=None, max_length=128)

    @property
    def primary_email(self) -> str | None:
        for candidate in (self.email, self.official_email, self.personal_email):
            if candidate and candidate.strip():
                return candidate.strip().lower()
        return None

    @model_validator(mode="after")
    def check_email(self) -> "AccountItem":
        email = self.primary_email
        if email is None:
            raise ValueError("one of email, official_email or personal_email is required")
        if not _EMAIL_PATTERN.match(email):
            raise ValueError(f"invalid email address '{email}'")
        return self


class AccountProvisioner(Protocol):
    def create_account(
        self, account_type: AccountType, account: AccountItem, branch_id: str | None
    ) -> str: ...


class InMemoryAccountDirectory:
    """Process-local account directory keyed by primary e-mail."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._accounts: dict[str, dict[str, object]] = {}

    def create_account(
        self, account_type: AccountType, account: AccountItem, branch_id: str | None
    ) -> str:
        email = account.primary_email or ""
        with self._lock:
            if email in self._accounts:
                raise ItemFailure(f"An account for '{email}' already exists")
            account_id = f"acct-{uuid.uuid4().hex[:12]}"
            self._accounts[email] = {
                "id": account_id,
                "account_type": account_type.value,
                "branch_id": branch_id,
                "first_name": account.first_name,
                "last_name": account.last_name,
                "entity_id": account.entity_id,
            }
        return account_id

    def get(self, email: str) -> dict[str, object] | None:
        with self._lock:
            record = self._accounts.get(email.strip().lower())
            return dict(record) if record is not None else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._accounts)


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:256] or response.reason_phrase
    if isinstance(body, dict):
        detail = body.get("detail") or body.get("error") or body.get("message")
        if detail:
            return str(detail)
    return str(body)[:256]


class HttpAccountProvisioner:
    """Creates accounts through an external identity service.

    4xx answers reject the single account. Transport errors and 5xx answers
    propagate and fail the task.
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        client: httpx.Client | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = client or httpx.Client(
            base_url=base_url.rstrip("/"), timeout=timeout_seconds, headers=headers
        )
        self._owns_client = client is None

    def create_account(
        self, account_type: AccountType, account: AccountItem, branch_id: str | None
    ) -> str:
        email = account.primary_email
        response = self._client.post(
            "/accounts",
            json={
                "account_type": account_type.value,
                "branch_id": branch_id,
                "email": email,
                "first_name": account.first_name,
                "last_name": account.last_name,
                "entity_id": account.entity_id,
                "metadata": account.model_extra or {},
            },
        )
        if 400 <= response.status_code < 500:
            raise ItemFailure(
                f"Account service rejected '{email}': {_error_detail(response)}"
            )
        response.raise_for_status()

        body = response.json()
        account_id = body.get("id") if isinstance(body, dict) else None
        if not account_id:
            raise ItemFailure(f"Account service returned no id for '{email}'")
        return str(account_id)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


class BulkAccountCreationProcessor(ItemProcessor):
    task_type = TaskType.BULK_ACCOUNT_CREATION

    def __init__(self, provisioner: AccountProvisioner | None = None) -> None:
        self._provisioner = provisioner or InMemoryAccountDirectory()

    @property
    def provisioner(self) -> AccountProvisioner:
        return self._provisioner

    def validate(self, payload: TaskPayload) -> None:
        self._require_items(payload)
        if not isinstance(payload, BulkAccountCreationPayload):
            raise PayloadValidationError("Expected a bulk account creation payload")

    def process(
        self, item: dict[str, object], context: ItemContext
    ) -> dict[str, object] | None:
        payload = context.payload
        assert isinstance(payload, BulkAccountCreationPayload)

        try:
            account = AccountItem.model_validate(item)
        except ValidationError as exc:
            raise ItemFailure(validation_reason(exc)) from exc

        account_id = self._provisioner.create_account(
            payload.account_type, account, payload.branch_id
        )
        logger.debug(
            "account_created",
            extra={
                "task_id": context.task_id,
                "item_index": context.index,
                "account_id": account_id,
            },
        )
        return {"account_id": account_id, "email": account.primary_email}

    def describe_item(
        self, item: dict[str, object], context: ItemContext
    ) -> str | None:
        name = " ".join(
            str(item.get(field, "")).strip() for field in ("first_name", "last_name")
        ).strip()
        email = next(
            (
                str(item[field]).strip()
                for field in ("email", "official_email", "personal_email")
                if item.get(field)
            ),
            None,
        )
        if name and email:
            return f"{name} <{email}>"
        return name or email or f"item {context.index}"
