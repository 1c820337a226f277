from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from taskengine.models.enums import AccountType, TaskType


class BulkImportPayload(BaseModel):
    kind: Literal["BULK_IMPORT"] = "BULK_IMPORT"
    entity: str = Field(min_length=1, max_length=64)
    key_field: str = Field(default="id", min_length=1, max_length=64)
    required_fields: list[str] = Field(default_factory=list)
    items: list[dict[str, object]] = Field(default_factory=list)


class BulkAccountCreationPayload(BaseModel):
    kind: Literal["BULK_ACCOUNT_CREATION"] = "BULK_ACCOUNT_CREATION"
    account_type: AccountType
    branch_id: str | None = Field(default=None, max_length=128)
    items: list[dict[str, object]] = Field(default_factory=list)


TaskPayload = Annotated[
    Union[BulkImportPayload, BulkAccountCreationPayload],
    Field(discriminator="kind"),
]

_payload_adapter: TypeAdapter[TaskPayload] = TypeAdapter(TaskPayload)


def parse_payload(task_type: TaskType, raw: dict[str, object]) -> TaskPayload:
    """Validate a raw payload against the union member selected by ``task_type``.

    A missing ``kind`` tag is filled in from the task type; a tag that names a
    different type is rejected by the discriminator.
    """

    data = dict(raw)
    data.setdefault("kind", task_type.value)
    if data["kind"] != task_type.value:
        raise ValueError(
            f"Payload kind '{data['kind']}' does not match task type '{task_type.value}'"
        )
    return _payload_adapter.validate_python(data)


def load_payload(data: dict[str, object]) -> TaskPayload:
    return _payload_adapter.validate_python(data)
