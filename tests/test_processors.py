import json

import httpx
import pytest

from taskengine.errors import PayloadValidationError, UnknownTaskTypeError
from taskengine.models import (
    AccountType,
    BulkAccountCreationPayload,
    BulkImportPayload,
    TaskType,
)
from taskengine.processors import (
    AccountItem,
    BulkAccountCreationProcessor,
    BulkImportProcessor,
    HttpAccountProvisioner,
    InMemoryAccountDirectory,
    InMemoryRecordSink,
    ItemContext,
    ItemFailure,
    ProcessorRegistry,
    SqlRecordSink,
    default_registry,
)
from taskengine.service.settings import Settings


def _account_context(items: list[dict[str, object]], index: int = 0) -> ItemContext:
    payload = BulkAccountCreationPayload(
        account_type=AccountType.STUDENT, branch_id="branch-1", items=items
    )
    return ItemContext(task_id="task-1", index=index, payload=payload)


def test_account_item_prefers_official_over_personal_email() -> None:
    account = AccountItem.model_validate(
        {
            "first_name": "Asha",
            "last_name": "Rao",
            "personal_email": "asha@home.example",
            "official_email": " Asha.Rao@School.example ",
            "grade": "5",
        }
    )
    assert account.primary_email == "asha.rao@school.example"
    assert account.model_extra == {"grade": "5"}


def test_account_item_email_precedence() -> None:
    item = {
        "first_name": "Asha",
        "last_name": "Rao",
        "email": "a@x.org",
        "official_email": "o@x.org",
        "personal_email": "p@x.org",
    }
    account = AccountItem.model_validate(item)
    assert account.primary_email == "a@x.org"

    processor = BulkAccountCreationProcessor(InMemoryAccountDirectory())
    assert processor.describe_item(item, _account_context([item])) == "Asha Rao <a@x.org>"

    without_email = {key: value for key, value in item.items() if key != "email"}
    assert AccountItem.model_validate(without_email).primary_email == "o@x.org"


def test_account_creation_records_output_and_duplicates() -> None:
    directory = InMemoryAccountDirectory()
    processor = BulkAccountCreationProcessor(directory)
    item = {"first_name": "Asha", "last_name": "Rao", "email": "asha@school.example"}
    context = _account_context([item])

    processor.validate(context.payload)
    output = processor.process(item, context)
    assert output is not None
    assert output["email"] == "asha@school.example"
    assert str(output["account_id"]).startswith("acct-")
    assert len(directory) == 1
    assert directory.get("ASHA@school.example")["branch_id"] == "branch-1"
    assert processor.describe_item(item, context) == "Asha Rao <asha@school.example>"

    with pytest.raises(ItemFailure, match="already exists"):
        processor.process(item, context)


def test_account_creation_rejects_incomplete_items() -> None:
    processor = BulkAccountCreationProcessor()
    context = _account_context([{}])

    with pytest.raises(ItemFailure, match="first_name"):
        processor.process({"last_name": "Rao", "email": "rao@school.example"}, context)
    with pytest.raises(ItemFailure, match="email"):
        processor.process({"first_name": "Asha", "last_name": "Rao"}, context)
    with pytest.raises(ItemFailure, match="invalid email"):
        processor.process(
            {"first_name": "Asha", "last_name": "Rao", "email": "not-an-email"}, context
        )


def test_validate_rejects_empty_or_foreign_payloads() -> None:
    processor = BulkAccountCreationProcessor()
    with pytest.raises(PayloadValidationError):
        processor.validate(
            BulkAccountCreationPayload(account_type=AccountType.TEACHER, items=[])
        )
    with pytest.raises(PayloadValidationError):
        processor.validate(BulkImportPayload(entity="rows", items=[{"id": 1}]))


def test_http_provisioner_maps_responses() -> None:
    requests: list[dict[str, object]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        requests.append(body)
        if body["email"] == "taken@school.example":
            return httpx.Response(409, json={"detail": "email already registered"})
        if body["email"] == "broken@school.example":
            return httpx.Response(503, json={"detail": "maintenance"})
        return httpx.Response(201, json={"id": "user_123"})

    client = httpx.Client(
        base_url="https://accounts.example", transport=httpx.MockTransport(handler)
    )
    provisioner = HttpAccountProvisioner("https://accounts.example", client=client)

    def account(email: str) -> AccountItem:
        return AccountItem(first_name="Asha", last_name="Rao", email=email)

    assert provisioner.create_account(AccountType.STUDENT, account("ok@school.example"), "b1") == "user_123"
    assert requests[0]["account_type"] == "student"
    assert requests[0]["branch_id"] == "b1"

    with pytest.raises(ItemFailure, match="email already registered"):
        provisioner.create_account(AccountType.STUDENT, account("taken@school.example"), None)
    with pytest.raises(httpx.HTTPStatusError):
        provisioner.create_account(AccountType.STUDENT, account("broken@school.example"), None)


def test_bulk_import_upserts_and_reports_missing_fields() -> None:
    sink = InMemoryRecordSink()
    processor = BulkImportProcessor(sink)
    payload = BulkImportPayload(
        entity="students",
        key_field="admission_no",
        required_fields=["name"],
        items=[
            {"admission_no": "A-1", "name": "Asha"},
            {"admission_no": "A-1", "name": "Asha R"},
            {"admission_no": "A-2", "name": " "},
        ],
    )
    processor.validate(payload)

    def context(index: int) -> ItemContext:
        return ItemContext(task_id="task-1", index=index, payload=payload)

    assert processor.process(payload.items[0], context(0)) == {"key": "A-1", "action": "created"}
    assert processor.process(payload.items[1], context(1)) == {"key": "A-1", "action": "updated"}
    assert sink.get("students", "A-1") == {"admission_no": "A-1", "name": "Asha R"}

    with pytest.raises(ItemFailure, match="name"):
        processor.process(payload.items[2], context(2))
    assert sink.count("students") == 1
    assert processor.describe_item(payload.items[0], context(0)) == "admission_no=A-1"
    assert processor.describe_item({}, context(5)) == "row 6"


def test_sql_record_sink_survives_reopen(tmp_path) -> None:
    db_url = f"sqlite:///{tmp_path / 'records.db'}"
    sink = SqlRecordSink(db_url)
    assert sink.upsert("students", "A-1", {"admission_no": "A-1", "name": "Asha"}) is True
    assert sink.upsert("students", "A-1", {"admission_no": "A-1", "name": "Asha R"}) is False
    assert sink.upsert("staff", "A-1", {"admission_no": "A-1"}) is True
    sink.close()

    reopened = SqlRecordSink(db_url)
    assert reopened.get("students", "A-1") == {"admission_no": "A-1", "name": "Asha R"}
    assert reopened.get("students", "A-9") is None
    assert reopened.count("students") == 1
    assert reopened.count("staff") == 1
    reopened.close()


def test_registry_dispatch(tmp_path) -> None:
    registry = ProcessorRegistry()
    registry.register(BulkImportProcessor())

    assert isinstance(registry.get(TaskType.BULK_IMPORT), BulkImportProcessor)
    with pytest.raises(UnknownTaskTypeError):
        registry.get(TaskType.BULK_ACCOUNT_CREATION)

    full = default_registry(Settings(db_url=f"sqlite:///{tmp_path / 'registry.db'}"))
    import_processor = full.get(TaskType.BULK_IMPORT)
    assert isinstance(import_processor, BulkImportProcessor)
    assert isinstance(import_processor.sink, SqlRecordSink)

    memory = default_registry(Settings(import_sink="memory"))
    memory_import = memory.get(TaskType.BULK_IMPORT)
    assert isinstance(memory_import, BulkImportProcessor)
    assert isinstance(memory_import.sink, InMemoryRecordSink)
    assert full.types() == [TaskType.BULK_ACCOUNT_CREATION, TaskType.BULK_IMPORT]
