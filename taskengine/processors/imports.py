import json
import threading
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import create_engine, func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import sessionmaker

from taskengine.db.migrate import apply_migrations
from taskengine.db.orm import ImportedRecord
from taskengine.errors import PayloadValidationError
from taskengine.models import BulkImportPayload, TaskPayload, TaskType
from taskengine.processors.base import ItemContext, ItemFailure, ItemProcessor


class RecordSink(Protocol):
    def upsert(self, entity: str, key: str, record: dict[str, object]) -> bool:
        """Store ``record`` under ``key``; True when it was newly created."""
        ...


class InMemoryRecordSink:
    """Process-local sink; rows are lost when the process exits."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, dict[str, dict[str, object]]] = {}

    def upsert(self, entity: str, key: str, record: dict[str, object]) -> bool:
        with self._lock:
            bucket = self._records.setdefault(entity, {})
            created = key not in bucket
            bucket[key] = dict(record)
        return created

    def get(self, entity: str, key: str) -> dict[str, object] | None:
        with self._lock:
            record = self._records.get(entity, {}).get(key)
            return dict(record) if record is not None else None

    def count(self, entity: str) -> int:
        with self._lock:
            return len(self._records.get(entity, {}))


class SqlRecordSink:
    """Record sink backed by the ``imported_records`` table of the task database."""

    def __init__(self, db_url: str) -> None:
        apply_migrations(db_url)
        self._engine = create_engine(
            db_url,
            future=True,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)

    def upsert(self, entity: str, key: str, record: dict[str, object]) -> bool:
        now = datetime.now(timezone.utc)
        encoded = json.dumps(record, separators=(",", ":"), default=str)

        with self._session_factory.begin() as session:
            inserted = session.execute(
                sqlite_insert(ImportedRecord)
                .values(
                    entity=entity,
                    record_key=key,
                    record_json=encoded,
                    created_at=now,
                    updated_at=now,
                )
                .on_conflict_do_nothing(index_elements=["entity", "record_key"])
            )
            if inserted.rowcount == 1:
                return True

            session.execute(
                update(ImportedRecord)
                .where(ImportedRecord.entity == entity, ImportedRecord.record_key == key)
                .values(record_json=encoded, updated_at=now)
            )
        return False

    def get(self, entity: str, key: str) -> dict[str, object] | None:
        with self._session_factory() as session:
            row = session.get(ImportedRecord, (entity, key))
            return json.loads(row.record_json) if row is not None else None

    def count(self, entity: str) -> int:
        with self._session_factory() as session:
            return int(
                session.scalar(
                    select(func.count())
                    .select_from(ImportedRecord)
                    .where(ImportedRecord.entity == entity)
                )
                or 0
            )

    def close(self) -> None:
        self._engine.dispose()


def _is_blank(value: object) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class BulkImportProcessor(ItemProcessor):
    task_type = TaskType.BULK_IMPORT

    def __init__(self, sink: RecordSink | None = None) -> None:
        self._sink = sink or InMemoryRecordSink()

    @property
    def sink(self) -> RecordSink:
        return self._sink

    def validate(self, payload: TaskPayload) -> None:
        self._require_items(payload)
        if not isinstance(payload, BulkImportPayload):
            raise PayloadValidationError("Expected a bulk import payload")

    def process(
        self, item: dict[str, object], context: ItemContext
    ) -> dict[str, object] | None:
        payload = context.payload
        assert isinstance(payload, BulkImportPayload)

        required = list(dict.fromkeys([payload.key_field, *payload.required_fields]))
        missing = [field for field in required if _is_blank(item.get(field))]
        if missing:
            raise ItemFailure(f"Missing required field(s): {', '.join(missing)}")

        key = str(item[payload.key_field]).strip()
        created = self._sink.upsert(payload.entity, key, item)
        return {"key": key, "action": "created" if created else "updated"}

    def describe_item(
        self, item: dict[str, object], context: ItemContext
    ) -> str | None:
        payload = context.payload
        key_field = payload.key_field if isinstance(payload, BulkImportPayload) else "id"
        key = item.get(key_field)
        if _is_blank(key):
            return f"row {context.index + 1}"
        return f"{key_field}={key}"
