from abc import ABC, abstractmethod
from dataclasses import dataclass

from pydantic import ValidationError

from taskengine.errors import PayloadValidationError, UnknownTaskTypeError
from taskengine.models import TaskPayload, TaskType


class ItemFailure(Exception):
    """Raised by a processor when one item fails; the task carries on."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


@dataclass(slots=True)
class ItemContext:
    task_id: str
    index: int
    payload: TaskPayload


class ItemProcessor(ABC):
    """Handles every item of one task type.

    ``validate`` runs once before the first item and raises
    :class:`PayloadValidationError`. ``process`` handles a single item and
    returns an optional output mapping stored with the item result; it raises
    :class:`ItemFailure` for a per-item failure. Any other exception fails the
    whole task.
    """

    task_type: TaskType

    @abstractmethod
    def validate(self, payload: TaskPayload) -> None: ...

    @abstractmethod
    def process(
        self, item: dict[str, object], context: ItemContext
    ) -> dict[str, object] | None: ...

    def describe_item(
        self, item: dict[str, object], context: ItemContext
    ) -> str | None:
        return None

    def _require_items(self, payload: TaskPayload) -> None:
        if payload.kind != self.task_type.value:
            raise PayloadValidationError(
                f"{type(self).__name__} cannot handle '{payload.kind}' payloads"
            )
        if not payload.items:
            raise PayloadValidationError("Payload contains no items")


class ProcessorRegistry:
    def __init__(self) -> None:
        self._processors: dict[TaskType, ItemProcessor] = {}

    def register(self, processor: ItemProcessor) -> None:
        self._processors[processor.task_type] = processor

    def get(self, task_type: TaskType) -> ItemProcessor:
        processor = self._processors.get(task_type)
        if processor is None:
            raise UnknownTaskTypeError(
                f"No processor registered for task type '{task_type.value}'"
            )
        return processor

    def types(self) -> list[TaskType]:
        return sorted(self._processors, key=lambda task_type: task_type.value)


def validation_reason(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"])
        parts.append(f"{location}: {error['msg']}" if location else error["msg"])
    return "; ".join(parts)
