from taskengine.models.enums import (
    ACTIVE_STATUSES,
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    AccountType,
    ControlRequest,
    LogLevel,
    TaskStatus,
    TaskType,
    is_transition_allowed,
    ui_status,
)
from taskengine.models.payloads import (
    BulkAccountCreationPayload,
    BulkImportPayload,
    TaskPayload,
    load_payload,
    parse_payload,
)
from taskengine.models.task import (
    TaskDetail,
    ItemResult,
    Task,
    TaskLogEntry,
    TaskProgress,
    TaskResults,
)

__all__ = [
    "ACTIVE_STATUSES",
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATUSES",
    "AccountType",
    "BulkAccountCreationPayload",
    "BulkImportPayload",
    "ControlRequest",
    "ItemResult",
    "LogLevel",
    "Task",
    "TaskDetail",
    "TaskLogEntry",
    "TaskPayload",
    "TaskProgress",
    "TaskResults",
    "TaskStatus",
    "TaskType",
    "is_transition_allowed",
    "load_payload",
    "parse_payload",
    "ui_status",
]
