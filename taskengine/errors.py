from taskengine.models.enums import TaskStatus


class TaskEngineError(Exception):
    """Base class for errors surfaced by the task engine."""


class TaskNotFoundError(TaskEngineError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task '{task_id}' not found")
        self.task_id = task_id


class InvalidTransitionError(TaskEngineError):
    """The requested lifecycle change is not allowed from the current status."""

    def __init__(
        self,
        task_id: str,
        current: TaskStatus,
        requested: TaskStatus,
        reason: str | None = None,
    ) -> None:
        message = (
            f"Invalid transition for task '{task_id}' "
            f"from {current.value} to {requested.value}"
        )
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.task_id = task_id
        self.current = current
        self.requested = requested


class TaskConflictError(TaskEngineError):
    """A compare-and-swap lost against a concurrent writer."""

    def __init__(self, task_id: str, message: str) -> None:
        super().__init__(message)
        self.task_id = task_id


class TaskStillActiveError(TaskConflictError):
    def __init__(self, task_id: str, status: TaskStatus) -> None:
        super().__init__(
            task_id,
            f"task still active: task '{task_id}' is {status.value}; cancel it first",
        )
        self.status = status


class PayloadValidationError(TaskEngineError):
    pass


class UnknownTaskTypeError(PayloadValidationError):
    pass


class StoreUnavailableError(TaskEngineError):
    """The backing database could not serve the request."""
