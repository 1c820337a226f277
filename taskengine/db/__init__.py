from taskengine.db.migrate import apply_migrations
from taskengine.db.repository import TaskFilter, TaskStore, new_task_id

__all__ = [
    "TaskFilter",
    "TaskStore",
    "apply_migrations",
    "new_task_id",
]
