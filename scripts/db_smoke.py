from taskengine.db import TaskStore, new_task_id
from taskengine.models import BulkImportPayload, Task, TaskType


def main() -> None:
    store = TaskStore("sqlite:///./taskengine.db")

    task_id = store.create_task(
        Task(
            id=new_task_id(),
            type=TaskType.BULK_IMPORT,
            title="Smoke import",
            payload=BulkImportPayload(
                entity="students",
                key_field="admission_no",
                required_fields=["name"],
                items=[
                    {"admission_no": "A-1", "name": "Asha"},
                    {"admission_no": "A-2", "name": "Ravi"},
                ],
            ),
        )
    )
    task = store.claim(task_id)
    print(task.model_dump_json(indent=2))


if __name__ == "__main__":
    main()
