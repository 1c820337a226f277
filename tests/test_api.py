import importlib
import time

import pytest
from fastapi.testclient import TestClient


def _make_client(tmp_path, monkeypatch: pytest.MonkeyPatch, api_key: str = "") -> TestClient:
    db_path = tmp_path / "api-test.db"
    monkeypatch.setenv("TASK_ENGINE_DB_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("TASK_ENGINE_POLL_INTERVAL_SECONDS", "0.05")
    monkeypatch.setenv("TASK_ENGINE_API_KEY", api_key)
    monkeypatch.setenv("TASK_ENGINE_WEBHOOK_URL", "")
    monkeypatch.setenv("TASK_ENGINE_ACCOUNT_SERVICE_URL", "")

    from taskengine.service import main as main_module

    main_module = importlib.reload(main_module)
    return TestClient(main_module.app)


@pytest.fixture()
def client(tmp_path, monkeypatch: pytest.MonkeyPatch) -> TestClient:
    with _make_client(tmp_path, monkeypatch) as test_client:
        yield test_client


def _import_task(client: TestClient, rows: list[dict[str, object]], **extra: object) -> str:
    response = client.post(
        "/v1/tasks",
        json={
            "task_type": "import",
            "title": "Import students",
            "payload": {
                "entity": "students",
                "key_field": "admission_no",
                "required_fields": ["name"],
                "items": rows,
            },
            **extra,
        },
    )
    assert response.status_code == 201, response.text
    return response.json()["task_id"]


def _wait_for(client: TestClient, task_id: str, status: str) -> dict[str, object]:
    for _ in range(100):
        response = client.get(f"/v1/tasks/{task_id}")
        assert response.status_code == 200
        body = response.json()
        if body["task"]["status"] == status:
            return body
        time.sleep(0.05)
    raise AssertionError(f"{task_id} never reached {status}")


def test_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "engine_running": True}


def test_create_and_complete_task(client: TestClient) -> None:
    task_id = _import_task(
        client,
        [
            {"admission_no": "A-1", "name": "Asha"},
            {"admission_no": "A-2"},
            {"admission_no": "A-3", "name": "Ravi"},
        ],
        scope_id="branch-1",
        priority=8,
    )

    body = _wait_for(client, task_id, "COMPLETED")
    task = body["task"]
    assert task["ui_status"] == "completed"
    assert task["progress"] == {
        "processed_items": 3,
        "total_items": 3,
        "failed_items": 1,
        "percentage": 100,
    }
    assert task["priority"] == 8
    assert body["recent_logs"]

    failed = client.get(f"/v1/tasks/{task_id}/results", params={"failed_only": "true"})
    assert failed.status_code == 200
    assert [item["item_index"] for item in failed.json()] == [1]
    assert "name" in failed.json()[0]["reason"]

    logs = client.get(f"/v1/tasks/{task_id}/logs")
    assert logs.status_code == 200
    assert any(entry["level"] == "WARN" for entry in logs.json())

    listed = client.get("/v1/tasks", params={"scope_id": "branch-1", "status": "completed"})
    assert listed.status_code == 200
    assert [item["id"] for item in listed.json()] == [task_id]


def test_retry_and_delete_flow(client: TestClient) -> None:
    task_id = _import_task(
        client,
        [{"admission_no": "A-1", "name": "Asha"}, {"admission_no": "A-2"}],
    )
    _wait_for(client, task_id, "COMPLETED")

    retry = client.post(f"/v1/tasks/{task_id}/retry", json={"in_place": False})
    assert retry.status_code == 200, retry.text
    retry_id = retry.json()["task_id"]
    assert retry_id != task_id
    assert retry.json()["retry_of"] == task_id

    retried = _wait_for(client, retry_id, "FAILED")
    assert retried["task"]["progress"]["total_items"] == 1
    assert retried["task"]["retry_of"] == task_id

    paused = client.post(f"/v1/tasks/{task_id}/pause")
    assert paused.status_code == 409
    assert "Invalid transition" in paused.json()["detail"]

    assert client.delete(f"/v1/tasks/{task_id}").status_code == 204
    assert client.get(f"/v1/tasks/{task_id}").status_code == 404


def test_validation_and_error_mapping(client: TestClient) -> None:
    unknown = client.post(
        "/v1/tasks",
        json={"task_type": "reindex", "title": "Nope", "payload": {"items": []}},
    )
    assert unknown.status_code == 422

    bad_payload = client.post(
        "/v1/tasks",
        json={"task_type": "accounts", "title": "Accounts", "payload": {"items": []}},
    )
    assert bad_payload.status_code == 422
    assert "account_type" in bad_payload.json()["detail"]

    assert client.get("/v1/tasks", params={"status": "DONE"}).status_code == 422
    assert client.get("/v1/tasks/task-missing").status_code == 404
    assert client.post("/v1/tasks/task-missing/cancel").status_code == 404
    assert client.delete("/v1/tasks/task-missing").status_code == 404


def test_cancel_finished_task_conflicts(client: TestClient) -> None:
    task_id = _import_task(client, [{"admission_no": "A-1", "name": "Asha"}])
    _wait_for(client, task_id, "COMPLETED")

    response = client.post(f"/v1/tasks/{task_id}/cancel")
    assert response.status_code == 409

    retry = client.post(f"/v1/tasks/{task_id}/retry")
    assert retry.status_code == 409
    assert "no failed items" in retry.json()["detail"] or "can be retried" in retry.json()["detail"]


def test_account_creation_task(client: TestClient) -> None:
    response = client.post(
        "/v1/tasks",
        json={
            "task_type": "BULK_CLERK_CREATION",
            "title": "Teacher accounts",
            "payload": {
                "account_type": "teacher",
                "items": [
                    {"first_name": "Meera", "last_name": "Iyer", "email": "meera@school.example"},
                    {"first_name": "Meera", "last_name": "Iyer", "email": "meera@school.example"},
                ],
            },
        },
    )
    assert response.status_code == 201
    task_id = response.json()["task_id"]

    body = _wait_for(client, task_id, "COMPLETED")
    results = body["task"]["results"]
    assert results["succeeded"] == 1
    assert results["failed"] == 1
    assert results["items"][1]["reason"].endswith("already exists")


def test_engine_status(client: TestClient) -> None:
    response = client.get("/v1/engine/status")
    assert response.status_code == 200
    body = response.json()
    assert body["running"] is True
    assert body["worker_pool_size"] >= 1
    assert set(body["task_counts"]) >= {"PENDING", "RUNNING", "COMPLETED"}
    assert body["process"]["pid"] > 0

    assert client.post("/v1/engine/wake").status_code == 202


def test_api_key_required_when_configured(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    with _make_client(tmp_path, monkeypatch, api_key="secret-key") as client:
        assert client.get("/v1/tasks").status_code == 401
        assert client.get("/v1/tasks", headers={"X-Task-Engine-Key": "wrong"}).status_code == 401
        assert client.get("/v1/tasks", headers={"X-Task-Engine-Key": "secret-key"}).status_code == 200
        assert client.get("/health").status_code == 200


def test_api_key_comes_from_loaded_settings(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    with _make_client(tmp_path, monkeypatch, api_key="secret-key") as client:
        monkeypatch.delenv("TASK_ENGINE_API_KEY")
        assert client.get("/v1/tasks").status_code == 401
        assert client.get("/v1/tasks", headers={"X-Task-Engine-Key": "secret-key"}).status_code == 200
