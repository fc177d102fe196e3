from fastapi.testclient import TestClient

ALICE = {"X-Owner-Id": "alice"}
BOB = {"X-Owner-Id": "bob"}
ADMIN = {"X-Admin": "1"}


def _create(client: TestClient, goal: str = "Write a haiku", **extra) -> dict:
    response = client.post("/tasks", json={"goal": goal, **extra}, headers=ALICE)
    assert response.status_code == 200
    return response.json()


def test_health_and_tools(api_client) -> None:
    client, _ = api_client

    assert client.get("/health").json()["status"] == "ok"
    names = [tool["name"] for tool in client.get("/tools").json()["tools"]]
    assert "calculate" in names
    assert "shell_exec" in names


def test_task_lifecycle(api_client) -> None:
    client, _ = api_client
    task = _create(client, priority=5, config={"max_iterations": 3})

    assert task["status"] == "pending"
    assert task["priority"] == 5
    assert task["config"]["max_iterations"] == 3

    processed = client.post("/admin/run-pending", headers=ADMIN)
    assert processed.json() == {"processed": [task["task_id"]]}

    fetched = client.get(f"/tasks/{task['task_id']}", headers=ALICE).json()
    assert fetched["status"] == "completed"
    assert fetched["result"] == "DONE"

    steps = client.get(f"/tasks/{task['task_id']}/steps", headers=ALICE).json()["steps"]
    assert [step["type"] for step in steps] == ["answer"]
    checkpoints = client.get(f"/tasks/{task['task_id']}/checkpoints", headers=ALICE).json()
    assert checkpoints["checkpoints"][0]["reason"] == "completed"

    listed = client.get("/tasks", params={"status": "completed"}, headers=ALICE).json()["tasks"]
    assert [item["task_id"] for item in listed] == [task["task_id"]]

    deleted = client.delete(f"/tasks/{task['task_id']}", headers=ALICE)
    assert deleted.json() == {"task_id": task["task_id"], "deleted": True}
    assert client.get(f"/tasks/{task['task_id']}", headers=ALICE).status_code == 404


def test_owner_header_is_required_and_enforced(api_client) -> None:
    client, _ = api_client
    task = _create(client)

    assert client.get(f"/tasks/{task['task_id']}").status_code == 400
    denied = client.get(f"/tasks/{task['task_id']}", headers=BOB)
    assert denied.status_code == 403
    assert denied.json()["error_type"] == "AccessDeniedError"
    assert client.get("/tasks", headers=BOB).json()["tasks"] == []


def test_validation_errors_map_to_422(api_client) -> None:
    client, _ = api_client

    empty_goal = client.post("/tasks", json={"goal": "   "}, headers=ALICE)
    assert empty_goal.status_code == 422
    assert empty_goal.json()["error_type"] == "ValidationError"

    bad_config = client.post("/tasks", json={"goal": "x", "config": {"max_iterations": 1000}}, headers=ALICE)
    assert bad_config.status_code == 422

    assert client.post("/tasks", json={"goal": "x", "priority": 500}, headers=ALICE).status_code == 422


def test_invalid_transitions_map_to_409(api_client) -> None:
    client, _ = api_client
    task = _create(client)

    for action in ("pause", "resume", "confirm", "reject"):
        response = client.post(f"/tasks/{task['task_id']}/{action}", headers=ALICE)
        assert response.status_code == 409, action
        assert response.json()["error_type"] == "InvalidTransitionError"

    cancelled = client.post(f"/tasks/{task['task_id']}/cancel", headers=ALICE)
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert client.post(f"/tasks/{task['task_id']}/cancel", headers=ALICE).status_code == 409


def test_unknown_task_maps_to_404(api_client) -> None:
    client, _ = api_client

    response = client.post("/tasks/missing/pause", headers=ALICE)

    assert response.status_code == 404
    assert response.json()["error_type"] == "UnknownTaskError"


def test_confirmation_round_trip(api_client) -> None:
    client, llm = api_client
    llm.responses = [
        '{"action": {"type": "tool_call", "tool_name": "shell_exec", "tool_args": {"command": "echo hi"}}}'
    ]
    task = _create(client, config={"require_confirmation": True})

    client.post("/admin/run-pending", headers=ADMIN)
    waiting = client.get(f"/tasks/{task['task_id']}", headers=ALICE).json()
    assert waiting["status"] == "waiting"

    rejected = client.post(
        f"/tasks/{task['task_id']}/reject",
        json={"reason": "not today"},
        headers=ALICE,
    )
    assert rejected.status_code == 200
    assert rejected.json()["status"] == "cancelled"
    assert rejected.json()["error"] == "not today"


def test_restore_requires_paused_task(api_client) -> None:
    client, _ = api_client
    task = _create(client)

    response = client.post(f"/tasks/{task['task_id']}/restore", json={}, headers=ALICE)

    assert response.status_code == 409


def test_admin_routes(api_client) -> None:
    client, _ = api_client
    _create(client)

    assert client.get("/admin/stats").status_code == 403
    stats = client.get("/admin/stats", headers=ADMIN).json()
    assert stats["queue"]["total"] == 1
    assert stats["queue"]["queue_length"] == 1
    assert stats["worker"]["running"] is False
    assert "cache" in stats

    assert client.get("/admin/worker", headers=ADMIN).json()["running"] is False
    assert client.post("/admin/cleanup", params={"older_than_days": 1}, headers=ADMIN).json() == {
        "removed": 0
    }


def test_worker_start_and_stop_routes(api_client) -> None:
    client, _ = api_client

    started = client.post("/admin/worker/start", headers=ADMIN).json()
    stopped = client.post("/admin/worker/stop", headers=ADMIN).json()

    assert started["running"] is True
    assert stopped["running"] is False
