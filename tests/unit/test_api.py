from fastapi.testclient import TestClient

from cua_orchestrator.api.main import create_app
from cua_orchestrator.config.settings import Settings
from cua_orchestrator.executor.lifecycle import start_task
from cua_orchestrator.memory.store import MemoryStore
from cua_orchestrator.storage.memory import InMemoryStorage
from cua_orchestrator.storage.models import NewTask


def _client(storage, model, browser) -> TestClient:
    app = create_app(
        storage=storage,
        settings_override=Settings(sampling_loop_delay_ms=0),
        model_provider=model,
        browser_provider=browser,
    )
    return TestClient(app)


def test_health_endpoint(scripted_model, browser) -> None:
    client = _client(InMemoryStorage(), scripted_model([]), browser)

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_execute_runs_batch_in_background(scripted_model, browser, blocks) -> None:
    storage = InMemoryStorage()
    model = scripted_model(
        [
            [blocks.report("tu_1", "completed", "first")],
            [blocks.report("tu_2", "needs_clarification", "Which vendor?")],
        ]
    )
    client = _client(storage, model, browser)

    response = client.post(
        "/tasks/execute",
        json={
            "tasks": [{"user_message": "Pay rent"}, {"user_message": "Pay the invoice"}],
            "config_overrides": {"AGENT_MAX_ITERATIONS": 5},
        },
    )

    assert response.status_code == 202
    created = response.json()
    assert created["status"] == "running"
    assert len(created["task_ids"]) == 2

    status = client.get(f"/batch-executions/{created['batch_id']}/status").json()
    assert status["batch"]["status"] == "completed"
    assert status["batch"]["completed_count"] == 2
    assert status["overall_status"] == "paused"
    assert status["active_task"]["task_id"] == created["task_ids"][1]
    assert [task["status"] for task in status["tasks"]] == ["completed", "paused"]


def test_execute_rejects_empty_task_list(scripted_model, browser) -> None:
    client = _client(InMemoryStorage(), scripted_model([]), browser)

    response = client.post("/tasks/execute", json={"tasks": []})

    assert response.status_code == 422


def test_webhook_secret_is_not_returned(scripted_model, browser, blocks) -> None:
    model = scripted_model([[blocks.report("tu_1", "completed", "ok")]])
    client = _client(InMemoryStorage(), model, browser)
    created = client.post(
        "/tasks/execute",
        json={
            "tasks": [{"user_message": "Pay rent"}],
            "webhook_url": "http://127.0.0.1:9/hook",
            "webhook_secret": "top-secret",
        },
    ).json()

    body = client.get(f"/batch-executions/{created['batch_id']}/status").text

    assert "top-secret" not in body
    assert "127.0.0.1:9/hook" in body


def test_unknown_ids_return_404(scripted_model, browser) -> None:
    client = _client(InMemoryStorage(), scripted_model([]), browser)

    assert client.get("/batch-executions/missing/status").status_code == 404
    assert client.post("/batch-executions/missing/stop").status_code == 404
    assert client.get("/tasks/missing").status_code == 404
    assert client.post("/tasks/missing/stop").status_code == 404
    assert client.post("/tasks/missing/messages", json={"message": "hi"}).status_code == 404


def test_stopping_finished_work_conflicts(scripted_model, browser, blocks) -> None:
    model = scripted_model([[blocks.report("tu_1", "completed", "ok")]])
    client = _client(InMemoryStorage(), model, browser)
    created = client.post("/tasks/execute", json={"tasks": [{"user_message": "Pay rent"}]}).json()

    batch_stop = client.post(f"/batch-executions/{created['batch_id']}/stop")
    task_stop = client.post(f"/tasks/{created['task_ids'][0]}/stop")

    assert batch_stop.status_code == 409
    assert task_stop.status_code == 409


def test_stop_running_task(scripted_model, browser) -> None:
    storage = InMemoryStorage()
    session_id = storage.create_session()
    (task,) = storage.create_tasks(
        session_id=session_id, batch_id=None, tasks=[NewTask(user_message="Pay rent")]
    )
    start_task(storage, task.task_id, browser_session_id="browser-9")
    client = _client(storage, scripted_model([]), browser)

    response = client.post(f"/tasks/{task.task_id}/stop")

    assert response.status_code == 200
    assert response.json()["status"] == "stopped"


def test_resume_paused_task(scripted_model, browser, blocks) -> None:
    model = scripted_model(
        [
            [blocks.report("tu_1", "needs_clarification", "Which vendor?")],
            [blocks.report("tu_2", "completed", "Paid Acme")],
        ]
    )
    client = _client(InMemoryStorage(), model, browser)
    created = client.post(
        "/tasks/execute", json={"tasks": [{"user_message": "Pay the invoice"}]}
    ).json()
    task_id = created["task_ids"][0]

    response = client.post(f"/tasks/{task_id}/messages", json={"message": "Acme"})

    assert response.status_code == 202
    assert response.json()["status"] == "paused"
    task = client.get(f"/tasks/{task_id}").json()
    assert task["status"] == "completed"
    assert task["agent_message"] == "Paid Acme"


def test_resume_rejects_completed_task(scripted_model, browser, blocks) -> None:
    model = scripted_model([[blocks.report("tu_1", "completed", "ok")]])
    client = _client(InMemoryStorage(), model, browser)
    created = client.post("/tasks/execute", json={"tasks": [{"user_message": "Pay rent"}]}).json()

    response = client.post(f"/tasks/{created['task_ids'][0]}/messages", json={"message": "again"})

    assert response.status_code == 409


def test_resume_without_live_browser_conflicts(scripted_model, browser, blocks) -> None:
    storage = InMemoryStorage()
    model = scripted_model([[blocks.report("tu_1", "needs_clarification", "Which vendor?")]])
    client = _client(storage, model, browser)
    created = client.post(
        "/tasks/execute",
        json={"tasks": [{"user_message": "Pay rent", "destroy_browser_on_completion": True}]},
    ).json()

    response = client.post(f"/tasks/{created['task_ids'][0]}/messages", json={"message": "Acme"})

    assert response.status_code == 409
    assert browser.destroyed == ["browser-1"]


def test_memory_listing(scripted_model, browser) -> None:
    storage = InMemoryStorage()
    MemoryStore(storage).create("/memories/vendors.md", "Acme pays net 30")
    client = _client(storage, scripted_model([]), browser)

    response = client.get("/memory")

    assert response.status_code == 200
    assert response.json() == {"paths": ["vendors.md"]}
