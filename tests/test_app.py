"""
REST API tests — FastAPI TestClient against an orchestrator with stub handlers.
"""

import json
import time
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

import app as app_module
import config
from conftest import make_executor
from features.results import JsonFileResultSink
from features.results import db as result_db
from workflows.orchestrator import TaskOrchestrator


def _db_down(*args, **kwargs):
    raise ConnectionError("no database in tests")


@pytest.fixture
def orchestrator(sink):
    return TaskOrchestrator(executor=make_executor(), sink=sink, ticker_lookup=lambda workspace_id: "TEST")


@pytest.fixture
def client(monkeypatch, orchestrator, tmp_path):
    monkeypatch.setattr(result_db, "init_db", _db_down)
    monkeypatch.setattr(result_db, "get_task_result", _db_down)
    monkeypatch.setattr(result_db, "list_task_results", _db_down)
    monkeypatch.setattr(result_db, "get_agent_metrics", _db_down)
    monkeypatch.setattr(result_db, "search_task_results", _db_down)
    monkeypatch.setattr(config, "TASK_RUNS_DIR", tmp_path)
    monkeypatch.setattr(app_module, "orchestrator", orchestrator)
    with TestClient(app_module.app) as test_client:
        yield test_client


def _create(client, task_type="risk-assessment", workspace_id=1, **params):
    resp = client.post("/agents/tasks", json={"workspace_id": workspace_id, "type": task_type, "params": params})
    assert resp.status_code == 201, resp.text
    return resp.json()


def _wait_for_status(client, task_id, statuses=("completed", "failed"), timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/agents/tasks/{task_id}").json()
        if body["status"] in statuses:
            return body
        time.sleep(0.01)
    raise AssertionError(f"Task {task_id} never reached {statuses}")


def _sse_payloads(text):
    return [json.loads(line[len("data: "):]) for line in text.splitlines() if line.startswith("data: ")]


class TestHealth:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["db_connected"] is False
        assert body["actions"] == 32


class TestTaskEndpoints:
    def test_create_task(self, client):
        body = _create(client, "analyze-10k", workspace_id=4, ticker="AAPL")

        assert body["id"].startswith("task-")
        assert body["status"] == "pending"
        assert body["type"] == "analyze-10k"
        assert body["workspace_id"] == 4
        assert body["description"] == "Analyze 10-K filing for AAPL"
        assert len(body["steps"]) == 7
        assert body["steps"][0]["params"] == {"ticker": "AAPL", "form_type": "10-K"}

    def test_create_unknown_type(self, client):
        resp = client.post("/agents/tasks", json={"workspace_id": 1, "type": "write-poetry"})
        assert resp.status_code == 400
        assert "Unknown task type" in resp.json()["detail"]

    def test_create_requires_workspace(self, client):
        resp = client.post("/agents/tasks", json={"type": "risk-assessment"})
        assert resp.status_code == 422

    def test_get_task(self, client):
        created = _create(client)
        assert client.get(f"/agents/tasks/{created['id']}").json()["id"] == created["id"]
        assert client.get("/agents/tasks/task-missing").status_code == 404

    def test_workspace_tasks(self, client):
        _create(client, workspace_id=1)
        _create(client, workspace_id=2)
        _create(client, workspace_id=1)

        body = client.get("/agents/workspaces/1/tasks").json()

        assert body["count"] == 2
        assert {t["workspace_id"] for t in body["tasks"]} == {1}
        assert client.get("/agents/workspaces/9/tasks").json() == {"tasks": [], "count": 0}


class TestLifecycleEndpoints:
    def test_start_runs_in_background(self, client, sink):
        created = _create(client)

        resp = client.post(f"/agents/tasks/{created['id']}/start")

        assert resp.status_code == 200
        assert resp.json() == {"message": "Task started", "task_id": created["id"]}
        body = _wait_for_status(client, created["id"])
        assert body["status"] == "completed"
        assert all(s["status"] == "completed" for s in body["steps"])

    def test_start_rejections(self, client):
        assert client.post("/agents/tasks/task-missing/start").status_code == 404

        created = _create(client)
        client.post(f"/agents/tasks/{created['id']}/start")
        _wait_for_status(client, created["id"])

        resp = client.post(f"/agents/tasks/{created['id']}/start")
        assert resp.status_code == 409
        assert "already completed" in resp.json()["detail"]

    def test_pause_pending_task_is_noop(self, client):
        created = _create(client)
        resp = client.post(f"/agents/tasks/{created['id']}/pause")
        assert resp.status_code == 200
        assert resp.json()["status"] == "pending"
        assert client.post("/agents/tasks/task-missing/pause").status_code == 404

    def test_cancel(self, client, sink):
        created = _create(client)

        resp = client.post(f"/agents/tasks/{created['id']}/cancel")

        assert resp.status_code == 200
        assert resp.json()["status"] == "failed"
        body = client.get(f"/agents/tasks/{created['id']}").json()
        assert body["error"] == "Cancelled by user"
        assert body["completed_at"] is not None
        assert client.post(f"/agents/tasks/{created['id']}/start").status_code == 409
        assert client.post("/agents/tasks/task-missing/cancel").status_code == 404

    def test_telemetry(self, client):
        created = _create(client)
        client.post(f"/agents/tasks/{created['id']}/start")
        _wait_for_status(client, created["id"])

        body = client.get(f"/agents/tasks/{created['id']}/telemetry").json()

        assert body["task_id"] == created["id"]
        assert body["status"] == "completed"
        assert body["task_duration_ms"] >= 0
        assert body["total_retries"] == 0
        assert body["failed_steps"] == 0
        assert len(body["step_metrics"]) == 4
        assert client.get("/agents/tasks/task-missing/telemetry").status_code == 404


class TestStream:
    def test_terminal_task_sends_state_and_closes(self, client):
        created = _create(client)
        client.post(f"/agents/tasks/{created['id']}/cancel")

        resp = client.get(f"/agents/tasks/{created['id']}/stream")

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        payloads = _sse_payloads(resp.text)
        assert [p["type"] for p in payloads] == ["task:state"]
        assert payloads[0]["task"]["status"] == "failed"

    def test_unknown_task(self, client):
        assert client.get("/agents/tasks/task-missing/stream").status_code == 404

    @pytest.mark.asyncio
    async def test_follows_task_until_completed(self, monkeypatch, orchestrator):
        monkeypatch.setattr(app_module, "orchestrator", orchestrator)
        task = orchestrator.create_task(1, "risk-assessment")

        response = await app_module.stream_task(task.id)
        events = response.body_iterator
        chunks = [await events.__anext__()]
        orchestrator.launch_task(task.id)
        chunks += [chunk async for chunk in events]
        await orchestrator.drain()

        assert [c["event"] for c in chunks] == [json.loads(c["data"])["type"] for c in chunks]
        types = [c["event"] for c in chunks]
        assert types[0] == "task:state"
        assert types[1] == "task:started"
        assert types[2:-1] == ["step:started", "step:completed"] * 4
        assert types[-1] == "task:completed"
        assert orchestrator.events.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_subscribes_only_while_stream_is_read(self, monkeypatch, orchestrator):
        monkeypatch.setattr(app_module, "orchestrator", orchestrator)
        task = orchestrator.create_task(1, "risk-assessment")

        response = await app_module.stream_task(task.id)
        assert orchestrator.events.subscriber_count == 0

        events = response.body_iterator
        first = await events.__anext__()
        assert first["event"] == "task:state"
        assert orchestrator.events.subscriber_count == 1

        await events.aclose()
        assert orchestrator.events.subscriber_count == 0


class TestStoredResults:
    def test_stored_result_from_json_file(self, client, orchestrator):
        orchestrator.sink = JsonFileResultSink()
        created = _create(client)
        client.post(f"/agents/tasks/{created['id']}/start")
        _wait_for_status(client, created["id"])

        deadline = time.monotonic() + 5
        resp = client.get(f"/agents/tasks/{created['id']}/stored")
        while resp.status_code == 404 and time.monotonic() < deadline:
            time.sleep(0.01)
            resp = client.get(f"/agents/tasks/{created['id']}/stored")

        assert resp.status_code == 200
        assert resp.json()["status"] == "completed"
        assert resp.json()["summary"]["completed_steps"] == 4

        listed = client.get("/agents/workspaces/1/results").json()
        assert listed["count"] == 1
        assert listed["results"][0]["id"] == created["id"]

    def test_stored_result_missing(self, client):
        assert client.get("/agents/tasks/task-missing/stored").status_code == 404

    def test_stored_result_from_postgres(self, client, monkeypatch):
        finished = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        monkeypatch.setattr(
            result_db, "get_task_result",
            lambda task_id: {"task_id": task_id, "status": "completed", "completed_at": finished},
        )
        monkeypatch.setattr(
            result_db, "get_step_results",
            lambda task_id: [{"step_id": "step_1", "status": "completed"}],
        )

        body = client.get("/agents/tasks/task-stored/stored").json()

        assert body["task_id"] == "task-stored"
        assert body["completed_at"] == "2024-05-01T12:00:00+00:00"
        assert body["steps"] == [{"step_id": "step_1", "status": "completed"}]

    def test_status_filter_applies_before_limit(self, client):
        sink = JsonFileResultSink()
        sink.runs_dir.mkdir(parents=True, exist_ok=True)
        for task_id, status in [("task-1", "completed"), ("task-2", "failed"), ("task-3", "failed")]:
            record = {"id": task_id, "workspace_id": 5, "status": status}
            (sink.runs_dir / f"{task_id}.json").write_text(json.dumps(record))

        body = client.get("/agents/workspaces/5/results", params={"limit": 1, "status": "completed"}).json()

        assert body["count"] == 1
        assert body["results"][0]["id"] == "task-1"


def _write_record(task_id, workspace_id=3, status="completed", duration_ms=1000, steps=(), **fields):
    record = {
        "id": task_id,
        "workspace_id": workspace_id,
        "type": "risk-assessment",
        "description": fields.pop("description", "Assess risks for AAPL"),
        "status": status,
        "error": fields.pop("error", None),
        "started_at": fields.pop("started_at", datetime.now(timezone.utc).isoformat()),
        "created_at": fields.pop("created_at", datetime.now(timezone.utc).isoformat()),
        "telemetry": {"task_duration_ms": duration_ms},
        "steps": list(steps),
        "summary": {},
    }
    runs_dir = JsonFileResultSink().runs_dir
    runs_dir.mkdir(parents=True, exist_ok=True)
    (runs_dir / f"{task_id}.json").write_text(json.dumps(record))


class TestAnalyticsEndpoints:
    def test_metrics_from_json_files(self, client):
        _write_record("task-1", steps=[{"id": "step_1", "action": "categorize_risks", "status": "completed", "duration_ms": 40}])
        _write_record("task-2", status="failed", duration_ms=3000, steps=[
            {"id": "step_1", "action": "categorize_risks", "status": "failed", "duration_ms": 20,
             "error": "ValueError: Ticker is required"},
        ])
        _write_record("task-3", workspace_id=4)

        body = client.get("/agents/workspaces/3/metrics").json()

        assert body["workspace_id"] == 3
        assert body["period_hours"] == 720
        metrics = body["metrics"]
        assert metrics["total_tasks"] == 2
        assert metrics["success_rate"] == 50.0
        assert metrics["step_success_rates"]["categorize_risks"] == {"success": 1, "total": 2, "rate": 50.0}
        assert metrics["errors_by_type"] == {"ValueError": 1}
        assert metrics["most_failed_steps"] == [{"action": "categorize_risks", "failure_count": 1}]
        assert metrics["tasks_last_24h"] == 2

    def test_metrics_period_is_at_least_one_hour(self, client):
        assert client.get("/agents/workspaces/3/metrics", params={"period_hours": 0}).json()["period_hours"] == 1

    def test_metrics_from_postgres(self, client, monkeypatch):
        seen = {}

        def get_agent_metrics(workspace_id, period_hours):
            seen.update(workspace_id=workspace_id, period_hours=period_hours)
            return {"total_tasks": 7}

        monkeypatch.setattr(result_db, "get_agent_metrics", get_agent_metrics)

        body = client.get("/agents/workspaces/3/metrics", params={"period_hours": 24}).json()

        assert body["metrics"] == {"total_tasks": 7}
        assert seen == {"workspace_id": 3, "period_hours": 24}

    def test_search_from_json_files(self, client):
        _write_record("task-1", description="Assess risks for AAPL")
        _write_record("task-2", description="Assess risks for MSFT", status="failed")
        _write_record("task-3", workspace_id=4, description="Assess risks for MSFT")

        body = client.get("/agents/workspaces/3/search", params={"q": "msft"}).json()

        assert body["count"] == 1
        hit = body["results"][0]
        assert hit["task_id"] == "task-2"
        assert hit["snippet"] == "Assess risks for <mark>MSFT</mark>"

        filtered = client.get("/agents/workspaces/3/search", params={"q": "risks", "status": "completed"}).json()
        assert [r["task_id"] for r in filtered["results"]] == ["task-1"]

    def test_search_requires_query(self, client):
        assert client.get("/agents/workspaces/3/search", params={"q": "  "}).status_code == 400
        assert client.get("/agents/workspaces/3/search").status_code == 400

    def test_search_rejects_negative_duration(self, client):
        resp = client.get("/agents/workspaces/3/search", params={"q": "risk", "min_duration_ms": -1})
        assert resp.status_code == 400

    def test_search_limit_is_capped(self, client, monkeypatch):
        seen = {}

        def search_task_results(query, **filters):
            seen.update(filters, query=query)
            return []

        monkeypatch.setattr(result_db, "search_task_results", search_task_results)

        body = client.get("/agents/workspaces/3/search", params={"q": "risk", "limit": 500}).json()

        assert body == {"results": [], "count": 0}
        assert seen["query"] == "risk"
        assert seen["limit"] == 50
        assert seen["workspace_id"] == 3
