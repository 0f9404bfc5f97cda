"""
FastAPI application — REST API for the research task engine.

Endpoints:
  POST /agents/tasks                          — Create (plan) a task
  GET  /agents/tasks/{task_id}                — Task state
  GET  /agents/workspaces/{workspace_id}/tasks — Tasks of a workspace
  POST /agents/tasks/{task_id}/start          — Start / resume in the background
  POST /agents/tasks/{task_id}/pause          — Pause before the next step
  POST /agents/tasks/{task_id}/cancel         — Cancel (fails the task)
  GET  /agents/tasks/{task_id}/telemetry      — Timing / retry summary
  GET  /agents/tasks/{task_id}/stream         — Server-Sent Events for one task
  GET  /agents/tasks/{task_id}/stored         — Stored result (Postgres / JSON file)
  GET  /agents/workspaces/{workspace_id}/results — Stored results of a workspace
  GET  /agents/workspaces/{workspace_id}/metrics — Performance metrics of stored results
  GET  /agents/workspaces/{workspace_id}/search  — Text search over stored results
  GET  /health                                — Health check
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from features.results import JsonFileResultSink, PostgresResultSink
from features.results import db as result_db
from features.results.analytics import DEFAULT_PERIOD_HOURS
from features.workspaces import lookup_ticker
from models.schemas import TaskType, step_to_dict, task_to_dict
from workflows.errors import InvalidTaskStateError, TaskNotFoundError
from workflows.events import TERMINAL_EVENTS, TaskEvent
from workflows.orchestrator import TaskOrchestrator
from workflows.tracker import telemetry_summary

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger(__name__)

orchestrator = TaskOrchestrator(sink=JsonFileResultSink(), ticker_lookup=lookup_ticker)
db_connected = False


@asynccontextmanager
async def lifespan(app: FastAPI):
    global db_connected
    try:
        result_db.init_db()
        orchestrator.sink = PostgresResultSink()
        db_connected = True
        log.info("Postgres database initialized")
    except Exception as e:
        log.warning("Could not connect to Postgres: %s (results will be written to JSON files)", e)
        db_connected = False
    yield
    await orchestrator.drain()


app = FastAPI(
    title="Research Agents",
    description="Autonomous multi-step research tasks over investment workspaces",
    version="1.0.0",
    lifespan=lifespan,
)


class CreateTaskRequest(BaseModel):
    workspace_id: int
    type: str
    params: dict[str, Any] = Field(default_factory=dict)


def _log_telemetry(event: str, **data: Any) -> None:
    """Structured JSON telemetry line."""
    record = {"event": f"agent:{event}", **data, "timestamp": datetime.now(timezone.utc).isoformat()}
    log.info("%s", json.dumps(record, default=str))


def _serialize(obj: Any) -> Any:
    """Make a dict JSON-serializable (handle datetimes, Decimals, etc)."""
    if isinstance(obj, dict):
        return {k: _serialize(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_serialize(v) for v in obj]
    if hasattr(obj, "isoformat"):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        return float(obj)
    return obj


def _get_or_404(task_id: str):
    task = orchestrator.get_task(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")
    return task


# ── Health ────────────────────────────────────────────────────────────

@app.get("/health")
def health():
    return {
        "status": "ok",
        "service": "research-agents",
        "db_connected": db_connected,
        "actions": len(orchestrator.executor.actions),
    }


# ── Tasks ─────────────────────────────────────────────────────────────

@app.post("/agents/tasks", status_code=201)
async def create_task(req: CreateTaskRequest):
    """Plan a new task for a workspace."""
    try:
        task_type = TaskType(req.type)
    except ValueError:
        valid = ", ".join(t.value for t in TaskType)
        raise HTTPException(status_code=400, detail=f"Unknown task type: {req.type} (expected one of {valid})")

    task = orchestrator.create_task(req.workspace_id, task_type, req.params)
    _log_telemetry("task_created", task_id=task.id, workspace_id=req.workspace_id, type=task_type.value)
    return task_to_dict(task)


@app.get("/agents/tasks/{task_id}")
async def get_task(task_id: str):
    return task_to_dict(_get_or_404(task_id))


@app.get("/agents/workspaces/{workspace_id}/tasks")
async def get_workspace_tasks(workspace_id: int):
    tasks = orchestrator.get_workspace_tasks(workspace_id)
    return {"tasks": [task_to_dict(t) for t in tasks], "count": len(tasks)}


@app.post("/agents/tasks/{task_id}/start")
async def start_task(task_id: str):
    """Start or resume a task. Steps run in the background."""
    _log_telemetry("task_start_requested", task_id=task_id)
    try:
        run = orchestrator.launch_task(task_id)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTaskStateError as e:
        raise HTTPException(status_code=409, detail=str(e))

    def _on_done(future: asyncio.Future) -> None:
        if not future.cancelled() and future.exception() is not None:
            log.error("Task %s run crashed: %s", task_id, future.exception())
            _log_telemetry("task_failed", task_id=task_id, error=str(future.exception()))

    run.add_done_callback(_on_done)
    return {"message": "Task started", "task_id": task_id}


@app.post("/agents/tasks/{task_id}/pause")
async def pause_task(task_id: str):
    try:
        task = orchestrator.pause_task(task_id)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    _log_telemetry("task_paused", task_id=task_id, status=task.status.value, reason="manual")
    return {"message": "Task paused", "task_id": task_id, "status": task.status.value}


@app.post("/agents/tasks/{task_id}/cancel")
async def cancel_task(task_id: str):
    try:
        task = orchestrator.cancel_task(task_id)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    _log_telemetry("task_cancelled", task_id=task_id, status=task.status.value)
    return {"message": "Task cancelled", "task_id": task_id, "status": task.status.value}


@app.get("/agents/tasks/{task_id}/telemetry")
async def get_task_telemetry(task_id: str):
    return telemetry_summary(_get_or_404(task_id))


# ── Live updates (Server-Sent Events) ─────────────────────────────────

def _sse(payload: dict) -> dict:
    return {"event": payload["type"], "data": json.dumps(payload, default=str)}


def _event_payload(event: TaskEvent) -> dict:
    payload: dict[str, Any] = {"type": event.name, "task": task_to_dict(event.task)}
    if event.step is not None:
        payload["step"] = step_to_dict(event.step)
    return payload


@app.get("/agents/tasks/{task_id}/stream")
async def stream_task(task_id: str):
    """Current state first, then every lifecycle event of the task until it is terminal."""
    task = _get_or_404(task_id)
    queue: asyncio.Queue[TaskEvent] = asyncio.Queue()

    def _enqueue(event: TaskEvent) -> None:
        if event.task.id == task_id:
            queue.put_nowait(event)

    async def _events():
        # Subscribed only once the client is actually reading the stream.
        unsubscribe = orchestrator.subscribe(_enqueue)
        try:
            yield _sse({"type": "task:state", "task": task_to_dict(task)})
            if task.is_terminal:
                return
            while True:
                event = await queue.get()
                yield _sse(_event_payload(event))
                if event.name in TERMINAL_EVENTS:
                    return
        finally:
            unsubscribe()

    return EventSourceResponse(
        _events(),
        headers={"X-Accel-Buffering": "no", "Cache-Control": "no-cache"},
    )


# ── Stored results ────────────────────────────────────────────────────

@app.get("/agents/tasks/{task_id}/stored")
async def get_stored_result(task_id: str):
    """Stored result of a finished task."""
    # Check Postgres first
    try:
        row = result_db.get_task_result(task_id)
        if row:
            row["steps"] = result_db.get_step_results(task_id)
            return _serialize(row)
    except Exception as e:
        log.warning("Stored result lookup failed for %s: %s", task_id, e)

    # Fallback: local JSON file
    record = JsonFileResultSink().load(task_id)
    if record is not None:
        return record
    raise HTTPException(status_code=404, detail=f"No stored result for task: {task_id}")


@app.get("/agents/workspaces/{workspace_id}/results")
async def list_stored_results(workspace_id: int, limit: int = 10, status: str | None = None):
    try:
        rows = result_db.list_task_results(workspace_id, limit=limit, status=status)
        return {"results": [_serialize(r) for r in rows], "count": len(rows)}
    except Exception as e:
        log.warning("Stored results query failed for workspace %s: %s", workspace_id, e)

    records = JsonFileResultSink().list_for_workspace(workspace_id, limit=limit, status=status)
    return {"results": records, "count": len(records)}


# ── Analytics ─────────────────────────────────────────────────────────

MAX_SEARCH_LIMIT = 50


@app.get("/agents/workspaces/{workspace_id}/metrics")
async def workspace_metrics(workspace_id: int, period_hours: int = DEFAULT_PERIOD_HOURS):
    """Success rate, duration percentiles and per-action step statistics."""
    period_hours = max(1, period_hours)
    try:
        metrics = result_db.get_agent_metrics(workspace_id, period_hours)
        metrics = _serialize(metrics)
    except Exception as e:
        log.warning("Metrics query failed for workspace %s: %s (using JSON files)", workspace_id, e)
        metrics = JsonFileResultSink().metrics(workspace_id, period_hours)
    return {"workspace_id": workspace_id, "period_hours": period_hours, "metrics": metrics}


@app.get("/agents/workspaces/{workspace_id}/search")
async def search_workspace_results(
    workspace_id: int,
    q: str = "",
    limit: int = 20,
    status: str | None = None,
    started_after: datetime | None = None,
    started_before: datetime | None = None,
    min_duration_ms: int | None = None,
):
    """Text search over a workspace's stored tasks and steps."""
    if not q.strip():
        raise HTTPException(status_code=400, detail="Query parameter q is required")
    if min_duration_ms is not None and min_duration_ms < 0:
        raise HTTPException(status_code=400, detail="Invalid min_duration_ms")

    filters = {
        "workspace_id": workspace_id,
        "limit": max(1, min(limit, MAX_SEARCH_LIMIT)),
        "step_limit": 3,
        "status": (status or "").strip() or None,
        "started_after": started_after,
        "started_before": started_before,
        "min_duration_ms": min_duration_ms,
    }
    try:
        results = _serialize(result_db.search_task_results(q, **filters))
    except Exception as e:
        log.warning("Search failed for workspace %s: %s (using JSON files)", workspace_id, e)
        results = JsonFileResultSink().search(q, **filters)
    return {"results": results, "count": len(results)}
