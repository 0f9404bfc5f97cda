"""
Result sinks — durable storage for tasks that reached a terminal state.

The orchestrator awaits `sink.save(task)` once per terminal transition and
logs anything it raises. Both sinks write the same serialized task; the
Postgres sink additionally splits the steps into their own rows.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterator
from datetime import datetime, timedelta, timezone
from pathlib import Path

import config
from features.results import db as result_db
from features.results.analytics import (
    DEFAULT_PERIOD_HOURS,
    as_datetime,
    compute_metrics,
    search_records,
    step_rows,
    task_row,
)
from models.schemas import Task, TaskStatus, jsonable, result_key, task_to_dict

log = logging.getLogger(__name__)


def summarize_task(task: Task) -> dict:
    """Step counts plus the result of every completed step, keyed by action."""
    completed = [s for s in task.steps if s.status == TaskStatus.COMPLETED]
    failed = sum(1 for s in task.steps if s.status == TaskStatus.FAILED)
    total = len(task.steps)
    summary = {
        "total_steps": total,
        "completed_steps": len(completed),
        "failed_steps": failed,
        "completion_rate": len(completed) / total if total else 0.0,
    }
    for step in completed:
        summary[result_key(step.action)] = jsonable(step.result)
    return summary


class PostgresResultSink:
    """Upserts the task and its steps into agent_task_results / agent_step_results."""

    async def save(self, task: Task) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._save_sync, task)

    @staticmethod
    def _save_sync(task: Task) -> None:
        record = task_to_dict(task)
        task_result_id = result_db.upsert_task_result(record, summarize_task(task))
        result_db.upsert_step_results(task_result_id, record["steps"])
        log.info("Stored results for task %s (%s, %d steps)", task.id, task.status.value, len(task.steps))


class JsonFileResultSink:
    """Writes one <task_id>.json file per task; used when Postgres is unavailable."""

    def __init__(self, runs_dir: Path | None = None):
        self.runs_dir = Path(runs_dir or config.TASK_RUNS_DIR)

    async def save(self, task: Task) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._write, task)

    def _write(self, task: Task) -> str:
        self.runs_dir.mkdir(parents=True, exist_ok=True)
        record = task_to_dict(task)
        record["summary"] = summarize_task(task)
        file_path = self.runs_dir / f"{task.id}.json"
        with open(file_path, "w") as f:
            json.dump(record, f, indent=2, default=str)
        log.info("Task log saved: %s", file_path)
        return str(file_path)

    def load(self, task_id: str) -> dict | None:
        file_path = self.runs_dir / f"{task_id}.json"
        if not file_path.exists():
            return None
        with open(file_path) as f:
            return json.load(f)

    def _records(self) -> Iterator[dict]:
        """Every stored record, newest first (task ids sort by creation time)."""
        if not self.runs_dir.is_dir():
            return
        for log_file in sorted(self.runs_dir.glob("*.json"), reverse=True):
            with open(log_file) as f:
                yield json.load(f)

    def list_for_workspace(self, workspace_id: int, limit: int = 10, status: str | None = None) -> list[dict]:
        """Stored tasks of a workspace, newest first, optionally only those in `status`."""
        records = []
        for data in self._records():
            if data.get("workspace_id") != workspace_id:
                continue
            if status and data.get("status") != status:
                continue
            records.append(data)
            if len(records) >= limit:
                break
        return records

    def metrics(self, workspace_id: int, period_hours: int = DEFAULT_PERIOD_HOURS) -> dict:
        since = datetime.now(timezone.utc) - timedelta(hours=period_hours)
        tasks, steps = [], []
        for data in self._records():
            if data.get("workspace_id") != workspace_id:
                continue
            created = as_datetime(data.get("created_at"))
            if created is None or created < since:
                continue
            tasks.append(task_row(data))
            steps.extend(step_rows(data))
        return compute_metrics(tasks, steps)

    def search(self, query: str, **filters) -> list[dict]:
        return search_records(self._records(), query, **filters)
