"""
Result analytics — performance metrics and text search over stored results.

The Postgres queries in db.py and the JSON-file sink both reduce their
records to plain row dicts and hand them to `compute_metrics`, so a workspace
gets the same numbers whichever store is answering.

Task rows:  {status, duration_ms, created_at}
Step rows:  {action, status, duration_ms, error}
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from typing import Any

DEFAULT_PERIOD_HOURS = 720
TOP_STEPS = 8
MAX_ERROR_TYPE_LEN = 120

HIGHLIGHT_START = "<mark>"
HIGHLIGHT_STOP = "</mark>"


def as_datetime(value: Any) -> datetime | None:
    """Parse an ISO string (or pass through a datetime); naive values are taken as UTC."""
    if value is None:
        return None
    if not isinstance(value, datetime):
        try:
            value = datetime.fromisoformat(str(value))
        except ValueError:
            return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


# ── Metrics ───────────────────────────────────────────────────────────

def percentile(values: list[int], p: float) -> int:
    """Nearest-rank percentile; 0 for an empty list."""
    if not values:
        return 0
    ordered = sorted(values)
    idx = min(len(ordered) - 1, max(0, int(p / 100 * len(ordered))))
    return ordered[idx]


def _average(values: list[int]) -> int:
    if not values:
        return 0
    return int(sum(values) / len(values) + 0.5)


def error_type(error: str | None) -> str:
    """Bucket an error message by the text before its first colon."""
    if error and error.strip():
        return error.split(":")[0][:MAX_ERROR_TYPE_LEN]
    return "Unknown"


def compute_metrics(tasks: list[dict], steps: list[dict], now: datetime | None = None) -> dict:
    now = now or datetime.now(timezone.utc)

    total = len(tasks)
    completed = sum(1 for t in tasks if t.get("status") == "completed")
    failed = sum(1 for t in tasks if t.get("status") == "failed")
    durations = [t["duration_ms"] for t in tasks if (t.get("duration_ms") or 0) > 0]

    per_action: dict[str, dict[str, int]] = {}
    failed_by_action: dict[str, int] = {}
    errors_by_type: dict[str, int] = {}
    for s in steps:
        action = s.get("action") or "unknown"
        totals = per_action.setdefault(action, {"total": 0, "success": 0, "sum_ms": 0, "count_ms": 0})
        totals["total"] += 1
        if s.get("status") == "completed":
            totals["success"] += 1
        if (s.get("duration_ms") or 0) > 0:
            totals["sum_ms"] += s["duration_ms"]
            totals["count_ms"] += 1
        if s.get("status") == "failed":
            failed_by_action[action] = failed_by_action.get(action, 0) + 1
            kind = error_type(s.get("error"))
            errors_by_type[kind] = errors_by_type.get(kind, 0) + 1

    step_success_rates = {
        action: {
            "success": v["success"],
            "total": v["total"],
            "rate": v["success"] / v["total"] * 100 if v["total"] else 0.0,
        }
        for action, v in per_action.items()
    }
    slowest = sorted(
        (
            {"action": action, "avg_duration_ms": int(v["sum_ms"] / v["count_ms"] + 0.5) if v["count_ms"] else 0}
            for action, v in per_action.items()
        ),
        key=lambda s: s["avg_duration_ms"],
        reverse=True,
    )
    most_failed = sorted(
        ({"action": action, "failure_count": n} for action, n in failed_by_action.items()),
        key=lambda s: s["failure_count"],
        reverse=True,
    )

    created = [as_datetime(t.get("created_at")) for t in tasks]

    def within(days: int) -> int:
        cutoff = now - timedelta(days=days)
        return sum(1 for c in created if c is not None and c >= cutoff)

    return {
        "total_tasks": total,
        "completed_tasks": completed,
        "failed_tasks": failed,
        "success_rate": completed / total * 100 if total else 0.0,
        "average_duration_ms": _average(durations),
        "p50_duration_ms": percentile(durations, 50),
        "p95_duration_ms": percentile(durations, 95),
        "p99_duration_ms": percentile(durations, 99),
        "step_success_rates": step_success_rates,
        "slowest_steps": slowest[:TOP_STEPS],
        "errors_by_type": errors_by_type,
        "most_failed_steps": most_failed[:TOP_STEPS],
        "tasks_last_24h": within(1),
        "tasks_last_7d": within(7),
        "tasks_last_30d": within(30),
    }


# ── Stored-record adapters (JSON files) ───────────────────────────────

def task_row(record: dict) -> dict:
    return {
        "status": record.get("status"),
        "duration_ms": (record.get("telemetry") or {}).get("task_duration_ms"),
        "created_at": record.get("created_at"),
    }


def step_rows(record: dict) -> list[dict]:
    return [
        {
            "action": s.get("action"),
            "status": s.get("status"),
            "duration_ms": s.get("duration_ms"),
            "error": s.get("error"),
        }
        for s in record.get("steps", [])
    ]


# ── Search ────────────────────────────────────────────────────────────

def query_terms(query: str) -> list[str]:
    return re.findall(r"\w+", query.lower())


def _score(text: str, terms: list[str]) -> int:
    """Occurrences of the terms in text; 0 unless every term appears."""
    lowered = text.lower()
    counts = [lowered.count(term) for term in terms]
    return sum(counts) if all(counts) else 0


def highlight(text: str, terms: list[str]) -> str:
    if not text or not terms:
        return text or ""
    pattern = re.compile("|".join(re.escape(t) for t in terms), re.IGNORECASE)
    return pattern.sub(lambda m: f"{HIGHLIGHT_START}{m.group(0)}{HIGHLIGHT_STOP}", text)


def _task_text(record: dict) -> str:
    return " ".join([
        record.get("description") or "",
        record.get("error") or "",
        json.dumps(record.get("summary") or {}, default=str),
    ])


def _step_text(step: dict) -> str:
    return " ".join([
        step.get("name") or "",
        step.get("description") or "",
        step.get("error") or "",
        json.dumps(step.get("result"), default=str),
    ])


def search_records(
    records: Iterable[dict],
    query: str,
    workspace_id: int | None = None,
    limit: int = 20,
    step_limit: int = 3,
    status: str | None = None,
    started_after: datetime | None = None,
    started_before: datetime | None = None,
    min_duration_ms: int | None = None,
) -> list[dict]:
    """Rank stored task records by how often the query terms appear in the
    task or its steps. Every term must appear in the task text or in one step."""
    terms = query_terms(query)
    if not terms:
        return []
    started_after = as_datetime(started_after)
    started_before = as_datetime(started_before)

    hits = []
    for record in records:
        if workspace_id is not None and record.get("workspace_id") != workspace_id:
            continue
        if status and record.get("status") != status:
            continue
        started = as_datetime(record.get("started_at"))
        if started_after and (started is None or started < started_after):
            continue
        if started_before and (started is None or started > started_before):
            continue
        duration = (record.get("telemetry") or {}).get("task_duration_ms")
        if min_duration_ms is not None and (duration is None or duration < min_duration_ms):
            continue

        step_hits = []
        for position, step in enumerate(record.get("steps", [])):
            rank = _score(_step_text(step), terms)
            if rank:
                step_hits.append((rank, position, step))
        task_rank = _score(_task_text(record), terms)
        if not task_rank and not step_hits:
            continue
        step_hits.sort(key=lambda h: (-h[0], h[1]))

        hits.append({
            "task_id": record.get("id"),
            "workspace_id": record.get("workspace_id"),
            "task_type": record.get("type"),
            "task_description": record.get("description"),
            "status": record.get("status"),
            "started_at": record.get("started_at"),
            "completed_at": record.get("completed_at"),
            "rank": task_rank + sum(h[0] for h in step_hits),
            "snippet": highlight(record.get("description") or "", terms),
            "steps": [
                {
                    "step_id": step.get("id"),
                    "action": step.get("action"),
                    "status": step.get("status"),
                    "rank": rank,
                    "snippet": highlight(step.get("description") or "", terms),
                }
                for rank, _, step in step_hits[:step_limit]
            ],
            "_created_at": record.get("created_at") or "",
        })

    hits.sort(key=lambda h: (h["rank"], h["_created_at"]), reverse=True)
    for hit in hits:
        del hit["_created_at"]
    return hits[:limit]
