"""
Postgres backing store for finished research tasks.

Tables:
  agent_task_results  — one row per task, keyed by task_id
  agent_step_results  — one row per step, FK to agent_task_results

Rows are upserted so a task can be flushed again without duplicating its
steps. The workspace lookup also reads the UI layer's `workflows` table
through this connection.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

import psycopg2
import psycopg2.extras

import config
from features.results.analytics import DEFAULT_PERIOD_HOURS, compute_metrics

log = logging.getLogger(__name__)

# ── Connection ────────────────────────────────────────────────────────

_pool: list[Any] = []


def _get_conn():
    """Get a Postgres connection (simple single-connection reuse)."""
    if _pool:
        conn = _pool[0]
        if not conn.closed:
            return conn
        _pool.clear()

    conn = psycopg2.connect(config.DATABASE_URL)
    conn.autocommit = True
    _pool.append(conn)
    return conn


@contextmanager
def get_cursor():
    """Yield a dict cursor."""
    conn = _get_conn()
    cur = conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
    try:
        yield cur
    finally:
        cur.close()


# ── Schema ────────────────────────────────────────────────────────────

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS agent_task_results (
    id                SERIAL PRIMARY KEY,
    task_id           TEXT NOT NULL UNIQUE,
    workspace_id      INTEGER NOT NULL,
    task_type         TEXT NOT NULL,
    task_description  TEXT,
    status            TEXT NOT NULL,
    started_at        TIMESTAMPTZ,
    completed_at      TIMESTAMPTZ,
    duration_ms       INTEGER,
    error             TEXT,
    error_tags        JSONB DEFAULT '[]'::jsonb,
    result_summary    JSONB DEFAULT '{}'::jsonb,
    created_at        TIMESTAMPTZ DEFAULT now(),
    updated_at        TIMESTAMPTZ DEFAULT now()
);

CREATE TABLE IF NOT EXISTS agent_step_results (
    id                SERIAL PRIMARY KEY,
    task_result_id    INTEGER NOT NULL REFERENCES agent_task_results(id) ON DELETE CASCADE,
    step_id           TEXT NOT NULL,
    step_name         TEXT NOT NULL,
    step_description  TEXT,
    action            TEXT NOT NULL,
    status            TEXT NOT NULL,
    result            JSONB,
    error             TEXT,
    started_at        TIMESTAMPTZ,
    completed_at      TIMESTAMPTZ,
    duration_ms       INTEGER,
    retry_count       INTEGER DEFAULT 0,
    created_at        TIMESTAMPTZ DEFAULT now(),
    UNIQUE (task_result_id, step_id)
);

CREATE INDEX IF NOT EXISTS idx_agent_task_results_workspace ON agent_task_results(workspace_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_agent_task_results_type ON agent_task_results(task_type, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_agent_task_results_status ON agent_task_results(status, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_agent_step_results_action ON agent_step_results(action, status);
"""


def init_db():
    """Create tables if they don't exist."""
    try:
        with get_cursor() as cur:
            cur.execute(SCHEMA_SQL)
        log.info("Database schema initialized")
    except Exception as e:
        log.error("Failed to initialize database: %s", e)
        raise


# ── Task results ──────────────────────────────────────────────────────

def upsert_task_result(task: dict, summary: dict) -> int:
    """Insert or update a task row and return its id. `task` is a serialized Task."""
    telemetry = task.get("telemetry") or {}
    with get_cursor() as cur:
        cur.execute("""
            INSERT INTO agent_task_results (
                task_id, workspace_id, task_type, task_description, status,
                started_at, completed_at, duration_ms, error, error_tags, result_summary
            ) VALUES (
                %(task_id)s, %(workspace_id)s, %(task_type)s, %(task_description)s, %(status)s,
                %(started_at)s, %(completed_at)s, %(duration_ms)s, %(error)s, %(error_tags)s,
                %(result_summary)s
            )
            ON CONFLICT (task_id) DO UPDATE SET
                status = EXCLUDED.status,
                started_at = EXCLUDED.started_at,
                completed_at = EXCLUDED.completed_at,
                duration_ms = EXCLUDED.duration_ms,
                error = EXCLUDED.error,
                error_tags = EXCLUDED.error_tags,
                result_summary = EXCLUDED.result_summary,
                updated_at = now()
            RETURNING id
        """, {
            "task_id": task["id"],
            "workspace_id": task["workspace_id"],
            "task_type": task["type"],
            "task_description": task.get("description", ""),
            "status": task["status"],
            "started_at": task.get("started_at"),
            "completed_at": task.get("completed_at"),
            "duration_ms": telemetry.get("task_duration_ms"),
            "error": task.get("error"),
            "error_tags": json.dumps(telemetry.get("error_tags", [])),
            "result_summary": json.dumps(summary),
        })
        return cur.fetchone()["id"]


def upsert_step_results(task_result_id: int, steps: list[dict]) -> None:
    """Insert or update one row per step."""
    with get_cursor() as cur:
        for step in steps:
            cur.execute("""
                INSERT INTO agent_step_results (
                    task_result_id, step_id, step_name, step_description, action, status,
                    result, error, started_at, completed_at, duration_ms, retry_count
                ) VALUES (
                    %(task_result_id)s, %(step_id)s, %(step_name)s, %(step_description)s,
                    %(action)s, %(status)s, %(result)s, %(error)s, %(started_at)s,
                    %(completed_at)s, %(duration_ms)s, %(retry_count)s
                )
                ON CONFLICT (task_result_id, step_id) DO UPDATE SET
                    status = EXCLUDED.status,
                    result = EXCLUDED.result,
                    error = EXCLUDED.error,
                    started_at = EXCLUDED.started_at,
                    completed_at = EXCLUDED.completed_at,
                    duration_ms = EXCLUDED.duration_ms,
                    retry_count = EXCLUDED.retry_count
            """, {
                "task_result_id": task_result_id,
                "step_id": step["id"],
                "step_name": step.get("name", ""),
                "step_description": step.get("description", ""),
                "action": step["action"],
                "status": step["status"],
                "result": json.dumps(step.get("result")),
                "error": step.get("error"),
                "started_at": step.get("started_at"),
                "completed_at": step.get("completed_at"),
                "duration_ms": step.get("duration_ms"),
                "retry_count": step.get("retry_count", 0),
            })


def get_task_result(task_id: str) -> dict | None:
    """Fetch a stored task result by task ID."""
    with get_cursor() as cur:
        cur.execute("SELECT * FROM agent_task_results WHERE task_id = %s", (task_id,))
        row = cur.fetchone()
        return dict(row) if row else None


def list_task_results(workspace_id: int, limit: int = 10, status: str | None = None) -> list[dict]:
    """List stored task results for a workspace, newest first."""
    with get_cursor() as cur:
        if status:
            cur.execute(
                "SELECT * FROM agent_task_results WHERE workspace_id = %s AND status = %s "
                "ORDER BY created_at DESC LIMIT %s",
                (workspace_id, status, limit),
            )
        else:
            cur.execute(
                "SELECT * FROM agent_task_results WHERE workspace_id = %s ORDER BY created_at DESC LIMIT %s",
                (workspace_id, limit),
            )
        return [dict(row) for row in cur.fetchall()]


def get_step_results(task_id: str) -> list[dict]:
    """Fetch the stored steps of a task, in plan order."""
    with get_cursor() as cur:
        cur.execute("""
            SELECT asr.* FROM agent_step_results asr
            JOIN agent_task_results atr ON asr.task_result_id = atr.id
            WHERE atr.task_id = %s
            ORDER BY asr.id ASC
        """, (task_id,))
        return [dict(row) for row in cur.fetchall()]


# ── Analytics ─────────────────────────────────────────────────────────

def get_agent_metrics(workspace_id: int, period_hours: int = DEFAULT_PERIOD_HOURS) -> dict:
    """Performance metrics over the tasks a workspace stored in the last period_hours."""
    since = datetime.now(timezone.utc) - timedelta(hours=period_hours)
    with get_cursor() as cur:
        cur.execute("""
            SELECT status, duration_ms, created_at
            FROM agent_task_results
            WHERE workspace_id = %s AND created_at >= %s
        """, (workspace_id, since))
        tasks = [dict(row) for row in cur.fetchall()]
        cur.execute("""
            SELECT asr.action, asr.status, asr.duration_ms, asr.error
            FROM agent_step_results asr
            JOIN agent_task_results atr ON asr.task_result_id = atr.id
            WHERE atr.workspace_id = %s AND atr.created_at >= %s
        """, (workspace_id, since))
        steps = [dict(row) for row in cur.fetchall()]
    return compute_metrics(tasks, steps)


_TASK_DOCUMENT = (
    "to_tsvector('english', coalesce(atr.task_description, '') || ' ' || "
    "coalesce(atr.error, '') || ' ' || coalesce(atr.result_summary::text, ''))"
)
_STEP_DOCUMENT = (
    "to_tsvector('english', coalesce(asr.step_name, '') || ' ' || "
    "coalesce(asr.step_description, '') || ' ' || coalesce(asr.error, '') || ' ' || "
    "coalesce(asr.result::text, ''))"
)
_HEADLINE_OPTIONS = "StartSel=<mark>, StopSel=</mark>"

_TASK_FILTERS = """
    AND (%(workspace_id)s::int IS NULL OR atr.workspace_id = %(workspace_id)s::int)
    AND (%(status)s::text IS NULL OR atr.status = %(status)s::text)
    AND (%(started_after)s::timestamptz IS NULL OR atr.started_at >= %(started_after)s::timestamptz)
    AND (%(started_before)s::timestamptz IS NULL OR atr.started_at <= %(started_before)s::timestamptz)
    AND (%(min_duration_ms)s::int IS NULL OR atr.duration_ms >= %(min_duration_ms)s::int)
"""


def search_task_results(
    query: str,
    workspace_id: int | None = None,
    limit: int = 20,
    step_limit: int = 3,
    status: str | None = None,
    started_after: datetime | None = None,
    started_before: datetime | None = None,
    min_duration_ms: int | None = None,
) -> list[dict]:
    """Full-text search over stored tasks and their steps, best match first.

    A task matches when its own text or one of its steps matches the query;
    each hit carries up to step_limit matching steps.
    """
    if not query.strip():
        return []
    params = {
        "query": query.strip(),
        "workspace_id": workspace_id,
        "limit": limit,
        "step_limit": step_limit,
        "status": status,
        "started_after": started_after,
        "started_before": started_before,
        "min_duration_ms": min_duration_ms,
        "headline": _HEADLINE_OPTIONS,
    }
    with get_cursor() as cur:
        cur.execute(f"""
            WITH q AS (SELECT plainto_tsquery('english', %(query)s) AS query),
            step_rank AS (
                SELECT asr.task_result_id, sum(ts_rank({_STEP_DOCUMENT}, q.query)) AS rank
                FROM agent_step_results asr, q
                WHERE {_STEP_DOCUMENT} @@ q.query
                GROUP BY asr.task_result_id
            )
            SELECT
                atr.id AS task_result_id, atr.task_id, atr.workspace_id, atr.task_type,
                atr.task_description, atr.status, atr.started_at, atr.completed_at,
                ts_rank({_TASK_DOCUMENT}, q.query) + coalesce(sr.rank, 0) AS rank,
                ts_headline('english', coalesce(atr.task_description, ''), q.query, %(headline)s) AS snippet
            FROM agent_task_results atr
            CROSS JOIN q
            LEFT JOIN step_rank sr ON sr.task_result_id = atr.id
            WHERE ({_TASK_DOCUMENT} @@ q.query OR sr.task_result_id IS NOT NULL)
            {_TASK_FILTERS}
            ORDER BY rank DESC, atr.created_at DESC
            LIMIT %(limit)s
        """, params)
        tasks = [dict(row) for row in cur.fetchall()]
        if not tasks:
            return []

        params["ids"] = [t["task_result_id"] for t in tasks]
        cur.execute(f"""
            WITH q AS (SELECT plainto_tsquery('english', %(query)s) AS query),
            ranked AS (
                SELECT
                    asr.task_result_id, asr.step_id, asr.action, asr.status,
                    ts_rank({_STEP_DOCUMENT}, q.query) AS rank,
                    ts_headline('english', coalesce(asr.step_description, ''), q.query, %(headline)s) AS snippet,
                    ROW_NUMBER() OVER (
                        PARTITION BY asr.task_result_id
                        ORDER BY ts_rank({_STEP_DOCUMENT}, q.query) DESC, asr.id ASC
                    ) AS rn
                FROM agent_step_results asr, q
                WHERE asr.task_result_id = ANY(%(ids)s)
                  AND {_STEP_DOCUMENT} @@ q.query
            )
            SELECT task_result_id, step_id, action, status, rank, snippet
            FROM ranked
            WHERE rn <= %(step_limit)s
            ORDER BY task_result_id, rn
        """, params)
        step_rows = [dict(row) for row in cur.fetchall()]

    steps_by_task: dict[int, list[dict]] = {}
    for row in step_rows:
        steps_by_task.setdefault(row.pop("task_result_id"), []).append(row)
    for task in tasks:
        task["steps"] = steps_by_task.get(task.pop("task_result_id"), [])
    log.info("Search %r matched %d stored tasks", query, len(tasks))
    return tasks


# ── Workspaces (owned by the UI layer, read-only here) ────────────────

def get_workspace_ticker(workspace_id: int) -> str | None:
    with get_cursor() as cur:
        cur.execute("SELECT ticker FROM workflows WHERE id = %s LIMIT 1", (workspace_id,))
        row = cur.fetchone()
        return row["ticker"] if row and row["ticker"] else None
