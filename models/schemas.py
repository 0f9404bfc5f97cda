"""
Data models for autonomous research tasks.

A Task is one run of a named multi-step workflow against a workspace. Its
plan (the list of Steps) is fixed when the task is created; the orchestrator
mutates the steps in place as they execute.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})
STARTABLE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.PAUSED})


class TaskType(str, Enum):
    ANALYZE_10K = "analyze-10k"
    BUILD_DCF_MODEL = "build-dcf-model"
    COMPETITIVE_ANALYSIS = "competitive-analysis"
    THESIS_VALIDATION = "thesis-validation"
    RISK_ASSESSMENT = "risk-assessment"
    QUARTERLY_UPDATE = "quarterly-update"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Step:
    """One unit of a task's plan, bound to an executor action."""
    id: str
    name: str
    description: str
    action: str
    params: dict = field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    result: Any = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    retry_count: int = 0


@dataclass
class TaskTelemetry:
    """Timing and failure-tagging metadata, kept apart from step results."""
    task_duration_ms: int | None = None
    step_retries: dict[str, int] = field(default_factory=dict)
    error_tags: list[str] = field(default_factory=list)
    last_heartbeat: datetime | None = None


@dataclass
class Task:
    """A single autonomous research task."""
    id: str
    workspace_id: int
    type: TaskType
    description: str
    steps: list[Step]
    status: TaskStatus = TaskStatus.PENDING
    current_step_index: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    result: dict | None = None
    telemetry: TaskTelemetry = field(default_factory=TaskTelemetry)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class ExecutionContext:
    """What a step handler sees besides its own params."""
    workspace_id: int
    ticker: str | None = None
    previous_results: dict[str, Any] = field(default_factory=dict)

    def result_of(self, action: str, default: Any = None) -> Any:
        return self.previous_results.get(result_key(action), default)

    def require(self, action: str) -> Any:
        """Result of an earlier step, or ValueError if it never completed."""
        key = result_key(action)
        if key not in self.previous_results:
            raise ValueError(f"Missing result from earlier step '{action}'")
        return self.previous_results[key]

    def require_ticker(self, params: dict | None = None) -> str:
        ticker = (params or {}).get("ticker") or self.ticker
        if not ticker:
            raise ValueError("Ticker is required")
        return str(ticker).upper()


def result_key(action: str) -> str:
    """Key under which a completed step's result is exposed to later steps."""
    return action.strip().lower()


def jsonable(obj: Any) -> Any:
    """Make a value JSON-serializable (enums, datetimes, nested containers)."""
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, dict):
        return {str(k): jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [jsonable(v) for v in obj]
    if hasattr(obj, "isoformat"):
        return obj.isoformat()
    return obj


def task_to_dict(task: Task) -> dict:
    return jsonable(asdict(task))


def step_to_dict(step: Step) -> dict:
    return jsonable(asdict(step))
