"""
Step Tracker — timing, retry and error-tag bookkeeping for a task's steps.

Every state change on a step goes through here so the telemetry on the
owning task stays consistent with the steps themselves.
"""

from __future__ import annotations

import logging
import time

from models.schemas import Step, Task, TaskStatus, utcnow

log = logging.getLogger(__name__)


def error_tag(action: str) -> str:
    return f"step_{action}_failed"


class StepTracker:
    """Tracks the steps of a single task while its loop is running."""

    def __init__(self, task: Task):
        self.task = task
        self._active: dict[str, float] = {}  # step_id → monotonic start

    def start(self, step: Step) -> None:
        """Mark a step as running and refresh the task heartbeat."""
        step.status = TaskStatus.IN_PROGRESS
        step.started_at = utcnow()
        step.error = None
        self._active[step.id] = time.monotonic()
        self.task.telemetry.last_heartbeat = step.started_at
        log.info("[STEP] Started: %s/%s — %s", self.task.id, step.id, step.name)

    def complete(self, step: Step, result: object) -> None:
        step.result = result
        step.status = TaskStatus.COMPLETED
        step.completed_at = utcnow()
        step.duration_ms = self._elapsed_ms(step)
        log.info(
            "[STEP] Completed: %s/%s — %s (%dms)",
            self.task.id, step.id, step.name, step.duration_ms or 0,
        )

    def fail(self, step: Step, error: str) -> None:
        """Mark a step as failed, count the attempt and tag the failing action."""
        step.status = TaskStatus.FAILED
        step.error = error
        step.duration_ms = self._elapsed_ms(step)
        step.retry_count += 1

        telemetry = self.task.telemetry
        telemetry.step_retries[step.id] = step.retry_count
        tag = error_tag(step.action)
        if tag not in telemetry.error_tags:
            telemetry.error_tags.append(tag)
        log.error("[STEP] Failed: %s/%s — %s: %s", self.task.id, step.id, step.name, error)

    def discard(self, step: Step, reason: str) -> None:
        """Close out an in-flight step whose task became terminal underneath it."""
        step.result = None
        step.status = TaskStatus.FAILED
        step.error = reason
        step.duration_ms = self._elapsed_ms(step)
        log.info("[STEP] Discarded: %s/%s — %s: %s", self.task.id, step.id, step.name, reason)

    def _elapsed_ms(self, step: Step) -> int | None:
        start = self._active.pop(step.id, None)
        if start is None:
            return None
        return int(round((time.monotonic() - start) * 1000))


def record_task_duration(task: Task) -> None:
    """Set telemetry.task_duration_ms from the task's start/completion stamps."""
    if task.started_at is None or task.completed_at is None:
        return
    elapsed = task.completed_at - task.started_at
    task.telemetry.task_duration_ms = max(0, int(elapsed.total_seconds() * 1000))


def telemetry_summary(task: Task) -> dict:
    """Aggregate view of a task's telemetry, one entry per step."""
    telemetry = task.telemetry
    return {
        "task_id": task.id,
        "status": task.status.value,
        "task_duration_ms": telemetry.task_duration_ms,
        "last_heartbeat": telemetry.last_heartbeat.isoformat() if telemetry.last_heartbeat else None,
        "error_tags": list(telemetry.error_tags),
        "step_metrics": [
            {
                "step_id": step.id,
                "name": step.name,
                "status": step.status.value,
                "duration_ms": step.duration_ms,
                "retry_count": step.retry_count,
                "error_message": step.error,
            }
            for step in task.steps
        ],
        "total_retries": sum(telemetry.step_retries.values()),
        "failed_steps": sum(1 for s in task.steps if s.status == TaskStatus.FAILED),
    }
