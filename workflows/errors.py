"""
Errors raised by the task orchestrator and the step executor.
"""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for orchestration errors."""


class TaskNotFoundError(OrchestratorError, LookupError):
    def __init__(self, task_id: str):
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class InvalidTaskStateError(OrchestratorError):
    """The task cannot make the requested transition from its current state."""

    def __init__(self, task_id: str, status: str, reason: str | None = None):
        super().__init__(reason or f"Task {task_id} is already {status}")
        self.task_id = task_id
        self.status = status


class UnknownActionError(OrchestratorError, KeyError):
    def __init__(self, action: str):
        super().__init__(action)
        self.action = action

    def __str__(self) -> str:
        return f"Unknown action: {self.action}"


class StepTimeoutError(OrchestratorError):
    def __init__(self, step_name: str, timeout: float):
        super().__init__(f"Step '{step_name}' timed out after {timeout:g}s")
        self.step_name = step_name
        self.timeout = timeout
