"""Pytest configuration and fixtures."""

import copy
import os
import sys
from pathlib import Path

import pytest

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Environment setup (before config is imported)
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("WORKSPACE_TICKERS", "")

from activities.registry import StepExecutor  # noqa: E402
from models.schemas import TaskType  # noqa: E402
from workflows.events import EventBus  # noqa: E402
from workflows.orchestrator import TaskOrchestrator  # noqa: E402
from workflows.plans import plan_steps  # noqa: E402

ALL_ACTIONS = sorted({s.action for t in TaskType for s in plan_steps(t, {"ticker": "TEST"})})


class RecordingSink:
    """Result sink that keeps a snapshot of every task it is given."""

    def __init__(self, fail: bool = False):
        self.saved = []
        self.fail = fail

    async def save(self, task):
        self.saved.append(copy.deepcopy(task))
        if self.fail:
            raise RuntimeError("storage unavailable")

    def statuses(self):
        return [t.status.value for t in self.saved]


def echo_handler(action: str):
    async def handler(params, context):
        return {"action": action, "seen": sorted(context.previous_results)}
    return handler


def make_executor(**overrides) -> StepExecutor:
    """Executor with an echo handler for every planned action; overrides replace handlers by action."""
    handlers = {action: echo_handler(action) for action in ALL_ACTIONS}
    handlers.update(overrides)
    return StepExecutor(handlers)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def event_log():
    """List of (event name, task status, step id) tuples, plus the bus feeding it."""
    bus = EventBus()
    received = []
    bus.subscribe(lambda e: received.append((e.name, e.task.status.value, e.step.id if e.step else None)))
    return bus, received


@pytest.fixture
def make_orchestrator(sink):
    def factory(executor=None, **kwargs):
        kwargs.setdefault("sink", sink)
        kwargs.setdefault("ticker_lookup", lambda workspace_id: "TEST")
        kwargs.setdefault("step_timeout", 5)
        return TaskOrchestrator(executor=executor or make_executor(), **kwargs)
    return factory
