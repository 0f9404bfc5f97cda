"""
Lifecycle events — an observer list owned by each orchestrator.

Subscribers receive a TaskEvent carrying a snapshot of the task (and the
step, for step events) as it was when the event fired. Delivery is
fire-and-forget: a failing subscriber is logged and never affects the task.
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

from models.schemas import Step, Task, utcnow

log = logging.getLogger(__name__)

TASK_CREATED = "task:created"
TASK_STARTED = "task:started"
TASK_PAUSED = "task:paused"
TASK_CANCELLED = "task:cancelled"
TASK_COMPLETED = "task:completed"
TASK_FAILED = "task:failed"
STEP_STARTED = "step:started"
STEP_COMPLETED = "step:completed"
STEP_FAILED = "step:failed"

ALL_EVENTS = (
    TASK_CREATED, TASK_STARTED, TASK_PAUSED, TASK_CANCELLED,
    TASK_COMPLETED, TASK_FAILED, STEP_STARTED, STEP_COMPLETED, STEP_FAILED,
)

# Events after which a task never changes again
TERMINAL_EVENTS = frozenset({TASK_COMPLETED, TASK_FAILED, TASK_CANCELLED})


@dataclass
class TaskEvent:
    name: str
    task: Task
    step: Step | None = None
    emitted_at: datetime = field(default_factory=utcnow)


Subscriber = Callable[[TaskEvent], Any]


class EventBus:
    """Explicit subscriber list; sync callbacks run inline, async ones are scheduled."""

    def __init__(self) -> None:
        self._subscribers: list[tuple[frozenset[str] | None, Subscriber]] = []
        self._pending: set[asyncio.Future] = set()

    def subscribe(self, callback: Subscriber, events: Iterable[str] | None = None) -> Callable[[], None]:
        """Register a callback, optionally for a subset of event names.

        Returns a function that removes the subscription.
        """
        names = frozenset(events) if events is not None else None
        unknown = (names or frozenset()) - set(ALL_EVENTS)
        if unknown:
            raise ValueError(f"Unknown event(s): {', '.join(sorted(unknown))}")
        entry = (names, callback)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    def unsubscribe(self, callback: Subscriber) -> None:
        self._subscribers = [(n, cb) for n, cb in self._subscribers if cb != callback]

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def emit(self, name: str, task: Task, step: Step | None = None) -> None:
        if not self._subscribers:
            return
        event = TaskEvent(
            name=name,
            task=copy.deepcopy(task),
            step=copy.deepcopy(step) if step is not None else None,
        )
        for names, callback in list(self._subscribers):
            if names is not None and name not in names:
                continue
            try:
                outcome = callback(event)
            except Exception:
                log.exception("Subscriber %r failed on %s for task %s", callback, name, task.id)
                continue
            if inspect.isawaitable(outcome):
                self._schedule(outcome, name)

    def _schedule(self, awaitable: Any, name: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.warning("No running event loop; dropped async subscriber for %s", name)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        future = asyncio.ensure_future(awaitable, loop=loop)
        self._pending.add(future)
        future.add_done_callback(self._on_done)

    def _on_done(self, future: asyncio.Future) -> None:
        self._pending.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            log.warning("Async subscriber failed: %s", exc)
