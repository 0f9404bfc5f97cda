"""
Task Orchestrator — plans research tasks, drives their steps in order and
owns the in-memory task registry.

State machine (Task.status):

    pending ──start──▶ in_progress ──all steps done──▶ completed
                       │   ▲    │
                 pause │   │    └──step raises / cancel──▶ failed
                       ▼   │start
                       paused ──cancel──▶ failed

completed and failed are terminal. Steps run strictly one after another
within a task, since each step sees the results of the ones before it;
different tasks run concurrently on the same event loop.

Every terminal transition goes through one funnel which stamps
completed_at, records telemetry.task_duration_ms and hands the task to the
result sink exactly once. Sink failures are logged and never change the
task's status.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol

import config
from activities.registry import StepExecutor, default_executor
from models.schemas import (
    STARTABLE_STATUSES,
    ExecutionContext,
    Step,
    Task,
    TaskStatus,
    TaskTelemetry,
    TaskType,
    result_key,
    utcnow,
)
from workflows.errors import InvalidTaskStateError, StepTimeoutError, TaskNotFoundError
from workflows.events import (
    STEP_COMPLETED,
    STEP_FAILED,
    STEP_STARTED,
    TASK_CANCELLED,
    TASK_COMPLETED,
    TASK_CREATED,
    TASK_FAILED,
    TASK_PAUSED,
    TASK_STARTED,
    EventBus,
    Subscriber,
)
from workflows.plans import describe_task, plan_steps
from workflows.tracker import StepTracker, record_task_duration

log = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Cancelled by user"

TickerLookup = Callable[[int], "str | None | Awaitable[str | None]"]


class ResultSink(Protocol):
    async def save(self, task: Task) -> None: ...


def new_task_id() -> str:
    return f"task-{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:8]}"


class TaskOrchestrator:
    """Coordinates autonomous task execution."""

    def __init__(
        self,
        executor: StepExecutor | None = None,
        sink: ResultSink | None = None,
        ticker_lookup: TickerLookup | None = None,
        bus: EventBus | None = None,
        step_timeout: float | None = config.STEP_TIMEOUT_SEC,
        max_finished_tasks: int = config.MAX_FINISHED_TASKS,
    ):
        self.executor = executor or default_executor()
        self.sink = sink
        self.ticker_lookup = ticker_lookup
        self.events = bus or EventBus()
        self.step_timeout = step_timeout or None
        self.max_finished_tasks = max_finished_tasks

        self._tasks: dict[str, Task] = {}
        self._running: set[str] = set()
        self._flushed: set[str] = set()
        self._background: set[asyncio.Future] = set()

    # ── Events ────────────────────────────────────────────────────────

    def subscribe(self, callback: Subscriber, event_names=None) -> Callable[[], None]:
        return self.events.subscribe(callback, event_names)

    def unsubscribe(self, callback: Subscriber) -> None:
        self.events.unsubscribe(callback)

    # ── Registry & queries ────────────────────────────────────────────

    def create_task(self, workspace_id: int, task_type: TaskType | str, params: dict | None = None) -> Task:
        """Plan a new task and register it as pending."""
        task_type = TaskType(task_type)
        params = dict(params or {})
        task = Task(
            id=new_task_id(),
            workspace_id=workspace_id,
            type=task_type,
            description=describe_task(task_type, params),
            steps=plan_steps(task_type, params),
            telemetry=TaskTelemetry(last_heartbeat=utcnow()),
        )
        self._tasks[task.id] = task
        self._evict_finished()
        log.info("[TASK] Created: %s — %s (%d steps)", task.id, task.description, len(task.steps))
        self.events.emit(TASK_CREATED, task)
        return task

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def get_workspace_tasks(self, workspace_id: int) -> list[Task]:
        return [t for t in self._tasks.values() if t.workspace_id == workspace_id]

    def is_running(self, task_id: str) -> bool:
        return task_id in self._running

    def _require(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    # ── Lifecycle operations ──────────────────────────────────────────

    async def start_task(self, task_id: str) -> Task:
        """Start or resume a task and drive it until it completes, fails or pauses."""
        task = self._begin(task_id)
        await self._drive(task)
        return task

    def launch_task(self, task_id: str) -> asyncio.Future:
        """Validate and start a task, running its steps in the background.

        Invalid-state and not-found errors are raised here, synchronously.
        Must be called with an event loop running.
        """
        loop = asyncio.get_running_loop()
        task = self._begin(task_id)
        future = loop.create_task(self._drive(task))
        self._track(future)
        return future

    def pause_task(self, task_id: str) -> Task:
        """Ask a running task to stop before its next step."""
        task = self._require(task_id)
        if task.status != TaskStatus.IN_PROGRESS:
            log.info("[TASK] Pause ignored: %s is %s", task.id, task.status.value)
            return task
        task.status = TaskStatus.PAUSED
        log.info("[TASK] Paused: %s at step %d/%d", task.id, task.current_step_index + 1, len(task.steps))
        self.events.emit(TASK_PAUSED, task)
        return task

    def cancel_task(self, task_id: str) -> Task:
        """Fail a non-terminal task. An in-flight step is not interrupted; its
        result is discarded when it returns."""
        task = self._require(task_id)
        if task.is_terminal:
            log.info("[TASK] Cancel ignored: %s is already %s", task.id, task.status.value)
            return task
        self._close(task, TaskStatus.FAILED, CANCELLED_MESSAGE)
        log.info("[TASK] Cancelled: %s", task.id)
        self.events.emit(TASK_CANCELLED, task)
        self._flush_soon(task)
        return task

    async def drain(self) -> None:
        """Wait for background task runs and result flushes to settle."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ── Step loop ─────────────────────────────────────────────────────

    def _begin(self, task_id: str) -> Task:
        task = self._require(task_id)
        if task_id in self._running:
            raise InvalidTaskStateError(task_id, task.status.value, f"Task {task_id} is already running")
        if task.status not in STARTABLE_STATUSES:
            raise InvalidTaskStateError(task_id, task.status.value)

        resuming = task.status == TaskStatus.PAUSED
        self._running.add(task_id)
        task.status = TaskStatus.IN_PROGRESS
        if task.started_at is None:
            task.started_at = utcnow()
        log.info(
            "[TASK] %s: %s at step %d/%d",
            "Resumed" if resuming else "Started", task.id, task.current_step_index + 1, len(task.steps),
        )
        self.events.emit(TASK_STARTED, task)
        return task

    async def _drive(self, task: Task) -> None:
        try:
            try:
                await self._run_steps(task)
            except Exception as e:
                if not task.is_terminal:
                    failed = task.steps[task.current_step_index]
                    await self._finish(task, TaskStatus.FAILED, failed.error or str(e))
                return

            # A pause that lands during the last step has nothing left to stop.
            if not task.is_terminal and task.current_step_index >= len(task.steps):
                await self._finish(task, TaskStatus.COMPLETED)
        finally:
            self._running.discard(task.id)

    async def _run_steps(self, task: Task) -> None:
        tracker = StepTracker(task)
        for i in range(task.current_step_index, len(task.steps)):
            if task.status != TaskStatus.IN_PROGRESS:
                return
            task.current_step_index = i
            step = task.steps[i]
            await self._execute_step(task, step, tracker)
            if step.status == TaskStatus.COMPLETED:
                task.current_step_index = i + 1

    async def _execute_step(self, task: Task, step: Step, tracker: StepTracker) -> None:
        tracker.start(step)
        self.events.emit(STEP_STARTED, task, step)

        try:
            context = ExecutionContext(
                workspace_id=task.workspace_id,
                ticker=await self._lookup_ticker(task.workspace_id),
                previous_results=self._previous_results(task),
            )
            result = await self._invoke(step, context)
        except Exception as e:
            if task.is_terminal:
                tracker.discard(step, task.error or CANCELLED_MESSAGE)
                return
            tracker.fail(step, str(e) or e.__class__.__name__)
            self.events.emit(STEP_FAILED, task, step)
            raise

        if task.is_terminal:
            tracker.discard(step, task.error or CANCELLED_MESSAGE)
            return
        tracker.complete(step, result)
        self.events.emit(STEP_COMPLETED, task, step)

    async def _invoke(self, step: Step, context: ExecutionContext) -> Any:
        call = self.executor.execute(step, context)
        if not self.step_timeout:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=self.step_timeout)
        except asyncio.TimeoutError:
            raise StepTimeoutError(step.name, self.step_timeout) from None

    @staticmethod
    def _previous_results(task: Task) -> dict[str, Any]:
        """Results of every step before the cursor that completed."""
        return {
            result_key(s.action): s.result
            for s in task.steps[: task.current_step_index]
            if s.status == TaskStatus.COMPLETED
        }

    async def _lookup_ticker(self, workspace_id: int) -> str | None:
        if self.ticker_lookup is None:
            return None
        if inspect.iscoroutinefunction(self.ticker_lookup):
            return await self.ticker_lookup(workspace_id)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.ticker_lookup, workspace_id)

    # ── Terminal funnel ───────────────────────────────────────────────

    @staticmethod
    def _close(task: Task, status: TaskStatus, error: str | None = None) -> None:
        task.status = status
        task.error = error
        task.completed_at = utcnow()
        record_task_duration(task)

    async def _finish(self, task: Task, status: TaskStatus, error: str | None = None) -> None:
        self._close(task, status, error)
        if status == TaskStatus.COMPLETED:
            log.info("[TASK] Completed: %s in %dms", task.id, task.telemetry.task_duration_ms or 0)
        else:
            log.error("[TASK] Failed: %s — %s", task.id, error)
        await self._flush(task)
        self.events.emit(
            TASK_COMPLETED if status == TaskStatus.COMPLETED else TASK_FAILED, task,
        )

    async def _flush(self, task: Task) -> None:
        """Hand a terminal task to the result sink. Best-effort."""
        try:
            if self.sink is not None:
                await self.sink.save(task)
        except Exception:
            log.exception("Failed to persist results for task %s", task.id)
        finally:
            self._flushed.add(task.id)

    def _flush_soon(self, task: Task) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(self._flush(task))
            return
        self._track(loop.create_task(self._flush(task)))

    def _track(self, future: asyncio.Future) -> None:
        self._background.add(future)
        future.add_done_callback(self._background.discard)

    # ── Retention ─────────────────────────────────────────────────────

    def _evict_finished(self) -> None:
        """Drop the oldest terminal tasks beyond max_finished_tasks.

        Only tasks whose result has already been handed to the sink are
        eligible, so nothing is evicted before it could be stored.
        """
        if self.max_finished_tasks <= 0:
            return
        finished = [
            t for t in self._tasks.values()
            if t.is_terminal and t.id in self._flushed and t.id not in self._running
        ]
        overflow = len(finished) - self.max_finished_tasks
        if overflow <= 0:
            return
        finished.sort(key=lambda t: t.completed_at or t.created_at)
        for task in finished[:overflow]:
            del self._tasks[task.id]
            self._flushed.discard(task.id)
            log.info("[TASK] Evicted from registry: %s (%s)", task.id, task.status.value)
