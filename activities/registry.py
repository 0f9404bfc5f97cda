"""
Step Executor — dispatch table from action name to handler.

Handlers are plain `handler(params, context) -> dict` functions. Blocking
handlers run in the default thread pool so the event loop stays free for
other tasks; `async def` handlers are awaited directly.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
from typing import Any, Callable

from models.schemas import ExecutionContext, Step
from workflows.errors import UnknownActionError

log = logging.getLogger(__name__)

Handler = Callable[[dict, ExecutionContext], Any]


class StepExecutor:
    def __init__(self, handlers: dict[str, Handler] | None = None):
        self._handlers: dict[str, Handler] = {}
        for action, handler in (handlers or {}).items():
            self.register(action, handler)

    def register(self, action: str, handler: Handler) -> None:
        if not callable(handler):
            raise TypeError(f"Handler for {action!r} is not callable")
        if action in self._handlers:
            log.info("Replacing handler for action %s", action)
        self._handlers[action] = handler

    def has_action(self, action: str) -> bool:
        return action in self._handlers

    @property
    def actions(self) -> list[str]:
        return sorted(self._handlers)

    async def execute(self, step: Step, context: ExecutionContext) -> Any:
        """Run the handler registered for step.action and return its result."""
        handler = self._handlers.get(step.action)
        if handler is None:
            raise UnknownActionError(step.action)

        params = dict(step.params)
        if inspect.iscoroutinefunction(handler):
            return await handler(params, context)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(handler, params, context))


def default_executor() -> StepExecutor:
    """Executor with every built-in research action registered."""
    from activities import competitive, filings, quarterly, risk, thesis, valuation

    executor = StepExecutor()
    for module in (filings, valuation, competitive, thesis, risk, quarterly):
        for action, handler in module.HANDLERS.items():
            executor.register(action, handler)
    return executor
