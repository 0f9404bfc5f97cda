"""StepExecutor tests"""

import pytest

from activities.registry import StepExecutor, default_executor
from models.schemas import ExecutionContext, Step, TaskType
from workflows.errors import UnknownActionError
from workflows.plans import plan_steps


def _step(action: str, **params) -> Step:
    return Step(id="step_1", name=action, description="", action=action, params=params)


class TestStepExecutor:
    @pytest.mark.asyncio
    async def test_unknown_action_raises(self):
        with pytest.raises(UnknownActionError) as exc_info:
            await StepExecutor().execute(_step("teleport"), ExecutionContext(workspace_id=1))
        assert str(exc_info.value) == "Unknown action: teleport"

    @pytest.mark.asyncio
    async def test_sync_handler_gets_a_copy_of_params(self):
        def handler(params, context):
            params["mutated"] = True
            return {"workspace": context.workspace_id}

        step = _step("custom", years=5)
        result = await StepExecutor({"custom": handler}).execute(step, ExecutionContext(workspace_id=9))

        assert result == {"workspace": 9}
        assert step.params == {"years": 5}

    @pytest.mark.asyncio
    async def test_async_handler_is_awaited(self):
        async def handler(params, context):
            return params["value"] * 2

        result = await StepExecutor({"double": handler}).execute(
            _step("double", value=21), ExecutionContext(workspace_id=1),
        )
        assert result == 42

    @pytest.mark.asyncio
    async def test_handler_errors_propagate(self):
        def handler(params, context):
            raise ValueError("Ticker is required")

        with pytest.raises(ValueError, match="Ticker is required"):
            await StepExecutor({"fetch": handler}).execute(_step("fetch"), ExecutionContext(workspace_id=1))

    def test_register_rejects_non_callable(self):
        with pytest.raises(TypeError):
            StepExecutor().register("broken", "not a function")

    def test_register_and_query(self):
        executor = StepExecutor()
        executor.register("b", lambda p, c: None)
        executor.register("a", lambda p, c: None)
        assert executor.actions == ["a", "b"]
        assert executor.has_action("a")
        assert not executor.has_action("c")


class TestDefaultExecutor:
    def test_registers_every_built_in_action(self):
        executor = default_executor()
        assert len(executor.actions) == 32

    def test_covers_every_planned_action(self):
        executor = default_executor()
        for task_type in TaskType:
            for step in plan_steps(task_type, {"ticker": "AAPL"}):
                assert executor.has_action(step.action), step.action
