"""Step planner tests"""

import pytest

from models.schemas import TaskStatus, TaskType
from workflows.plans import PLANNERS, describe_task, plan_steps

EXPECTED_ACTIONS = {
    TaskType.ANALYZE_10K: [
        "fetch_filing", "extract_financials", "calculate_owner_earnings", "calculate_metrics",
        "extract_mda", "identify_red_flags", "generate_summary",
    ],
    TaskType.BUILD_DCF_MODEL: [
        "load_financials", "project_revenue", "project_margins", "calculate_wacc",
        "calculate_terminal_value", "discount_cash_flows", "sensitivity_analysis",
    ],
    TaskType.COMPETITIVE_ANALYSIS: [
        "identify_competitors", "fetch_competitor_data", "compare_metrics",
        "analyze_position", "generate_report",
    ],
    TaskType.THESIS_VALIDATION: [
        "extract_thesis", "gather_evidence", "challenge_assumptions",
        "identify_weak_points", "generate_validation",
    ],
    TaskType.RISK_ASSESSMENT: [
        "categorize_risks", "assess_probability", "calculate_impact", "prioritize_risks",
    ],
    TaskType.QUARTERLY_UPDATE: [
        "fetch_filing", "compare_expectations", "update_model", "reassess_thesis", "generate_update",
    ],
}


class TestPlanSteps:
    def test_every_task_type_has_a_planner(self):
        assert set(PLANNERS) == set(TaskType)

    @pytest.mark.parametrize("task_type", list(TaskType))
    def test_plan_shape(self, task_type):
        steps = plan_steps(task_type, {"ticker": "AAPL"})

        assert [s.action for s in steps] == EXPECTED_ACTIONS[task_type]
        assert [s.id for s in steps] == [f"step_{i}" for i in range(1, len(steps) + 1)]
        assert all(s.status == TaskStatus.PENDING for s in steps)
        assert all(s.retry_count == 0 and s.result is None for s in steps)

    def test_ticker_flows_into_filing_step(self):
        steps = plan_steps("analyze-10k", {"ticker": "AAPL"})
        assert steps[0].params == {"ticker": "AAPL", "form_type": "10-K"}

        quarterly = plan_steps("quarterly-update", {"ticker": "AAPL"})
        assert quarterly[0].params == {"ticker": "AAPL", "form_type": "10-Q"}

    def test_missing_ticker_is_carried_as_none(self):
        steps = plan_steps("analyze-10k", {})
        assert steps[0].params["ticker"] is None

    def test_thesis_and_expectations_params(self):
        thesis = plan_steps("thesis-validation", {"thesis": "Margins expand"})
        assert thesis[0].params == {"thesis": "Margins expand"}

        quarterly = plan_steps("quarterly-update", {"expectations": {"revenue": 100}})
        assert quarterly[1].name == "Compare to Expectations"
        assert quarterly[1].params == {"expectations": {"revenue": 100}}

    def test_plans_are_fresh_lists(self):
        first = plan_steps("risk-assessment")
        second = plan_steps("risk-assessment")
        first[0].status = TaskStatus.COMPLETED
        assert second[0].status == TaskStatus.PENDING
        assert first[0] is not second[0]

    def test_unknown_type_raises(self):
        with pytest.raises(ValueError):
            plan_steps("write-poetry", {})


class TestDescribeTask:
    def test_analyze_10k_mentions_ticker(self):
        assert describe_task("analyze-10k", {"ticker": "AAPL"}) == "Analyze 10-K filing for AAPL"
        assert describe_task("analyze-10k", {}) == "Analyze 10-K filing for company"

    @pytest.mark.parametrize("task_type", list(TaskType))
    def test_every_type_has_a_description(self, task_type):
        assert describe_task(task_type, {})
