"""
Step plans for each research task type.

Each planner is a pure function of the task params and returns a fresh,
ordered list of Steps whose `action` values are keys of the step executor's
dispatch table. Planners never fail: a missing param (e.g. ticker) is carried
through as None and the handler raises a descriptive error at run time.

Adding a task type means writing one planner and registering it in PLANNERS
and DESCRIPTIONS.
"""

from __future__ import annotations

from typing import Any, Callable

from models.schemas import Step, TaskType

Planner = Callable[[dict], list[Step]]


def _step(n: int, name: str, description: str, action: str, **params: Any) -> Step:
    return Step(
        id=f"step_{n}",
        name=name,
        description=description,
        action=action,
        params=params,
    )


def plan_analyze_10k(params: dict) -> list[Step]:
    ticker = params.get("ticker")
    return [
        _step(1, "Fetch Latest 10-K", f"Download latest 10-K filing for {ticker or 'the company'}",
              "fetch_filing", ticker=ticker, form_type="10-K"),
        _step(2, "Extract Financial Data", "Parse income statement, balance sheet, cash flows",
              "extract_financials", sections=["income_statement", "balance_sheet", "cash_flow"]),
        _step(3, "Calculate Owner Earnings", "Build owner earnings bridge with adjustments",
              "calculate_owner_earnings"),
        _step(4, "Identify Key Metrics", "Calculate ROIC, FCF yield, margins",
              "calculate_metrics", metrics=["roic", "fcf_yield", "margins", "growth_rates"]),
        _step(5, "Extract MD&A Insights", "Summarize management discussion and analysis",
              "extract_mda"),
        _step(6, "Flag Red Flags", "Identify accounting concerns and risks",
              "identify_red_flags", categories=["accounting", "governance", "operations"]),
        _step(7, "Generate Summary", "Create comprehensive analysis summary",
              "generate_summary"),
    ]


def plan_build_dcf(params: dict) -> list[Step]:
    return [
        _step(1, "Load Historical Financials", "Gather 5 years of financial data",
              "load_financials", years=5),
        _step(2, "Project Revenue", "Forecast revenue growth for 10 years",
              "project_revenue", years=10),
        _step(3, "Project Margins", "Forecast operating and profit margins",
              "project_margins"),
        _step(4, "Calculate WACC", "Determine weighted average cost of capital",
              "calculate_wacc"),
        _step(5, "Calculate Terminal Value", "Determine terminal value using perpetuity growth",
              "calculate_terminal_value", method="perpetuity_growth"),
        _step(6, "Discount Cash Flows", "Calculate present value of FCF and terminal value",
              "discount_cash_flows"),
        _step(7, "Run Sensitivity Analysis", "Test valuation across WACC and growth assumptions",
              "sensitivity_analysis"),
    ]


def plan_competitive_analysis(params: dict) -> list[Step]:
    competitors = list(params.get("competitors") or [])
    return [
        _step(1, "Identify Competitors", "Find top 5 competitors in same industry",
              "identify_competitors", count=5),
        _step(2, "Fetch Competitor Data", f"Load financial data for {len(competitors) or 5} competitors",
              "fetch_competitor_data", competitors=competitors),
        _step(3, "Compare Metrics", "Compare ROIC, margins, growth rates",
              "compare_metrics", metrics=["roic", "margins", "growth", "valuation"]),
        _step(4, "Analyze Competitive Position", "Assess competitive advantages and disadvantages",
              "analyze_position"),
        _step(5, "Generate Report", "Create competitive analysis report",
              "generate_report"),
    ]


def plan_thesis_validation(params: dict) -> list[Step]:
    return [
        _step(1, "Extract Current Thesis", "Load investment thesis from workspace",
              "extract_thesis", thesis=params.get("thesis")),
        _step(2, "Gather Evidence", "Collect supporting and contradicting data",
              "gather_evidence"),
        _step(3, "Challenge Assumptions", "Test key assumptions with data",
              "challenge_assumptions"),
        _step(4, "Identify Weak Points", "Find vulnerabilities in thesis",
              "identify_weak_points"),
        _step(5, "Generate Validation Report", "Create thesis strength assessment",
              "generate_validation"),
    ]


def plan_risk_assessment(params: dict) -> list[Step]:
    return [
        _step(1, "Identify Risk Categories", "Categorize operational, financial, market risks",
              "categorize_risks"),
        _step(2, "Assess Probability", "Estimate likelihood of each risk",
              "assess_probability"),
        _step(3, "Calculate Impact", "Quantify potential impact on value",
              "calculate_impact"),
        _step(4, "Prioritize Risks", "Rank risks by probability × impact",
              "prioritize_risks"),
    ]


def plan_quarterly_update(params: dict) -> list[Step]:
    return [
        _step(1, "Fetch Latest 10-Q", "Download most recent quarterly filing",
              "fetch_filing", ticker=params.get("ticker"), form_type="10-Q"),
        _step(2, "Compare to Expectations", "Check results vs guidance and estimates",
              "compare_expectations", expectations=dict(params.get("expectations") or {})),
        _step(3, "Update Financial Model", "Revise projections based on actuals",
              "update_model"),
        _step(4, "Reassess Thesis", "Determine if thesis still valid",
              "reassess_thesis"),
        _step(5, "Generate Update Report", "Create quarterly update summary",
              "generate_update"),
    ]


PLANNERS: dict[TaskType, Planner] = {
    TaskType.ANALYZE_10K: plan_analyze_10k,
    TaskType.BUILD_DCF_MODEL: plan_build_dcf,
    TaskType.COMPETITIVE_ANALYSIS: plan_competitive_analysis,
    TaskType.THESIS_VALIDATION: plan_thesis_validation,
    TaskType.RISK_ASSESSMENT: plan_risk_assessment,
    TaskType.QUARTERLY_UPDATE: plan_quarterly_update,
}

DESCRIPTIONS: dict[TaskType, Callable[[dict], str]] = {
    TaskType.ANALYZE_10K: lambda p: f"Analyze 10-K filing for {p.get('ticker') or 'company'}",
    TaskType.BUILD_DCF_MODEL: lambda p: "Build DCF valuation model",
    TaskType.COMPETITIVE_ANALYSIS: lambda p: "Analyze competitive position",
    TaskType.THESIS_VALIDATION: lambda p: "Validate investment thesis",
    TaskType.RISK_ASSESSMENT: lambda p: "Assess investment risks",
    TaskType.QUARTERLY_UPDATE: lambda p: "Process quarterly earnings update",
}


def plan_steps(task_type: TaskType | str, params: dict | None = None) -> list[Step]:
    """Build the step plan for a task type. Raises ValueError for unknown types."""
    return PLANNERS[TaskType(task_type)](params or {})


def describe_task(task_type: TaskType | str, params: dict | None = None) -> str:
    return DESCRIPTIONS[TaskType(task_type)](params or {})
