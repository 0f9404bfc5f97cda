"""
Activity: Quarterly Update — compare a new 10-Q with expectations and roll
the result into the model and the thesis.
"""

from __future__ import annotations

import logging

from models.schemas import ExecutionContext
from utils.llm import ask_analyst, ask_analyst_json

log = logging.getLogger(__name__)

REPORTED_METRICS = ["revenue", "eps", "operating_margin"]
BASE_GROWTH = 0.08
# Share of a revenue surprise carried into the forward growth assumption
SURPRISE_PASS_THROUGH = 0.5
THESIS_BREAK_SURPRISE_PCT = -5.0


def compare_expectations(params: dict, context: ExecutionContext) -> dict:
    filing = context.require("fetch_filing").get("filing") or {}
    expectations = params.get("expectations") or {}

    actuals = ask_analyst_json(
        f"From the {filing.get('form', '10-Q')} of {context.ticker or 'the company'} for the period "
        f"ending {filing.get('report_date')}, extract reported {', '.join(REPORTED_METRICS)}. "
        "Return JSON with those keys as numbers (null if unknown).",
        capability="extract",
    )

    comparison = {}
    for metric in REPORTED_METRICS:
        actual = actuals.get(metric)
        expected = expectations.get(metric)
        entry = {"actual": actual, "expected": expected, "surprise_pct": None}
        if isinstance(actual, (int, float)) and isinstance(expected, (int, float)) and expected:
            entry["surprise_pct"] = (actual - expected) / abs(expected) * 100
        comparison[metric] = entry
    return {"comparison": comparison, "period": filing.get("report_date")}


def update_model(params: dict, context: ExecutionContext) -> dict:
    comparison = context.require("compare_expectations")["comparison"]
    surprise = (comparison.get("revenue") or {}).get("surprise_pct")
    revised = BASE_GROWTH
    if surprise is not None:
        revised = BASE_GROWTH + SURPRISE_PASS_THROUGH * surprise / 100
    return {
        "updated": surprise is not None,
        "revenue_surprise_pct": surprise,
        "revised_growth_rate": revised,
    }


def reassess_thesis(params: dict, context: ExecutionContext) -> dict:
    comparison = (context.result_of("compare_expectations") or {}).get("comparison", {})
    surprises = [m["surprise_pct"] for m in comparison.values() if m.get("surprise_pct") is not None]
    average = sum(surprises) / len(surprises) if surprises else None
    intact = average is None or average >= THESIS_BREAK_SURPRISE_PCT

    notes = ask_analyst(
        f"Quarterly results vs expectations for {context.ticker or 'the company'}: {comparison}. "
        f"Average surprise: {average}. Is the investment thesis still valid? Explain briefly.",
        capability="critique",
    )
    return {"thesis_intact": intact, "average_surprise_pct": average, "reassessment": notes}


def generate_update(params: dict, context: ExecutionContext) -> dict:
    model = context.result_of("update_model") or {}
    thesis = context.result_of("reassess_thesis") or {}
    update = ask_analyst(
        f"Write a quarterly update note for {context.ticker or 'the company'}. "
        f"Revised growth rate: {model.get('revised_growth_rate')}. "
        f"Thesis intact: {thesis.get('thesis_intact')}. Notes: {thesis.get('reassessment', '')[:2000]}",
        capability="generate",
    )
    return {"update": update, "thesis_intact": thesis.get("thesis_intact")}


HANDLERS = {
    "compare_expectations": compare_expectations,
    "update_model": update_model,
    "reassess_thesis": reassess_thesis,
    "generate_update": generate_update,
}
