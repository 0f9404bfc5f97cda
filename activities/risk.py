"""
Activity: Risk Assessment — categorize, estimate and rank investment risks.
"""

from __future__ import annotations

import logging

from models.schemas import ExecutionContext
from utils.llm import ask_analyst_json

log = logging.getLogger(__name__)

RISK_CATEGORIES = ["operational", "financial", "market", "regulatory"]
DEFAULT_PROBABILITY = 0.5
DEFAULT_IMPACT = 0.1


def _clamp(value: object, default: float) -> float:
    try:
        return min(1.0, max(0.0, float(value)))
    except (TypeError, ValueError):
        return default


def _risk_names(context: ExecutionContext) -> list[str]:
    return [r["name"] for r in context.require("categorize_risks")["risks"]]


def categorize_risks(params: dict, context: ExecutionContext) -> dict:
    reply = ask_analyst_json(
        f"Identify the main investment risks for {context.ticker or 'the company'}. "
        f"Use only these categories: {', '.join(RISK_CATEGORIES)}. "
        'Return JSON: {"risks": [{"name": str, "category": str, "description": str}]}',
        capability="extract",
    )
    risks = []
    for item in reply.get("risks") or []:
        if not isinstance(item, dict) or not item.get("name"):
            continue
        category = str(item.get("category", "")).lower()
        risks.append({
            "name": str(item["name"]),
            "category": category if category in RISK_CATEGORIES else "operational",
            "description": str(item.get("description", "")),
        })
    return {"risks": risks}


def assess_probability(params: dict, context: ExecutionContext) -> dict:
    names = _risk_names(context)
    if not names:
        return {"probabilities": {}}
    reply = ask_analyst_json(
        f"Estimate the probability (0 to 1) that each risk materializes in the next 3 years: {names}. "
        'Return JSON: {"probabilities": {risk name: probability}}',
        capability="critique",
    )
    estimates = reply.get("probabilities") or {}
    return {"probabilities": {n: _clamp(estimates.get(n), DEFAULT_PROBABILITY) for n in names}}


def calculate_impact(params: dict, context: ExecutionContext) -> dict:
    names = _risk_names(context)
    if not names:
        return {"impacts": {}}
    reply = ask_analyst_json(
        f"Estimate the loss of intrinsic value (0 to 1, share of value) if each risk materializes: {names}. "
        'Return JSON: {"impacts": {risk name: impact}}',
        capability="critique",
    )
    estimates = reply.get("impacts") or {}
    return {"impacts": {n: _clamp(estimates.get(n), DEFAULT_IMPACT) for n in names}}


def prioritize_risks(params: dict, context: ExecutionContext) -> dict:
    """Rank risks by probability × impact, highest first."""
    risks = context.require("categorize_risks")["risks"]
    probabilities = (context.result_of("assess_probability") or {}).get("probabilities", {})
    impacts = (context.result_of("calculate_impact") or {}).get("impacts", {})

    scored = []
    for risk in risks:
        probability = probabilities.get(risk["name"], DEFAULT_PROBABILITY)
        impact = impacts.get(risk["name"], DEFAULT_IMPACT)
        scored.append({**risk, "probability": probability, "impact": impact, "score": probability * impact})
    scored.sort(key=lambda r: r["score"], reverse=True)
    for rank, risk in enumerate(scored, start=1):
        risk["rank"] = rank
    return {"prioritized": scored, "expected_loss": sum(r["score"] for r in scored)}


HANDLERS = {
    "categorize_risks": categorize_risks,
    "assess_probability": assess_probability,
    "calculate_impact": calculate_impact,
    "prioritize_risks": prioritize_risks,
}
