"""
Activity: Thesis Validation — stress-tests the workspace's investment thesis.
"""

from __future__ import annotations

import logging

from models.schemas import ExecutionContext
from utils.llm import ask_analyst, ask_analyst_json

log = logging.getLogger(__name__)


def _as_list(value: object) -> list:
    return value if isinstance(value, list) else []


def extract_thesis(params: dict, context: ExecutionContext) -> dict:
    raw = params.get("thesis")
    thesis = "" if raw is None else str(raw).strip()
    if not thesis:
        raise ValueError(f"No investment thesis recorded for workspace {context.workspace_id}")
    return {"thesis": thesis, "ticker": context.ticker}


def gather_evidence(params: dict, context: ExecutionContext) -> dict:
    thesis = context.require("extract_thesis")["thesis"]
    reply = ask_analyst_json(
        f"Investment thesis for {context.ticker or 'the company'}: {thesis}\n"
        "Return JSON with keys supporting and contradicting, each a list of short evidence statements.",
        capability="critique",
    )
    return {
        "supporting": _as_list(reply.get("supporting")),
        "contradicting": _as_list(reply.get("contradicting")),
    }


def challenge_assumptions(params: dict, context: ExecutionContext) -> dict:
    thesis = context.require("extract_thesis")["thesis"]
    reply = ask_analyst_json(
        f"List the key assumptions behind this thesis and challenge each one: {thesis}\n"
        'Return JSON: {"challenges": [{"assumption": str, "challenge": str, "severity": "low|medium|high"}]}',
        capability="critique",
    )
    return {"challenges": _as_list(reply.get("challenges"))}


def identify_weak_points(params: dict, context: ExecutionContext) -> dict:
    evidence = context.result_of("gather_evidence") or {}
    challenges = (context.result_of("challenge_assumptions") or {}).get("challenges", [])

    weak_points = [
        {"source": "assumption", "detail": c.get("assumption"), "severity": "high"}
        for c in challenges
        if isinstance(c, dict) and c.get("severity") == "high"
    ]
    weak_points += [
        {"source": "evidence", "detail": item, "severity": "medium"}
        for item in evidence.get("contradicting", [])
    ]
    return {"weak_points": weak_points}


def generate_validation(params: dict, context: ExecutionContext) -> dict:
    """Score thesis strength from the evidence balance and write the verdict."""
    evidence = context.result_of("gather_evidence") or {}
    weak_points = (context.result_of("identify_weak_points") or {}).get("weak_points", [])
    supporting = len(evidence.get("supporting", []))
    contradicting = len(evidence.get("contradicting", []))

    total = supporting + contradicting
    strength = supporting / total if total else 0.0
    high_severity = sum(1 for w in weak_points if w.get("severity") == "high")
    if strength >= 0.65 and high_severity == 0:
        verdict = "intact"
    elif strength >= 0.4:
        verdict = "needs_monitoring"
    else:
        verdict = "challenged"

    report = ask_analyst(
        f"Thesis strength {strength:.0%} ({supporting} supporting vs {contradicting} contradicting), "
        f"{high_severity} high-severity weak points: {weak_points}. Verdict: {verdict}. "
        "Write a short thesis validation note.",
        capability="generate",
    )
    return {"strength": strength, "verdict": verdict, "report": report}


HANDLERS = {
    "extract_thesis": extract_thesis,
    "gather_evidence": gather_evidence,
    "challenge_assumptions": challenge_assumptions,
    "identify_weak_points": identify_weak_points,
    "generate_validation": generate_validation,
}
