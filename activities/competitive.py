"""
Activity: Competitive Analysis — peer discovery and metric comparison.
"""

from __future__ import annotations

import logging
from statistics import median

from models.schemas import ExecutionContext
from utils.llm import ask_analyst
from utils.market_data import get_financial_metrics, get_peers

log = logging.getLogger(__name__)

# Metrics where a higher value is better for the company
COMPARED_METRICS = ["return_on_equity", "profit_margin", "revenue_growth"]


def identify_competitors(params: dict, context: ExecutionContext) -> dict:
    count = int(params.get("count") or 5)
    peers = get_peers(context.ticker) if context.ticker else []
    return {"competitors": peers[:count], "ticker": context.ticker}


def fetch_competitor_data(params: dict, context: ExecutionContext) -> dict:
    competitors = params.get("competitors") or (
        context.result_of("identify_competitors") or {}
    ).get("competitors", [])
    if not competitors:
        raise ValueError("No competitors to compare against")

    data = []
    missing = []
    for symbol in competitors:
        metrics = get_financial_metrics(symbol)
        if metrics is None:
            missing.append(symbol)
            continue
        data.append(metrics)
    if missing:
        log.warning("No metrics for competitors: %s", ", ".join(missing))
    return {"data": data, "missing": missing}


def compare_metrics(params: dict, context: ExecutionContext) -> dict:
    peers = context.require("fetch_competitor_data")["data"]
    comparison = {}
    for metric in COMPARED_METRICS:
        values = [p[metric] for p in peers if p.get(metric) is not None]
        if not values:
            continue
        comparison[metric] = {
            "median": median(values),
            "min": min(values),
            "max": max(values),
            "count": len(values),
        }
    return {"comparison": comparison}


def analyze_position(params: dict, context: ExecutionContext) -> dict:
    """Count how many peer medians the target beats."""
    comparison = context.require("compare_metrics")["comparison"]
    target = get_financial_metrics(context.ticker) if context.ticker else None
    if not target or not comparison:
        return {"position": "unknown", "ahead_on": [], "behind_on": []}

    ahead, behind = [], []
    for metric, stats in comparison.items():
        value = target.get(metric)
        if value is None:
            continue
        (ahead if value >= stats["median"] else behind).append(metric)

    scored = len(ahead) + len(behind)
    if not scored:
        position = "unknown"
    elif len(ahead) * 3 >= scored * 2:
        position = "strong"
    elif len(ahead) * 3 >= scored:
        position = "average"
    else:
        position = "weak"
    return {"position": position, "ahead_on": ahead, "behind_on": behind}


def generate_report(params: dict, context: ExecutionContext) -> dict:
    position = context.result_of("analyze_position") or {}
    comparison = (context.result_of("compare_metrics") or {}).get("comparison", {})
    report = ask_analyst(
        f"Write a competitive analysis for {context.ticker or 'the company'}. "
        f"Peer statistics: {comparison}. Position: {position.get('position')}, "
        f"ahead on {position.get('ahead_on')}, behind on {position.get('behind_on')}.",
        capability="generate",
    )
    return {"report": report, "position": position.get("position", "unknown")}


HANDLERS = {
    "identify_competitors": identify_competitors,
    "fetch_competitor_data": fetch_competitor_data,
    "compare_metrics": compare_metrics,
    "analyze_position": analyze_position,
    "generate_report": generate_report,
}
