"""
Activity: DCF Valuation — handlers for the "build-dcf-model" workflow.

Pure arithmetic except for calculate_wacc, which looks up beta when a ticker
is known.
"""

from __future__ import annotations

import logging

from models.schemas import ExecutionContext
from utils.market_data import get_financial_metrics

log = logging.getLogger(__name__)

REVENUE_GROWTH = 0.08
OPERATING_MARGIN = 0.20
NET_MARGIN = 0.15

RISK_FREE_RATE = 0.04
MARKET_RETURN = 0.10
DEFAULT_BETA = 1.2
DEBT_RATIO = 0.30
COST_OF_DEBT = 0.05
TAX_RATE = 0.21

DEFAULT_WACC = 0.08
TERMINAL_GROWTH = 0.025

SENSITIVITY_WACC = [0.06, 0.07, 0.08, 0.09, 0.10]
SENSITIVITY_GROWTH = [0.02, 0.025, 0.03, 0.035, 0.04]


def _rate(params: dict, key: str, default: float) -> float:
    """A numeric param, or the default only when it was not given (0 is a valid rate)."""
    value = params.get(key)
    return default if value is None else float(value)


def load_financials(params: dict, context: ExecutionContext) -> dict:
    """Historical series, oldest first.

    No statement feed is wired in, so the history is a compounding baseline
    flagged as simulated.
    """
    years = int(params.get("years") or 5)
    return {
        "years": years,
        "revenue": [100000 * 1.10 ** i for i in range(years)],
        "net_income": [15000 * 1.12 ** i for i in range(years)],
        "fcf": [18000 * 1.10 ** i for i in range(years)],
        "simulated": True,
    }


def project_revenue(params: dict, context: ExecutionContext) -> dict:
    years = int(params.get("years") or 10)
    growth_rate = _rate(params, "growth_rate", REVENUE_GROWTH)
    revenue = context.require("load_financials")["revenue"]
    if not revenue:
        raise ValueError("No historical revenue to project from")

    last = revenue[-1]
    return {
        "projections": [last * (1 + growth_rate) ** (i + 1) for i in range(years)],
        "growth_rate": growth_rate,
        "years": years,
    }


def project_margins(params: dict, context: ExecutionContext) -> dict:
    return {
        "operating_margin": _rate(params, "operating_margin", OPERATING_MARGIN),
        "net_margin": _rate(params, "net_margin", NET_MARGIN),
    }


def calculate_wacc(params: dict, context: ExecutionContext) -> dict:
    """CAPM cost of equity blended with after-tax cost of debt."""
    beta = DEFAULT_BETA
    if context.ticker:
        metrics = get_financial_metrics(context.ticker) or {}
        if metrics.get("beta"):
            beta = float(metrics["beta"])

    cost_of_equity = RISK_FREE_RATE + beta * (MARKET_RETURN - RISK_FREE_RATE)
    wacc = (1 - DEBT_RATIO) * cost_of_equity + DEBT_RATIO * COST_OF_DEBT * (1 - TAX_RATE)
    return {
        "wacc": wacc,
        "beta": beta,
        "cost_of_equity": cost_of_equity,
        "cost_of_debt": COST_OF_DEBT,
        "debt_ratio": DEBT_RATIO,
        "tax_rate": TAX_RATE,
    }


def _cash_flows(context: ExecutionContext) -> list[float]:
    projections = (context.result_of("project_revenue") or {}).get("projections") or []
    margin = (context.result_of("project_margins") or {}).get("net_margin", NET_MARGIN)
    return [revenue * margin for revenue in projections]


def _wacc(context: ExecutionContext) -> float:
    return (context.result_of("calculate_wacc") or {}).get("wacc", DEFAULT_WACC)


def calculate_terminal_value(params: dict, context: ExecutionContext) -> dict:
    method = params.get("method") or "perpetuity_growth"
    if method != "perpetuity_growth":
        raise ValueError(f"Unsupported terminal value method: {method}")

    wacc = _wacc(context)
    growth = _rate(params, "terminal_growth", TERMINAL_GROWTH)
    if wacc <= growth:
        raise ValueError(f"WACC {wacc:.2%} must exceed terminal growth {growth:.2%}")

    cash_flows = _cash_flows(context)
    last_fcf = cash_flows[-1] if cash_flows else 10000.0
    return {
        "terminal_value": last_fcf * (1 + growth) / (wacc - growth),
        "method": method,
        "terminal_growth": growth,
        "last_fcf": last_fcf,
    }


def discount_cash_flows(params: dict, context: ExecutionContext) -> dict:
    wacc = _wacc(context)
    cash_flows = _cash_flows(context)
    terminal = (context.result_of("calculate_terminal_value") or {}).get("terminal_value", 0.0)

    pv_cash_flows = sum(fcf / (1 + wacc) ** (i + 1) for i, fcf in enumerate(cash_flows))
    pv_terminal = terminal / (1 + wacc) ** len(cash_flows)
    return {
        "enterprise_value": pv_cash_flows + pv_terminal,
        "pv_cash_flows": pv_cash_flows,
        "pv_terminal": pv_terminal,
        "wacc": wacc,
    }


def sensitivity_analysis(params: dict, context: ExecutionContext) -> dict:
    base_wacc = _wacc(context)
    base_ev = (context.result_of("discount_cash_flows") or {}).get("enterprise_value", 100000.0)
    return {
        "base_enterprise_value": base_ev,
        "wacc_sensitivity": [{"wacc": w, "ev": base_ev * (base_wacc / w)} for w in SENSITIVITY_WACC],
        "growth_sensitivity": [{"growth": g, "ev": base_ev * (1 + g * 5)} for g in SENSITIVITY_GROWTH],
    }


HANDLERS = {
    "load_financials": load_financials,
    "project_revenue": project_revenue,
    "project_margins": project_margins,
    "calculate_wacc": calculate_wacc,
    "calculate_terminal_value": calculate_terminal_value,
    "discount_cash_flows": discount_cash_flows,
    "sensitivity_analysis": sensitivity_analysis,
}
