"""
Activity: Filing Analysis — handlers for the "analyze-10k" workflow and the
filing fetch shared with the quarterly update.

Each handler takes (params, context) and returns a JSON-serializable dict.
"""

from __future__ import annotations

import logging

import requests

from models.schemas import ExecutionContext
from utils.llm import ask_analyst, ask_analyst_json
from utils.market_data import document_url, get_financial_metrics, get_latest_filing, get_stock_quote

log = logging.getLogger(__name__)

# Used when the assistant does not return a usable 3-year series
FALLBACK_FINANCIALS = {
    "revenue": [100000.0, 110000.0, 125000.0],
    "net_income": [15000.0, 18000.0, 22000.0],
    "operating_cash_flow": [20000.0, 23000.0, 27000.0],
    "assets": [80000.0, 90000.0, 100000.0],
    "liabilities": [40000.0, 42000.0, 45000.0],
}

# Owner earnings adjustments, as a share of net income
DA_RATE = 0.10
MAINTENANCE_CAPEX_RATE = 0.15
WORKING_CAPITAL_RATE = 0.05


def fetch_filing(params: dict, context: ExecutionContext) -> dict:
    """Fetch the latest 10-K or 10-Q from EDGAR.

    Falls back to a placeholder filing (flagged is_mock) when EDGAR cannot be
    reached, so rate limiting does not sink the whole workflow.
    """
    ticker = context.require_ticker(params)
    form_type = params.get("form_type") or "10-K"
    log.info("Fetching latest %s for %s", form_type, ticker)

    try:
        filing = get_latest_filing(ticker, form_type)
    except requests.RequestException as e:
        log.warning("SEC API failed for %s, using placeholder filing: %s", ticker, e)
        return {
            "filing": {
                "accession_number": "0000000000-00-000000",
                "filing_date": None,
                "report_date": None,
                "form": form_type,
                "primary_document": f"{ticker.lower()}-latest.htm",
            },
            "ticker": ticker,
            "form_type": form_type,
            "is_mock": True,
        }

    if filing is None:
        raise ValueError(f"No {form_type} found for {ticker}")
    return {"filing": filing, "ticker": ticker, "form_type": form_type, "url": document_url(filing)}


def _series(value: object) -> list[float] | None:
    if not isinstance(value, list) or len(value) < 2:
        return None
    try:
        return [float(v) for v in value]
    except (TypeError, ValueError):
        return None


def extract_financials(params: dict, context: ExecutionContext) -> dict:
    filing = context.require("fetch_filing").get("filing") or {}
    sections = params.get("sections") or ["income_statement", "balance_sheet", "cash_flow"]

    reply = ask_analyst_json(
        f"Extract key financial data from the {filing.get('form', '10-K')} filing of "
        f"{context.ticker or 'the company'} for the period ending {filing.get('report_date')}. "
        f"Sections: {', '.join(sections)}. Return JSON with keys revenue, net_income, "
        "operating_cash_flow, assets, liabilities (each a list of the latest 3 fiscal years, "
        "oldest first) and summary (one paragraph).",
        capability="extract",
    )

    financials = {}
    estimated = []
    for key, fallback in FALLBACK_FINANCIALS.items():
        series = _series(reply.get(key))
        if series is None:
            series = list(fallback)
            estimated.append(key)
        financials[key] = series
    if estimated:
        log.warning("Assistant gave no usable series for %s; using estimates", ", ".join(estimated))

    return {"financials": financials, "ai_summary": reply.get("summary", ""), "estimated": estimated}


def calculate_owner_earnings(params: dict, context: ExecutionContext) -> dict:
    """Owner Earnings = Net Income + D&A - maintenance CapEx - ΔWC."""
    financials = context.require("extract_financials")["financials"]
    net_income = financials["net_income"][-1]
    da = net_income * DA_RATE
    capex = net_income * MAINTENANCE_CAPEX_RATE
    delta_wc = net_income * WORKING_CAPITAL_RATE

    return {
        "owner_earnings": net_income + da - capex - delta_wc,
        "net_income": net_income,
        "depreciation": da,
        "capex": capex,
        "working_capital": delta_wc,
        "formula": "= Net Income + D&A - CapEx - ΔWC",
    }


def _cagr(series: list[float]) -> float | None:
    if len(series) < 2 or series[0] <= 0 or series[-1] <= 0:
        return None
    return (series[-1] / series[0]) ** (1 / (len(series) - 1)) - 1


def calculate_metrics(params: dict, context: ExecutionContext) -> dict:
    ticker = context.require_ticker()
    quote = get_stock_quote(ticker) or {}
    metrics = get_financial_metrics(ticker) or {}

    financials = (context.result_of("extract_financials") or {}).get("financials")
    owner_earnings = (context.result_of("calculate_owner_earnings") or {}).get("owner_earnings")
    market_cap = metrics.get("market_cap")

    result = {
        "roic": metrics.get("return_on_equity"),
        "fcf_yield": (owner_earnings / market_cap * 100) if owner_earnings and market_cap else None,
        "current_price": quote.get("price"),
        "market_cap": market_cap,
        "pe_ratio": metrics.get("pe_ratio"),
        "debt_to_equity": metrics.get("debt_to_equity"),
        "net_margin": None,
        "cash_conversion": None,
        "revenue_growth": None,
    }
    if financials:
        revenue = financials["revenue"]
        net_income = financials["net_income"]
        if revenue[-1]:
            result["net_margin"] = net_income[-1] / revenue[-1] * 100
        if net_income[-1]:
            result["cash_conversion"] = financials["operating_cash_flow"][-1] / net_income[-1]
        result["revenue_growth"] = _cagr(revenue)
    return result


def extract_mda(params: dict, context: ExecutionContext) -> dict:
    summary = ask_analyst(
        f"Summarize the Management Discussion & Analysis section for {context.ticker or 'the company'}. "
        "Focus on: 1) Business highlights, 2) Risks mentioned, 3) Future outlook. Be concise.",
        capability="summarize",
    )
    return {"summary": summary, "ticker": context.ticker}


def identify_red_flags(params: dict, context: ExecutionContext) -> dict:
    """Rule-based screens on the extracted numbers plus an assistant critique."""
    financials = (context.result_of("extract_financials") or {}).get("financials") or {}
    metrics = context.result_of("calculate_metrics") or {}
    red_flags = []

    assets = financials.get("assets") or []
    liabilities = financials.get("liabilities") or []
    if assets and liabilities and assets[-1] and liabilities[-1] / assets[-1] > 0.6:
        red_flags.append({"severity": "high", "category": "accounting",
                          "description": "Liabilities exceed 60% of assets"})

    revenue = financials.get("revenue") or []
    net_income = financials.get("net_income") or []
    if len(revenue) >= 2 and len(net_income) >= 2 and revenue[-2] and revenue[-1]:
        if net_income[-1] / revenue[-1] < net_income[-2] / revenue[-2]:
            red_flags.append({"severity": "medium", "category": "operations",
                              "description": "Net margin declined year over year"})

    ocf = financials.get("operating_cash_flow") or []
    if ocf and net_income and ocf[-1] < net_income[-1]:
        red_flags.append({"severity": "medium", "category": "accounting",
                          "description": "Operating cash flow below reported earnings"})

    debt_to_equity = metrics.get("debt_to_equity")
    if debt_to_equity and debt_to_equity > 150:
        red_flags.append({"severity": "high", "category": "governance",
                          "description": f"Debt/equity of {debt_to_equity:.0f}%"})

    analysis = ask_analyst(
        f"Analyze {context.ticker or 'the company'} for red flags. Consider: debt (D/E: {debt_to_equity}), "
        f"declining margins, accounting concerns. Screens already raised: "
        f"{[f['description'] for f in red_flags] or 'none'}. List the top 3-5 red flags.",
        capability="critique",
    )
    return {"red_flags": red_flags, "ai_analysis": analysis}


def generate_summary(params: dict, context: ExecutionContext) -> dict:
    owner_earnings = (context.result_of("calculate_owner_earnings") or {}).get("owner_earnings")
    metrics = context.result_of("calculate_metrics") or {}
    mda = (context.result_of("extract_mda") or {}).get("summary", "")
    red_flags = (context.result_of("identify_red_flags") or {}).get("red_flags", [])

    summary = ask_analyst(
        f"Generate a comprehensive 10-K analysis summary for {context.ticker or 'the company'}. "
        f"Owner earnings: {owner_earnings}. ROIC: {metrics.get('roic')}. "
        f"FCF yield: {metrics.get('fcf_yield')}. MD&A: {mda[:2000]}. "
        f"Red flags: {[f['description'] for f in red_flags]}. "
        "Format as a professional investment memo.",
        capability="generate",
    )
    return {
        "summary": summary,
        "owner_earnings": owner_earnings,
        "key_metrics": metrics,
        "red_flags_count": len(red_flags),
    }


HANDLERS = {
    "fetch_filing": fetch_filing,
    "extract_financials": extract_financials,
    "calculate_owner_earnings": calculate_owner_earnings,
    "calculate_metrics": calculate_metrics,
    "extract_mda": extract_mda,
    "identify_red_flags": identify_red_flags,
    "generate_summary": generate_summary,
}
