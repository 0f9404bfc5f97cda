"""
Market data helpers — SEC EDGAR filings and public quote endpoints.

EDGAR calls raise on transport errors so callers can decide on a fallback;
quote lookups are best-effort and return None when the provider fails.
"""

from __future__ import annotations

import logging
from functools import lru_cache

import requests

import config

log = logging.getLogger(__name__)

# Fallback peer groups when no competitor list is supplied
DEFAULT_PEER_GROUPS: dict[str, list[str]] = {
    "AAPL": ["MSFT", "GOOGL", "AMZN", "NVDA"],
    "MSFT": ["AAPL", "GOOGL", "CRM", "ORCL"],
    "GOOGL": ["META", "AAPL", "MSFT", "AMZN"],
    "AMZN": ["AAPL", "MSFT", "WMT", "COST"],
    "NVDA": ["AMD", "AVGO", "INTC", "TSM"],
    "META": ["GOOGL", "SNAP", "PINS", "NFLX"],
    "TSLA": ["GM", "F", "NIO", "LCID"],
}


def _get_json(url: str, headers: dict | None = None, params: dict | None = None) -> dict:
    resp = requests.get(url, headers=headers, params=params, timeout=config.HTTP_TIMEOUT_SEC)
    resp.raise_for_status()
    return resp.json()


def _sec_headers() -> dict:
    return {"User-Agent": config.SEC_USER_AGENT, "Accept": "application/json"}


# ── SEC EDGAR ─────────────────────────────────────────────────────────

@lru_cache(maxsize=1)
def _ticker_map() -> dict[str, str]:
    """Ticker → zero-padded CIK, from EDGAR's published mapping file."""
    data = _get_json("https://www.sec.gov/files/company_tickers.json", headers=_sec_headers())
    return {
        str(entry["ticker"]).upper(): str(entry["cik_str"]).zfill(10)
        for entry in data.values()
        if entry.get("ticker")
    }


def ticker_to_cik(ticker: str) -> str | None:
    return _ticker_map().get(ticker.strip().upper())


def get_recent_filings(ticker: str, form_type: str | None = None, limit: int = 10) -> list[dict]:
    """Most recent filings for a ticker, newest first, optionally filtered by form."""
    cik = ticker_to_cik(ticker)
    if not cik:
        return []

    data = _get_json(f"{config.SEC_API_BASE}/submissions/CIK{cik}.json", headers=_sec_headers())
    recent = data.get("filings", {}).get("recent", {})
    forms = recent.get("form", [])

    filings = []
    for i, form in enumerate(forms):
        if form_type and form != form_type:
            continue
        filings.append({
            "cik": cik,
            "accession_number": recent["accessionNumber"][i],
            "filing_date": recent["filingDate"][i],
            "report_date": recent["reportDate"][i],
            "form": form,
            "primary_document": recent["primaryDocument"][i],
        })
        if len(filings) >= limit:
            break
    return filings


def get_latest_filing(ticker: str, form_type: str = "10-K") -> dict | None:
    filings = get_recent_filings(ticker, form_type, limit=1)
    return filings[0] if filings else None


def document_url(filing: dict) -> str:
    accession = filing["accession_number"].replace("-", "")
    return (
        f"https://www.sec.gov/Archives/edgar/data/{int(filing['cik'])}/"
        f"{accession}/{filing['primary_document']}"
    )


# ── Quotes & ratios ───────────────────────────────────────────────────

def get_stock_quote(ticker: str) -> dict | None:
    symbol = ticker.strip().upper()
    if not symbol:
        return None
    try:
        data = _get_json(
            f"{config.QUOTE_API_BASE}/v8/finance/chart/{symbol}",
            headers={"User-Agent": "Mozilla/5.0"},
            params={"interval": "1d", "range": "1d"},
        )
        meta = data["chart"]["result"][0]["meta"]
    except (requests.RequestException, KeyError, IndexError, TypeError, ValueError) as e:
        log.warning("Quote lookup failed for %s: %s", symbol, e)
        return None
    return {
        "symbol": meta.get("symbol", symbol),
        "price": meta.get("regularMarketPrice"),
        "previous_close": meta.get("previousClose"),
        "currency": meta.get("currency"),
        "exchange": meta.get("exchangeName"),
    }


def get_financial_metrics(ticker: str) -> dict | None:
    symbol = ticker.strip().upper()
    if not symbol:
        return None
    try:
        data = _get_json(
            f"{config.QUOTE_API_BASE}/v10/finance/quoteSummary/{symbol}",
            headers={"User-Agent": "Mozilla/5.0"},
            params={"modules": "defaultKeyStatistics,financialData"},
        )
        result = data["quoteSummary"]["result"][0]
        stats = result.get("defaultKeyStatistics", {})
        financial = result.get("financialData", {})
    except (requests.RequestException, KeyError, IndexError, TypeError, ValueError) as e:
        log.warning("Metrics lookup failed for %s: %s", symbol, e)
        return None

    def raw(section: dict, key: str):
        return (section.get(key) or {}).get("raw")

    return {
        "symbol": symbol,
        "market_cap": raw(stats, "marketCap"),
        "enterprise_value": raw(stats, "enterpriseValue"),
        "pe_ratio": raw(stats, "forwardPE") or raw(stats, "trailingPE"),
        "beta": raw(stats, "beta"),
        "debt_to_equity": raw(financial, "debtToEquity"),
        "return_on_equity": raw(financial, "returnOnEquity"),
        "profit_margin": raw(financial, "profitMargins"),
        "revenue_growth": raw(financial, "revenueGrowth"),
    }


def get_peers(ticker: str) -> list[str]:
    return list(DEFAULT_PEER_GROUPS.get(ticker.strip().upper(), []))
