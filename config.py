"""
Configuration — loads settings from environment / .env file.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Paths
PROJECT_ROOT = Path(__file__).parent
TASK_RUNS_DIR = Path(os.getenv("TASK_RUNS_DIR", str(PROJECT_ROOT / "task_runs")))

# Postgres (result store + workspace lookup)
DATABASE_URL = os.getenv("DATABASE_URL", "postgresql://localhost:5432/research")

# OpenAI
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4.1")

# SEC EDGAR requires a contact string in the User-Agent header
SEC_API_BASE = "https://data.sec.gov"
SEC_USER_AGENT = os.getenv("SEC_USER_AGENT", "research-agents contact@example.com")
QUOTE_API_BASE = "https://query2.finance.yahoo.com"
HTTP_TIMEOUT_SEC = float(os.getenv("HTTP_TIMEOUT_SEC", "15"))

# Orchestrator
STEP_TIMEOUT_SEC = float(os.getenv("STEP_TIMEOUT_SEC", "300"))  # 0 disables the deadline
MAX_FINISHED_TASKS = int(os.getenv("MAX_FINISHED_TASKS", "500"))  # 0 keeps everything


def _parse_ticker_map(raw: str) -> dict[int, str]:
    """Parse "1:AAPL,2:MSFT" into {1: "AAPL", 2: "MSFT"}."""
    mapping: dict[int, str] = {}
    for pair in raw.split(","):
        if ":" not in pair:
            continue
        key, ticker = pair.split(":", 1)
        try:
            mapping[int(key.strip())] = ticker.strip().upper()
        except ValueError:
            continue
    return mapping


# Static workspace → ticker fallback when Postgres is unavailable
WORKSPACE_TICKERS = _parse_ticker_map(os.getenv("WORKSPACE_TICKERS", ""))
