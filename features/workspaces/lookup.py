"""
Workspace lookup — resolves the ticker a workspace is researching.

Workspaces belong to the UI layer; their ticker lives in its `workflows`
table. When Postgres can't be reached the static WORKSPACE_TICKERS map from
config is used instead.
"""

from __future__ import annotations

import logging

import config
from features.results import db as result_db

log = logging.getLogger(__name__)


def lookup_ticker(workspace_id: int) -> str | None:
    """Ticker for a workspace, or None if it has none."""
    try:
        ticker = result_db.get_workspace_ticker(workspace_id)
        if ticker:
            return ticker.upper()
    except Exception as e:
        log.warning("Workspace lookup failed for %s: %s (using static map)", workspace_id, e)
    return config.WORKSPACE_TICKERS.get(workspace_id)
