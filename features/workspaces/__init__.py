"""
Workspaces feature — read-only view of the UI layer's research workspaces.

Public API:
    from features.workspaces import lookup_ticker
"""

from features.workspaces.lookup import lookup_ticker

__all__ = ["lookup_ticker"]
