"""
Results feature — durable storage for finished research tasks.

Public API:
    from features.results import PostgresResultSink, JsonFileResultSink, summarize_task
    from features.results import db as result_db
"""

from features.results.sink import JsonFileResultSink, PostgresResultSink, summarize_task

__all__ = ["JsonFileResultSink", "PostgresResultSink", "summarize_task"]
