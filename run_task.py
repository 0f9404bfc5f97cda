"""
Command-line runner — plans and runs one research task in-process.

Usage:
    python run_task.py analyze-10k --workspace 1 --ticker AAPL
    python run_task.py thesis-validation --workspace 2 --param thesis="Services margin expansion"
    python run_task.py quarterly-update --workspace 1 --param 'expectations={"revenue": 94.5e9}'

Exits 0 when the task completes, 1 when it fails.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

from features.results import JsonFileResultSink, PostgresResultSink
from features.results import db as result_db
from features.workspaces import lookup_ticker
from models.schemas import TaskStatus, TaskType
from workflows.events import STEP_COMPLETED, STEP_FAILED, STEP_STARTED, TaskEvent
from workflows.orchestrator import TaskOrchestrator

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger(__name__)


def _parse_param(raw: str) -> tuple[str, object]:
    """Split KEY=VALUE. JSON values are decoded, anything else stays a string."""
    if "=" not in raw:
        raise argparse.ArgumentTypeError(f"Expected key=value, got {raw!r}")
    key, value = raw.split("=", 1)
    try:
        return key.strip(), json.loads(value)
    except json.JSONDecodeError:
        return key.strip(), value


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one autonomous research task")
    parser.add_argument("task_type", choices=[t.value for t in TaskType], help="Task type to run")
    parser.add_argument("--workspace", type=int, required=True, help="Workspace id")
    parser.add_argument("--ticker", help="Ticker symbol (overrides the workspace's ticker)")
    parser.add_argument(
        "--param", action="append", type=_parse_param, default=[], metavar="KEY=VALUE",
        help="Extra task parameter; may be repeated",
    )
    parser.add_argument("--no-db", action="store_true", help="Write results to JSON files only")
    return parser.parse_args(argv)


def _print_progress(event: TaskEvent) -> None:
    step = event.step
    if step is None:
        return
    number = [s.id for s in event.task.steps].index(step.id) + 1
    position = f"[{number}/{len(event.task.steps)}]"
    if event.name == STEP_STARTED:
        print(f"  {position} {step.name} ...")
    elif event.name == STEP_COMPLETED:
        print(f"  {position} {step.name} ✓ ({step.duration_ms or 0}ms)")
    elif event.name == STEP_FAILED:
        print(f"  {position} {step.name} ✗ {step.error}")


def _build_orchestrator(args: argparse.Namespace) -> TaskOrchestrator:
    sink = JsonFileResultSink()
    if not args.no_db:
        try:
            result_db.init_db()
            sink = PostgresResultSink()
        except Exception as e:
            log.warning("Could not connect to Postgres: %s (results will be written to JSON files)", e)

    if args.ticker:
        ticker = args.ticker.upper()
        return TaskOrchestrator(sink=sink, ticker_lookup=lambda _workspace_id: ticker)
    return TaskOrchestrator(sink=sink, ticker_lookup=lookup_ticker)


async def run(args: argparse.Namespace) -> int:
    orchestrator = _build_orchestrator(args)
    orchestrator.subscribe(_print_progress, [STEP_STARTED, STEP_COMPLETED, STEP_FAILED])

    params = dict(args.param)
    if args.ticker:
        params.setdefault("ticker", args.ticker.upper())

    task = orchestrator.create_task(args.workspace, args.task_type, params)
    print(f"{task.id}: {task.description}")
    await orchestrator.start_task(task.id)
    await orchestrator.drain()

    duration = (task.telemetry.task_duration_ms or 0) / 1000
    if task.status == TaskStatus.COMPLETED:
        print(f"Completed in {duration:.1f}s")
        return 0
    print(f"Failed after {duration:.1f}s: {task.error}")
    return 1


def main(argv: Optional[list[str]] = None) -> int:
    args = _parse_args(argv)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 1


if __name__ == "__main__":
    sys.exit(main())
