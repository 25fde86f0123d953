"""Ralphy run-history diagnostics CLI."""

from __future__ import annotations

import argparse
import json
from dataclasses import asdict

from ralphy.config import RalphySettings
from ralphy.storage import ChromaStore, HistoryUnavailableError


def load_store(settings: RalphySettings) -> ChromaStore:
    try:
        store = ChromaStore(settings.history_path)
        store.ping()
    except HistoryUnavailableError as exc:
        print(f"History unavailable: {exc}")
        raise SystemExit(1)
    return store


def _records_json(records) -> str:
    return json.dumps([asdict(record) for record in records], indent=2, default=str)


def cmd_runs(args: argparse.Namespace) -> None:
    store = load_store(RalphySettings())
    records = store.list_agent_runs(task_id=args.task_id)
    if args.json:
        print(_records_json(records))
        return
    for record in records:
        print(
            f"{record.run_id} agent {record.agent_index} {record.task_id} "
            f"[{record.status}] -> {record.branch or '-'}"
        )


def cmd_events(args: argparse.Namespace) -> None:
    store = load_store(RalphySettings())
    events = store.fetch_run_events(args.run_id)
    if args.limit is not None and args.limit > 0:
        events = events[-args.limit :]
    payload = [
        {
            "event_id": event.id,
            "event_type": event.event_type,
            "timestamp": event.timestamp.isoformat(),
            "document": event.document,
        }
        for event in events
    ]
    print(json.dumps(payload, indent=2))


def cmd_worktrees(args: argparse.Namespace) -> None:
    store = load_store(RalphySettings())
    records = store.list_worktrees(task_id=args.task_id)
    print(_records_json(records))


def cmd_metrics(args: argparse.Namespace) -> None:
    store = load_store(RalphySettings())
    runs = store.list_agent_runs()
    summaries = store.search_events(filters={"event_type": "run_summary"})

    status_counts: dict[str, int] = {}
    input_tokens = 0
    output_tokens = 0
    cost = 0.0
    for record in runs:
        status_counts[record.status] = status_counts.get(record.status, 0) + 1
        input_tokens += record.input_tokens
        output_tokens += record.output_tokens
        cost += record.cost or 0.0

    termination_counts: dict[str, int] = {}
    for event in summaries:
        termination = event.metadata.get("termination") or "unknown"
        termination_counts[termination] = termination_counts.get(termination, 0) + 1

    metrics = {
        "runs_total": len({record.run_id for record in runs}),
        "agent_runs_total": len(runs),
        "status_counts": status_counts,
        "termination_counts": termination_counts,
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "reported_cost": round(cost, 6),
    }
    print(json.dumps(metrics, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ralphy run history diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_runs = sub.add_parser("runs", help="List recorded agent runs")
    p_runs.add_argument("--task-id")
    p_runs.add_argument("--json", action="store_true", help="Output JSON")
    p_runs.set_defaults(func=cmd_runs)

    p_events = sub.add_parser("events", help="Show the events of one run")
    p_events.add_argument("run_id")
    p_events.add_argument("--limit", type=int, default=None, help="Show only the latest N events")
    p_events.set_defaults(func=cmd_events)

    p_worktrees = sub.add_parser("worktrees", help="List worktree records")
    p_worktrees.add_argument("--task-id")
    p_worktrees.set_defaults(func=cmd_worktrees)

    p_metrics = sub.add_parser("metrics", help="Aggregate status, token and cost totals")
    p_metrics.set_defaults(func=cmd_metrics)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
