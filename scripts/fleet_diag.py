"""ralph-fleet diagnostics CLI."""

from __future__ import annotations

import argparse
import json

from ralph_fleet.config import FleetSettings
from ralph_fleet.metrics import BreakerState, CycleOutcome, MetricsAggregator
from ralph_fleet.storage import ChromaStateStore, ChromaUnavailableError
from ralph_fleet.tasks import TaskStore


def load_store(settings: FleetSettings) -> ChromaStateStore:
    try:
        store = ChromaStateStore(settings.state_path.expanduser())
        store.ping()
        return store
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)


def cmd_sessions(args: argparse.Namespace) -> None:
    store = load_store(FleetSettings())
    sessions = store.list_sessions()
    if args.json:
        print(json.dumps(sessions, indent=2))
        return
    for session_id, snapshot in sorted(sessions.items(), key=lambda item: item[1].get("created_at", 0)):
        print(f"{session_id} [{snapshot.get('status')}] {snapshot.get('working_dir')} task={snapshot.get('current_task_id')}")


def cmd_tasks(args: argparse.Namespace) -> None:
    store = load_store(FleetSettings())
    tasks = TaskStore(store).list(args.status)
    if args.json:
        print(json.dumps([task.to_state() for task in tasks], indent=2))
        return
    for task in tasks:
        print(f"{task.id} [{task.status.value}] p={task.priority} -> {task.assigned_worker_id}")


def cmd_cycles(args: argparse.Namespace) -> None:
    store = load_store(FleetSettings())
    records = store.list_cycle_metrics(args.session_id)
    if args.limit is not None and args.limit > 0:
        records = records[-args.limit :]
    print(json.dumps(records, indent=2))


def _infer_breaker(aggregator: MetricsAggregator, session_id: str) -> BreakerState:
    cycles = aggregator.cycles(session_id)
    if not cycles:
        return BreakerState.CLOSED
    last = cycles[-1]
    if last.outcome is CycleOutcome.BLOCKED and "consecutive recoveries" in (last.error_message or ""):
        return BreakerState.OPEN
    if last.outcome is CycleOutcome.STUCK_RECOVERY:
        return BreakerState.HALF_OPEN
    return BreakerState.CLOSED


def cmd_health(args: argparse.Namespace) -> None:
    store = load_store(FleetSettings())
    aggregator = MetricsAggregator(store)
    breaker = _infer_breaker(aggregator, args.session_id)
    payload = aggregator.health(args.session_id, breaker_state=breaker).to_dict()
    payload["aggregate"] = aggregator.aggregate(args.session_id).to_dict()
    print(json.dumps(payload, indent=2))


def cmd_stalled(args: argparse.Namespace) -> None:
    store = load_store(FleetSettings())
    stalled = TaskStore(store).stalled_backlog()
    payload = [
        {"task_id": task.id, "prompt": task.prompt, "reason": error.reason}
        for task, error in stalled
    ]
    print(json.dumps(payload, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="ralph-fleet diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_sessions = sub.add_parser("sessions", help="List persisted session snapshots")
    p_sessions.add_argument("--json", action="store_true", help="Output JSON")
    p_sessions.set_defaults(func=cmd_sessions)

    p_tasks = sub.add_parser("tasks", help="List persisted tasks")
    p_tasks.add_argument("--status", choices=["pending", "running", "completed", "failed"])
    p_tasks.add_argument("--json", action="store_true", help="Output JSON")
    p_tasks.set_defaults(func=cmd_tasks)

    p_cycles = sub.add_parser("cycles", help="List recorded respawn cycles")
    p_cycles.add_argument("--session-id")
    p_cycles.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, show only the latest N cycles",
    )
    p_cycles.set_defaults(func=cmd_cycles)

    p_health = sub.add_parser("health", help="Compute the health score of a session")
    p_health.add_argument("--session-id", required=True)
    p_health.set_defaults(func=cmd_health)

    p_stalled = sub.add_parser("stalled", help="List pending tasks that can never be scheduled")
    p_stalled.set_defaults(func=cmd_stalled)

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
