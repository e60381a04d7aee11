"""Forward persisted blocked-cycle alerts to monitoring-friendly output."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Iterable

from ralph_fleet.config import FleetSettings
from ralph_fleet.storage import ChromaEvent, ChromaStateStore, ChromaUnavailableError


def load_store(settings: FleetSettings) -> ChromaStateStore:
    """Construct a ChromaStateStore using the provided settings."""

    store = ChromaStateStore(settings.state_path.expanduser())
    store.ping()
    return store


def _normalize_events(
    events: Iterable[ChromaEvent],
    *,
    session_id: str | None = None,
) -> list[dict[str, object]]:
    filtered: list[dict[str, object]] = []
    for event in events:
        if session_id and event.session_id != session_id:
            continue
        try:
            body = json.loads(event.document)
        except (TypeError, ValueError):
            body = {}
        filtered.append(
            {
                "event_id": event.id,
                "session_id": event.session_id,
                "cycle_number": event.metadata.get("cycle_number"),
                "outcome": event.metadata.get("outcome"),
                "reason": body.get("error_message"),
                "timestamp": event.timestamp.isoformat(),
            }
        )
    filtered.sort(key=lambda item: item["timestamp"])
    return filtered


def _default_event_formatter(item: dict[str, object]) -> str:
    fields = ("session_id", "cycle_number", "outcome", "reason", "timestamp")
    labels = {"session_id": "session", "cycle_number": "cycle"}
    return " | ".join(f"{labels.get(name, name)}={item[name]}" for name in fields)


def _emit(text: str, destination: str | None) -> None:
    if destination:
        Path(destination).write_text(text, encoding="utf-8")
    else:
        print(text)


def forward_alerts(args: argparse.Namespace, *, formatter=_default_event_formatter) -> int:
    """Read blocked cycles from the state store and emit them as JSON or text lines."""

    try:
        store = load_store(FleetSettings())
        alerts = store.search_events(filters={"kind": "cycle", "outcome": "blocked"})
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}", file=sys.stderr)
        return 1

    payload = _normalize_events(alerts, session_id=args.session_id)
    if args.limit and args.limit > 0:
        payload = payload[-args.limit :]
    if args.format == "text":
        _emit("\n".join(formatter(item) for item in payload), args.output)
    else:
        _emit(json.dumps(payload, indent=2), args.output)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Emit blocked respawn cycles (open circuit breakers, exit signals) for alerting."
    )
    parser.add_argument("--session-id", default=None, help="Only report cycles of this session")
    parser.add_argument("--format", choices=("json", "text"), default="json", help="json (default) or text lines")
    parser.add_argument("--output", help="Write to this file instead of stdout")
    parser.add_argument("--limit", type=int, default=None, help="Keep only the newest N alerts")
    return parser


def main(argv: list[str] | None = None) -> None:
    exit_code = forward_alerts(build_parser().parse_args(argv))
    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
