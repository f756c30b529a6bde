"""buildthread session journal diagnostics CLI."""

from __future__ import annotations

import argparse
import json
from dataclasses import asdict

from buildthread.config import BuildSettings
from buildthread.storage import ChromaStore, ChromaUnavailableError


def load_store(settings: BuildSettings) -> ChromaStore:
    try:
        store = ChromaStore(settings.chroma_persist_path)
        store.ping()
        return store
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)


def _serialize(record) -> dict:
    payload = asdict(record)
    payload["recorded_at"] = record.recorded_at.isoformat()
    return payload


def cmd_sessions(args: argparse.Namespace) -> None:
    settings = BuildSettings()
    store = load_store(settings)
    try:
        records = store.list_session_records(event_type=args.event_type)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    if args.json:
        print(json.dumps([_serialize(record) for record in records], indent=2))
    else:
        for record in records:
            print(f"{record.session_id} [{record.event_type}] {record.sandbox_id} -> {record.pr_url}")


def cmd_orphans(args: argparse.Namespace) -> None:
    settings = BuildSettings()
    store = load_store(settings)
    try:
        records = store.open_sessions()
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    print(json.dumps([_serialize(record) for record in records], indent=2))


def cmd_events(args: argparse.Namespace) -> None:
    settings = BuildSettings()
    store = load_store(settings)
    try:
        events = store.fetch_session_events(args.session_id, limit=args.limit)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)

    payload = [
        {
            "event_id": event.id,
            "event_type": event.event_type,
            "status": event.metadata.get("status"),
            "sandbox_id": event.metadata.get("sandbox_id"),
            "timestamp": event.timestamp.isoformat(),
        }
        for event in events
    ]
    print(json.dumps(payload, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="buildthread journal diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_sessions = sub.add_parser("sessions", help="List journaled session records")
    p_sessions.add_argument("--json", action="store_true", help="Output JSON")
    p_sessions.add_argument(
        "--event-type",
        choices=["session_started", "session_ended", "session_reaped"],
        default=None,
    )
    p_sessions.set_defaults(func=cmd_sessions)

    p_orphans = sub.add_parser(
        "orphans",
        help="List sessions that were started but never ended or reaped",
    )
    p_orphans.set_defaults(func=cmd_orphans)

    p_events = sub.add_parser("events", help="Show the journal events of one session")
    p_events.add_argument("--session-id", required=True)
    p_events.add_argument("--limit", type=int, default=None)
    p_events.set_defaults(func=cmd_events)

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
