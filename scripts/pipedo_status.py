"""pipedo status diagnostics CLI."""

from __future__ import annotations

import argparse
import json

from pipedo.config import PipedoSettings
from pipedo.logs import tail_lines
from pipedo.session import PointerStoreError, StatusPointer, StatusPointerStore
from pipedo.session.workspace import UNIFIED_LOG_FILE


def load_store(settings: PipedoSettings) -> StatusPointerStore:
    return StatusPointerStore(settings.resolved_run_root)


def _snapshot(store: StatusPointerStore):
    try:
        return store.snapshot()
    except PointerStoreError as exc:
        print(f"Pointers unavailable: {exc}")
        raise SystemExit(1)


def cmd_pointers(args: argparse.Namespace) -> None:
    settings = PipedoSettings()
    records = _snapshot(load_store(settings))
    pointers = {
        pointer.value: records.get(pointer.value) for pointer in StatusPointer
    }
    if args.json:
        payload = {
            name: record.model_dump(mode="json") if record is not None else None
            for name, record in pointers.items()
        }
        print(json.dumps(payload, indent=2))
    else:
        for name, record in pointers.items():
            target = record.session_id if record is not None else "-"
            print(f"{name:<9} {target}")


def cmd_backups(args: argparse.Namespace) -> None:
    settings = PipedoSettings()
    store = load_store(settings)
    try:
        backups = store.finished_backups()
    except PointerStoreError as exc:
        print(f"Pointers unavailable: {exc}")
        raise SystemExit(1)
    payload = [
        {
            "name": name,
            "session_id": record.session_id,
            "workspace": str(record.workspace),
            "updated_at": record.updated_at.isoformat(),
        }
        for name, record in backups
    ]
    print(json.dumps(payload, indent=2))


def cmd_tail(args: argparse.Namespace) -> None:
    settings = PipedoSettings()
    records = _snapshot(load_store(settings))
    record = records.get(args.pointer)
    if record is None:
        print(f"No {args.pointer} session")
        raise SystemExit(1)
    for line in tail_lines(record.workspace / UNIFIED_LOG_FILE, args.lines):
        print(line, end="")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="pipedo session status")
    sub = parser.add_subparsers(dest="cmd")

    p_pointers = sub.add_parser("pointers", help="Show RUNNING, LATEST, FINISHED and ABORTED")
    p_pointers.add_argument("--json", action="store_true", help="Output JSON")
    p_pointers.set_defaults(func=cmd_pointers)

    p_backups = sub.add_parser("backups", help="List previous FINISHED sessions, oldest first")
    p_backups.set_defaults(func=cmd_backups)

    p_tail = sub.add_parser("tail", help="Print the end of a session's unified log")
    p_tail.add_argument(
        "pointer",
        nargs="?",
        default=StatusPointer.LATEST.value,
        help="Pointer or backup name (default: LATEST)",
    )
    p_tail.add_argument("-n", "--lines", type=int, default=20, help="Number of lines to show")
    p_tail.set_defaults(func=cmd_tail)

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
