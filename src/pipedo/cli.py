"""Command line entry point: ``pipedo TARGET...``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from . import __version__
from .collaborators import CollaboratorError
from .config import PipedoSettings, get_settings
from .logs import LogPipelineError
from .session import PointerStoreError, RunSession, SessionError


def configure_logging(level: str) -> None:
    """Configure root logging for the command line."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pipedo",
        description="Bring the given targets up to date by running the plan that produces them.",
    )
    parser.add_argument("targets", nargs="+", metavar="TARGET", help="Targets to produce")
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Show more of the plan output (repeatable)",
    )
    parser.add_argument("-q", "--quiet", action="store_true", help="Show no plan output")
    parser.add_argument("--verbosity", type=int, default=None, help="Set the display level directly")
    edit = parser.add_mutually_exclusive_group()
    edit.add_argument("--edit", dest="edit", action="store_true", default=None, help="Offer the plan for editing")
    edit.add_argument("--no-edit", dest="edit", action="store_false", help="Run the plan without editing")
    parser.add_argument("--app", type=Path, default=None, help="Application root (default: PIPEDO_APP or .)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def resolve_settings(args: argparse.Namespace, settings: PipedoSettings | None = None) -> PipedoSettings:
    """Apply command line overrides on top of the environment-derived settings."""

    settings = settings or get_settings()
    updates: dict[str, object] = {}
    if args.app is not None:
        updates["app_home"] = args.app.expanduser().resolve()
    if args.verbosity is not None:
        updates["verbosity"] = args.verbosity
    elif args.quiet:
        updates["verbosity"] = 0
    elif args.verbose:
        updates["verbosity"] = settings.verbosity + args.verbose
    if args.edit is not None:
        updates["edit_plan"] = args.edit
    return settings.model_copy(update=updates)


def run(args: argparse.Namespace, settings: PipedoSettings) -> int:
    session = RunSession(args.targets, settings)
    try:
        result = asyncio.run(session.run())
    except SessionError as exc:
        print(f"pipedo: error: {exc}", file=sys.stderr)
        return exc.exit_code
    except (CollaboratorError, LogPipelineError, PointerStoreError) as exc:
        print(f"pipedo: error: {exc}", file=sys.stderr)
        return 1
    return result.exit_code


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.verbosity is not None and args.verbosity < 0:
        parser.error("--verbosity must be >= 0")

    settings = resolve_settings(args)
    configure_logging(settings.log_level)
    exit_code = run(args, settings)
    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
