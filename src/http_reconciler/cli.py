"""Command-line interface for the HTTP resource reconciler.

Subcommands:

- ``render NAME ACTION`` -- print the request an action would send.
- ``reconcile [NAME...]`` -- run a single reconcile pass.
- ``run`` -- reconcile in a loop until interrupted.
- ``delete NAME`` -- delete a resource and forget its state.
- ``init-config`` -- write a starter config file.

All user-facing messages go to stderr; reports go to stdout.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from . import __version__
from .config import Config, load_config
from .config_loader import discover_config_files, ensure_config, load_hierarchical_config
from .config_schema import UnifiedConfig, build_config
from .errors import ReconcilerError
from .logger import setup_logging
from .reconcile.models import Action
from .reconcile.reporter import (
    format_reconcile_report,
    format_request_details,
    report_to_json,
)
from .reconcile.scheduler import ReconcileScheduler

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_CONFIG = 2


def _stderr_print(msg: str) -> None:
    print(msg, file=sys.stderr, flush=True)


def load_settings(args: argparse.Namespace) -> tuple[UnifiedConfig, Config]:
    """Resolve the config file and runtime settings for *args*.

    Order: .env is loaded first (so ``${VAR}`` interpolation can use it),
    then YAML files, then ``load_config()`` applies CLI > env > YAML.

    Raises:
        ValueError: A setting is invalid.
        ValidationError: The config file does not match the schema.
    """
    load_dotenv()

    paths = [Path(args.config)] if args.config else discover_config_files()
    raw = load_hierarchical_config(paths) if paths else {}
    unified = build_config(raw)
    if paths:
        logger.info("Configuration loaded from: %s", ", ".join(map(str, paths)))

    config = load_config(
        state_dir=args.state_dir,
        poll_interval=getattr(args, "interval", None),
        max_parallel=args.max_parallel,
        debug=args.debug,
        dry_run=getattr(args, "dry_run", False),
        yaml_fallbacks=unified.reconciler.model_dump(
            include={"state_dir", "poll_interval", "max_parallel_reconciles", "default_timeout"}
        ),
    )
    return unified, config


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


# ---------------------------------------------------------------------------
# Subcommand handlers
# ---------------------------------------------------------------------------


def cmd_render(scheduler: ReconcileScheduler, args: argparse.Namespace) -> int:
    details = scheduler.render(args.name, Action(args.action.upper()))
    if args.json:
        _print_json(details.model_dump(mode="json", by_alias=True))
    else:
        print(format_request_details(details))
    return EXIT_OK


def cmd_reconcile(scheduler: ReconcileScheduler, args: argparse.Namespace) -> int:
    report = asyncio.run(
        scheduler.run_once(names=args.names or None, dry_run=args.dry_run or None)
    )
    if args.json:
        _print_json(report_to_json(report))
    else:
        print(format_reconcile_report(report))
    return EXIT_FAILURES if report.errors else EXIT_OK


def cmd_run(scheduler: ReconcileScheduler, args: argparse.Namespace) -> int:
    _stderr_print(
        f"Reconciling {len(scheduler.unified.resources)} resources every "
        f"{scheduler.config.poll_interval:g}s (Ctrl+C to stop)"
    )
    reports = asyncio.run(scheduler.run_forever(max_passes=args.max_passes))
    if reports:
        last = reports[-1]
        if args.json:
            _print_json(report_to_json(last))
        else:
            print(format_reconcile_report(last))
    return EXIT_OK


def cmd_delete(scheduler: ReconcileScheduler, args: argparse.Namespace) -> int:
    result = scheduler.delete(args.name)
    if args.json:
        _print_json(result.model_dump(mode="json", by_alias=True, exclude={"status"}))
    elif result.success:
        print(f"Deleted {args.name}")
    else:
        print(f"Failed to delete {args.name}: {result.error}")
    return EXIT_OK if result.success else EXIT_FAILURES


_COMMANDS = {
    "render": cmd_render,
    "reconcile": cmd_reconcile,
    "run": cmd_run,
    "delete": cmd_delete,
}


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="http-reconciler",
        description="Declarative reconciler for HTTP-backed resources",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create a starter config in .http_reconciler/config.yml
  http-reconciler init-config

  # Show the request a CREATE would send, without sending it
  http-reconciler render demo-user create

  # Reconcile everything once, reporting what would change
  http-reconciler reconcile --dry-run

  # Reconcile two resources and print a JSON report
  http-reconciler --json reconcile demo-user demo-group

  # Keep reconciling every 30 seconds
  http-reconciler run --interval 30

Environment: HTTP_RECONCILER_CONFIG, HTTP_RECONCILER_STATE_DIR,
HTTP_RECONCILER_POLL_INTERVAL, HTTP_RECONCILER_MAX_PARALLEL,
HTTP_RECONCILER_TIMEOUT, LOG_LEVEL, LOG_FILE (a .env file is honoured).
        """,
    )
    parser.add_argument("--config", help="Config file (skips discovery)")
    parser.add_argument(
        "--state-dir",
        help="State directory (takes precedence over HTTP_RECONCILER_STATE_DIR "
        "and config files)",
    )
    parser.add_argument(
        "--max-parallel", type=int, help="Maximum concurrent reconciles (1-100)"
    )
    parser.add_argument("--json", action="store_true", help="Print JSON output")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--log-file", help="Also append logs to this file")
    parser.add_argument(
        "--version",
        action="version",
        version=f"http-reconciler version {__version__}",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    render = sub.add_parser("render", help="Print rendered request details")
    render.add_argument("name")
    render.add_argument(
        "action", choices=[a.value.lower() for a in Action], type=str.lower
    )

    reconcile = sub.add_parser("reconcile", help="Run one reconcile pass")
    reconcile.add_argument("names", nargs="*", help="Resources (default: all)")
    reconcile.add_argument(
        "--dry-run", action="store_true", help="Observe only, send no changes"
    )

    run_cmd = sub.add_parser("run", help="Reconcile in a loop")
    run_cmd.add_argument("--interval", type=float, help="Seconds between passes")
    run_cmd.add_argument(
        "--max-passes", type=int, help="Stop after this many passes"
    )
    run_cmd.add_argument(
        "--dry-run", action="store_true", help="Observe only, send no changes"
    )

    delete = sub.add_parser("delete", help="Delete a resource")
    delete.add_argument("name")

    init = sub.add_parser("init-config", help="Write a starter config file")
    init.add_argument("--path", help="Target path (default: .http_reconciler/config.yml)")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Parse *argv*, run the subcommand and return the exit code."""
    args = build_parser().parse_args(argv)

    if args.command == "init-config":
        setup_logging(debug=args.debug, log_file=args.log_file)
        path = ensure_config(Path(args.path) if args.path else None)
        print(path)
        return EXIT_OK

    try:
        unified, config = load_settings(args)
    except (ValueError, ValidationError, OSError, yaml.YAMLError) as exc:
        setup_logging(debug=args.debug, log_file=args.log_file)
        _stderr_print(f"ERROR: Configuration error: {exc}")
        return EXIT_CONFIG

    setup_logging(
        debug=config.debug,
        log_file=args.log_file or unified.logging.file,
        log_format=unified.logging.format,
        level=unified.logging.level,
    )

    scheduler = ReconcileScheduler(unified, config)
    try:
        return _COMMANDS[args.command](scheduler, args)
    except (ReconcilerError, ValidationError) as exc:
        _stderr_print(f"ERROR: {exc}")
        return EXIT_FAILURES
    finally:
        scheduler.client.close()


def run() -> None:
    """Console script entry point."""
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(0)


if __name__ == "__main__":
    run()
