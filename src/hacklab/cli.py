"""HackLab Command Line Interface.

Runs the HTTP API, one-off reconcile passes and status queries.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import TYPE_CHECKING

from hacklab.version import __version__


if TYPE_CHECKING:
    from argparse import Namespace

    from hacklab.config.settings import Settings


VERBOSITY_LEVELS = {1: "INFO", 2: "DEBUG"}


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="hacklab",
        description="HackLab - per-user lab and desktop provisioning on Kubernetes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  hacklab serve                   Start the HTTP API
  hacklab reconcile               Prune stale records once
  hacklab reconcile --loop        Keep pruning on an interval
  hacklab status --user u1        Show a user's active labs and desktops
        """,
    )

    parser.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (can be repeated: -v, -vv)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API")
    serve_parser.add_argument("--host", default=None, help="Bind address (default from settings)")
    serve_parser.add_argument("--port", type=int, default=None, help="Bind port (default from settings)")

    reconcile_parser = subparsers.add_parser("reconcile", help="Prune records whose workload is gone")
    reconcile_parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep reconciling on an interval instead of a single pass",
    )
    reconcile_parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between passes with --loop (default from settings)",
    )
    reconcile_parser.add_argument(
        "--metrics-port",
        type=int,
        default=None,
        help="Expose Prometheus metrics on this port while looping",
    )

    status_parser = subparsers.add_parser("status", help="Show a user's active workloads")
    status_parser.add_argument("--user", required=True, help="User id")

    subparsers.add_parser("version", help="Print the version")

    return parser


def _setup(args: Namespace) -> Settings:
    from hacklab.config.settings import get_settings
    from hacklab.observability import configure_logging

    settings = get_settings()
    level = VERBOSITY_LEVELS.get(min(args.verbose, 2), settings.observability.log_level)
    configure_logging(level=level, format_type=settings.observability.log_format)
    return settings


def run_server(args: Namespace) -> int:
    """Start the HTTP API."""
    import uvicorn

    from hacklab.api import create_app

    settings = _setup(args)
    uvicorn.run(
        create_app(settings=settings),
        host=args.host or settings.api.host,
        port=args.port or settings.api.port,
        log_config=None,
    )
    return 0


def run_reconcile(args: Namespace) -> int:
    """Run one reconcile pass, or loop forever with --loop."""
    from hacklab.api.deps import build_services
    from hacklab.observability.metrics import start_metrics_server

    settings = _setup(args)
    services = build_services(settings)

    async def _run() -> int:
        try:
            if args.loop:
                if args.metrics_port:
                    start_metrics_server(args.metrics_port)
                await services.reconciler.run_forever(args.interval or settings.reconciler.interval_seconds)
                return 0
            reports = await services.reconciler.reconcile_all()
            print(json.dumps([report.to_dict() for report in reports], indent=2))
            return 1 if any(report.errors for report in reports) else 0
        finally:
            await services.close()

    try:
        return asyncio.run(_run())
    except KeyboardInterrupt:
        return 130


def show_status(args: Namespace) -> int:
    """Print a user's active labs and desktops after a reconcile pass."""
    from hacklab.api.deps import build_services
    from hacklab.errors import HackLabError

    settings = _setup(args)
    services = build_services(settings)
    password = settings.lab.vnc_password.get_secret_value()

    async def _run() -> int:
        try:
            labs = await services.lifecycle.get_active_labs(args.user)
            desktops = await services.lifecycle.get_active_os(args.user)
        except HackLabError as e:
            print(f"Error: {e.message}", file=sys.stderr)
            return 1
        finally:
            await services.close()
        print(
            json.dumps(
                {
                    "user_id": args.user,
                    "labs": [lab.to_dict() for lab in labs],
                    "containers": [desktop.to_dict(password) for desktop in desktops],
                },
                indent=2,
            )
        )
        return 0

    return asyncio.run(_run())


def print_version(args: Namespace) -> int:  # noqa: ARG001
    print(f"hacklab {__version__}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    command_handlers = {
        "serve": run_server,
        "reconcile": run_reconcile,
        "status": show_status,
        "version": print_version,
    }

    handler = command_handlers.get(args.command)
    if handler:
        return handler(args)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
