"""Command line entry point.

    python -m subscription_sync                  # serve the HTTP API
    python -m subscription_sync sweep            # run one deactivation sweep
    python -m subscription_sync import --force   # backfill mapping records

The one-shot commands print their JSON report and exit non-zero on failure,
so a plain crontab can drive them when the HTTP cron endpoint is not used.
"""

import argparse
import os
import sys
from typing import Optional, Sequence

import uvicorn

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="subscription-sync",
        description="Keeps payment provider subscriptions and course platform access in sync",
    )
    parser.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"), help="Bind address (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "8080")), help="Port (default: 8080)")
    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        type=str.upper,
        default=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
    parser.add_argument("--log-format", choices=["json", "console"], default=os.getenv("LOG_FORMAT", "json"))
    parser.add_argument(
        "--config",
        default=os.getenv("CONFIG_PATH", "config/offers.yaml"),
        help="Offer catalog file (default: config/offers.yaml)",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        default=os.getenv("RELOAD", "false").lower() == "true",
        help="Auto-reload on code changes (development only)",
    )

    commands = parser.add_subparsers(dest="command")
    commands.add_parser("sweep", help="Run the deferred deactivation sweep once and print the report")
    import_parser = commands.add_parser("import", help="Backfill mapping records from the payment provider")
    import_parser.add_argument("--force", action="store_true", help="Overwrite identifiers on existing records")
    return parser


def run_sweep() -> int:
    from subscription_sync.services.deactivation_sweeper import get_deactivation_sweeper

    report = get_deactivation_sweeper().run()
    print(report.model_dump_json(indent=2))
    return 0 if report.ok else 1


def run_import(force: bool) -> int:
    from subscription_sync.errors import SyncError
    from subscription_sync.services.mapping_import import get_mapping_importer

    try:
        summary = get_mapping_importer().run(force=force)
    except SyncError as e:
        print(f"Import failed: {e}", file=sys.stderr)
        return 1
    print(summary.model_dump_json(indent=2))
    return 0


def serve(args: argparse.Namespace) -> int:
    from subscription_sync.main import VERSION

    if args.log_format == "console":
        print(f"Subscription Sync v{VERSION} on http://{args.host}:{args.port} (config: {args.config})")

    try:
        uvicorn.run(
            "subscription_sync.main:app",
            host=args.host,
            port=args.port,
            log_level=args.log_level.lower(),
            reload=args.reload,
            access_log=False,
        )
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        print(f"Failed to start service: {e}", file=sys.stderr)
        return 1
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    # The app reads these when uvicorn imports it
    os.environ["LOG_LEVEL"] = args.log_level
    os.environ["LOG_FORMAT"] = args.log_format
    os.environ["CONFIG_PATH"] = args.config

    if args.command is None:
        return serve(args)

    from subscription_sync.logging_config import configure_logging

    configure_logging(log_level=args.log_level, json_format=args.log_format == "json")
    if args.command == "sweep":
        return run_sweep()
    return run_import(args.force)


if __name__ == "__main__":
    sys.exit(main())
