# BioWatch - Command Line Entry Point
#
#   biowatch serve            run the admin API with the scheduler
#   biowatch sync             run one ingestion cycle and print the report
#   biowatch status           print per-source sync status
#   biowatch enable SOURCE    enable a feed (OTX, NVD, CISA)
#   biowatch disable SOURCE   disable a feed

import argparse
import json
import logging
import sys
from pathlib import Path

from . import __version__
from .config import build_aggregator, load_settings
from .core import IngestionEventLogger, set_event_logger
from .intel.models import ThreatSource


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _cmd_serve(args) -> int:
    from .api.main import start_api_server

    print(f"Starting BioWatch API on {args.host}:{args.port} (Ctrl+C to stop)")
    try:
        start_api_server(host=args.host, port=args.port)
    except KeyboardInterrupt:
        print("\nShutting down...")
    return 0


def _cmd_sync(args, settings) -> int:
    aggregator = build_aggregator(settings)
    try:
        report = aggregator.sync_now()
    finally:
        aggregator.store.close()
    _print_json(report.to_dict())
    return 0 if report.sources_failed == 0 else 1


def _cmd_status(args, settings) -> int:
    aggregator = build_aggregator(settings)
    try:
        _print_json(
            {
                "sources": [s.to_dict() for s in aggregator.store.list_source_statuses()],
                "threats": aggregator.store.stats(),
                "settings": settings.to_dict(),
            }
        )
    finally:
        aggregator.store.close()
    return 0


def _cmd_toggle(args, settings, enabled: bool) -> int:
    aggregator = build_aggregator(settings)
    try:
        changed = aggregator.set_source_enabled(ThreatSource(args.source), enabled)
    finally:
        aggregator.store.close()
    if not changed:
        print(f"Source not configured: {args.source}", file=sys.stderr)
        return 1
    print(f"{args.source} {'enabled' if enabled else 'disabled'}")
    return 0


def main(argv=None) -> int:
    """Main entry point for BioWatch."""
    parser = argparse.ArgumentParser(
        description="BioWatch - threat intelligence ingestion for the bio-economy",
    )
    parser.add_argument(
        "--version", action="version", version=f"BioWatch v{__version__}"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the admin API and scheduler")
    serve.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")

    subparsers.add_parser("sync", help="Run one ingestion cycle now")
    subparsers.add_parser("status", help="Show per-source sync status")

    sources = [s.value for s in ThreatSource]
    for name in ("enable", "disable"):
        toggle = subparsers.add_parser(name, help=f"{name.capitalize()} a feed source")
        toggle.add_argument("source", type=str.upper, choices=sources)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "serve":
        return _cmd_serve(args)

    settings = load_settings()
    event_logger = IngestionEventLogger(Path(settings.log_dir))
    set_event_logger(event_logger)

    try:
        if args.command == "sync":
            return _cmd_sync(args, settings)
        if args.command == "status":
            return _cmd_status(args, settings)
        return _cmd_toggle(args, settings, enabled=args.command == "enable")
    finally:
        set_event_logger(None)
        event_logger.close()


if __name__ == "__main__":
    sys.exit(main())
