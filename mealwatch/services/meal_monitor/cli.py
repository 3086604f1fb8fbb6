#!/usr/bin/env python3
"""Command-line interface for meal monitor operations.

Usage:
    python -m mealwatch.services.meal_monitor.cli --help
    python -m mealwatch.services.meal_monitor.cli init-db
    python -m mealwatch.services.meal_monitor.cli purge
    python -m mealwatch.services.meal_monitor.cli serve --port 8080

``purge`` is meant to run on a schedule (cron, EventBridge); it removes
every student past its data expiry date along with its history, and
attendance older than the 90-day ceiling.
"""
import argparse
import logging
import sys
from typing import List, Optional

from mealwatch.shared.database import ConnectionManager, DatabaseConfig
from .ingestion import store_from_env
from .repositories import PostgresMealMonitorStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def setup_parser() -> argparse.ArgumentParser:
    """Set up argument parser."""
    parser = argparse.ArgumentParser(
        description="Meal Monitor CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("init-db", help="Create database tables and indexes")
    subparsers.add_parser("purge", help="Remove expired students and records")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port")

    return parser


def cmd_init_db(args: argparse.Namespace) -> int:
    """Create the PostgreSQL schema."""
    manager = ConnectionManager(DatabaseConfig.from_env())
    try:
        PostgresMealMonitorStore(manager).create_schema()
    finally:
        manager.close()
    print("Schema ready")
    return 0


def cmd_purge(args: argparse.Namespace) -> int:
    """Sweep expired data from the configured store."""
    counts = store_from_env().purge_expired()
    print(
        f"Purged {counts['students']} students, "
        f"{counts['attendance']} attendance records, "
        f"{counts['check_ins']} check-ins"
    )
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the Flask development server."""
    from .handler import app

    logger.info("MEAL_MONITOR_SERVING", extra={"host": args.host, "port": args.port})
    app.run(host=args.host, port=args.port)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = setup_parser()
    args = parser.parse_args(argv)

    if args.command == "init-db":
        return cmd_init_db(args)
    elif args.command == "purge":
        return cmd_purge(args)
    elif args.command == "serve":
        return cmd_serve(args)
    else:
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())
