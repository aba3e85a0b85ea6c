#!/usr/bin/env python3
"""
Entry point for the Review Insights pipeline.

Usage:
  # Create tables:
  python main.py init-db

  # Run one trigger pass locally (same code path as the HTTP trigger):
  python main.py trigger --mode backlog --limit 20

  # Release stale locks and stale processing jobs:
  python main.py maintenance

  # Start the FastAPI server:
  python main.py api

  # Run tests:
  python main.py test
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import subprocess
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from config.settings import settings

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("main")


def init_database():
    from db.database import init_db
    init_db()


def trigger(args):
    """Run one pipeline pass and print the trigger response."""
    from db.database import init_db
    from utils.pipeline import TriggerParams, TriggerPipeline

    init_db()
    params = TriggerParams(
        resource=args.resource,
        mode=args.mode,
        limit=args.limit,
        force=args.force,
        sync=not args.no_sync,
        debug=args.debug,
    )
    result = TriggerPipeline().run(params)
    print(json.dumps(result.to_dict(), indent=2, default=str))
    return result


def maintenance():
    from db.database import init_db
    from utils.pipeline import TriggerPipeline

    init_db()
    outcome = TriggerPipeline().maintenance()
    logger.info(f"Maintenance: {outcome}")
    print(json.dumps(outcome))


def start_api():
    """Start the FastAPI server."""
    import uvicorn
    uvicorn.run("api.main:app", host=settings.API_HOST, port=settings.API_PORT,
                reload=settings.DEBUG)


def run_tests():
    """Run pytest."""
    result = subprocess.run(
        ["pytest", "tests/", "-v", "--tb=short"],
        cwd=os.path.dirname(os.path.abspath(__file__)),
    )
    sys.exit(result.returncode)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=settings.APP_NAME)
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create database tables")
    sub.add_parser("maintenance", help="Release stale locks and jobs")
    sub.add_parser("api", help="Start the FastAPI server")
    sub.add_parser("test", help="Run the test suite")

    run = sub.add_parser("trigger", help="Run one pipeline pass")
    run.add_argument("--resource", default=None, help="Resource name (default: all)")
    run.add_argument("--mode", default="backlog",
                     choices=["backlog", "recent", "retry_errors", "queue"])
    run.add_argument("--limit", type=int, default=None)
    run.add_argument("--force", action="store_true", help="Ignore stored cursors")
    run.add_argument("--no-sync", action="store_true", help="Skip the sync stage")
    run.add_argument("--debug", action="store_true", help="Include queue status")
    return parser


if __name__ == "__main__":
    args = build_parser().parse_args()

    if args.command == "init-db":
        init_database()
    elif args.command == "trigger":
        trigger(args)
    elif args.command == "maintenance":
        maintenance()
    elif args.command == "api":
        start_api()
    elif args.command == "test":
        run_tests()
