"""Run the job dispatcher from the command line.

Runs one dispatcher pass, or keeps running passes on an interval, against the
database named by DATABASE_URL (or --db-url).

Usage:
    python scripts/run_dispatcher.py --once
    python scripts/run_dispatcher.py --interval 60 --max-jobs 20
"""

import argparse
import logging
import os
import sys
import time
from pathlib import Path

from dotenv import load_dotenv

_ROOT_DIR = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_ROOT_DIR))

load_dotenv(_ROOT_DIR / ".env")

from ballotflow.config import load_settings  # noqa: E402
from ballotflow.db import create_tables, get_session_factory  # noqa: E402
from ballotflow.services.dispatcher import Dispatcher  # noqa: E402
from ballotflow.services.runtime import build_services  # noqa: E402

logger = logging.getLogger("ballotflow.dispatch")


def main() -> None:
    parser = argparse.ArgumentParser(description="Dispatch READY pipeline jobs.")
    parser.add_argument("--db-url", default=None, help="Overrides DATABASE_URL")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    parser.add_argument(
        "--interval", type=float, default=60.0, help="Seconds between passes (default 60)"
    )
    parser.add_argument("--max-jobs", type=int, default=None, help="Jobs per pass")
    parser.add_argument(
        "--time-budget", type=float, default=None, help="Seconds one pass may run"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    if args.db_url:
        os.environ["DATABASE_URL"] = args.db_url

    settings = load_settings()
    create_tables()
    dispatcher = Dispatcher(get_session_factory(), build_services(settings))

    while True:
        stats = dispatcher.run(max_jobs=args.max_jobs, time_budget=args.time_budget)
        for error in stats.errors:
            print(f"  ERROR  job {error.job_id}: {error.message}", file=sys.stderr)
        print(
            f"attempted={stats.attempted} succeeded={stats.succeeded} failed={stats.failed} "
            f"skipped={stats.skipped} rate_limited={stats.rate_limited} "
            f"stale_resets={stats.stale_resets}"
        )
        if args.once:
            break
        try:
            time.sleep(args.interval)
        except KeyboardInterrupt:
            logger.info("stopping")
            break


if __name__ == "__main__":
    main()
