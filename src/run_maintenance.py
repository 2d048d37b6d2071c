"""
Episode Maintenance Runner
==========================
Scheduler entry point (cron / Heroku Scheduler):
  1. Startup migrations
  2. Daily correlation re-scan + weak-row cleanup
  3. Hourly forecast refresh (24_hour)
  4. Daily forecast refresh (7_day, 3_day)

Usage:
    python run_maintenance.py                  # All jobs
    python run_maintenance.py --hourly         # Hourly refresh only
    python run_maintenance.py --correlations --daily
"""

from __future__ import annotations

import argparse
import logging
import sys

from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger("run_maintenance")

from pipeline.maintenance_pipeline import MaintenancePipeline


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Episode correlation and forecast maintenance"
    )
    parser.add_argument("--correlations", action="store_true",
                        help="Run the daily correlation analysis")
    parser.add_argument("--hourly", action="store_true",
                        help="Refresh hourly forecast windows")
    parser.add_argument("--daily", action="store_true",
                        help="Refresh daily and 6-hour forecast windows")
    parser.add_argument("--skip-migrations", action="store_true",
                        help="Do not run startup migrations")
    args = parser.parse_args(argv)

    run_all = not (args.correlations or args.hourly or args.daily)
    pipeline = MaintenancePipeline(run_migrations=not args.skip_migrations)
    success = pipeline.run(
        correlations=run_all or args.correlations,
        hourly=run_all or args.hourly,
        daily=run_all or args.daily,
    )
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
