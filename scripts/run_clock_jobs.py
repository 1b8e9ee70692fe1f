"""
Run the time clock scheduled jobs once.

Usage:
    python scripts/run_clock_jobs.py stale-clocks
    python scripts/run_clock_jobs.py missed-clock-ins
    python scripts/run_clock_jobs.py all [--now 2026-03-02T15:00:00+00:00]

Intended for cron: the stale-clock check every 5-15 minutes, the missed
clock-in check every few minutes during working hours.
"""
import sys
import os
import json
import argparse
from datetime import datetime
from typing import Optional

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from fieldclock.db import SessionLocal
from fieldclock.logging import setup_logging
from fieldclock.services.missed_clock_ins import check_missed_clock_ins
from fieldclock.services.reaper import reap_stale_sessions
from fieldclock.services.time_rules import ensure_utc

JOBS = {
    "stale-clocks": reap_stale_sessions,
    "missed-clock-ins": check_missed_clock_ins,
}


def run_jobs(job: str, now: Optional[datetime] = None) -> dict:
    names = list(JOBS) if job == "all" else [job]
    summary = {}
    db = SessionLocal()
    try:
        for name in names:
            summary[name] = JOBS[name](db, now=now)
    finally:
        db.close()
    return summary


def main(argv=None):
    parser = argparse.ArgumentParser(description="Run time clock jobs once")
    parser.add_argument("job", choices=sorted(JOBS) + ["all"], help="Job to run")
    parser.add_argument("--now", type=datetime.fromisoformat, help="Override the current time (ISO 8601, UTC if no offset)")

    args = parser.parse_args(argv)

    setup_logging()
    summary = run_jobs(args.job, now=ensure_utc(args.now))
    print(json.dumps(summary, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
