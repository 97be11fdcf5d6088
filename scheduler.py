#!/usr/bin/env python3
import os
import sys
import time
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

import backup
from settings import UNSET_MARKER


def schedule_from_env(environ=None):
    env = os.environ if environ is None else environ
    expr = env.get("SCHEDULE", "").strip()
    if expr == UNSET_MARKER:
        expr = ""
    tz_name = env.get("TZ", "").strip() or "UTC"
    return expr, tz_name


def resolve_timezone(tz_name):
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        print(f"  [WARN] Unknown timezone '{tz_name}', using UTC", file=sys.stderr)
        return ZoneInfo("UTC")


def next_fire_time(expr, after, tz):
    """Next time expr fires strictly after `after`, evaluated in tz (aware result)."""
    base = after.astimezone(tz)
    return croniter(expr, base).get_next(datetime)


def run_forever(expr, tz, job=None, sleep=time.sleep, clock=None, max_runs=None):
    """
    Runs job at every fire time of expr. A run that overruns simply delays the
    next one; invocations never overlap.
    """
    job = job or backup.main
    clock = clock or (lambda: datetime.now(timezone.utc))
    runs = 0
    while max_runs is None or runs < max_runs:
        fire_at = next_fire_time(expr, clock(), tz)
        print(f"[SCHEDULE] Next backup at {fire_at.isoformat()} ({expr})")
        delay = (fire_at - clock()).total_seconds()
        if delay > 0:
            sleep(delay)
        code = job([])
        print(f"[SCHEDULE] Backup exited with status {code}")
        runs += 1


def main(argv=None):
    expr, tz_name = schedule_from_env()
    if not expr:
        return backup.main(argv)

    if not croniter.is_valid(expr):
        print(f"[FATAL] SCHEDULE is not a valid cron expression: {expr!r}", file=sys.stderr)
        return 1

    try:
        run_forever(expr, resolve_timezone(tz_name))
    except KeyboardInterrupt:
        print("\n[ABORTED] Scheduler stopped.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
