"""
Due-time calculation for job schedules.

Cron schedules are evaluated by croniter on wall-clock time in the job's
time zone; results are aware UTC datetimes. The DST rules live here: wall
times inside a spring-forward gap are skipped and ambiguous fall-back times
fire once, at their first instant.
"""
from datetime import datetime, timezone
from functools import lru_cache
from typing import Iterator, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import CroniterBadCronError, CroniterBadDateError, croniter

from .errors import CronSyntaxError, JobValidationError
from .models import Schedule

MACROS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

# Upper bound on wall-clock candidates inspected per lookup. Only DST gaps
# discard candidates, and a gap holds at most a couple of hours of minutes.
MAX_CANDIDATES = 1000


@lru_cache(maxsize=1024)
def parse_cron(expression: str) -> str:
    """Validate a five-field expression (or macro) and return its normalized form."""
    if expression is None or not expression.strip():
        raise CronSyntaxError("Cron expression cannot be empty.")
    source = expression.strip()
    text = MACROS.get(source.lower(), source) if source.startswith("@") else source
    if text.startswith("@"):
        raise CronSyntaxError(f"Unknown cron macro: {source!r}")

    parts = text.lower().split()
    if len(parts) != 5:
        raise CronSyntaxError(f"Cron must have 5 fields, got {len(parts)}: {source!r}")
    normalized = " ".join(parts)
    try:
        croniter(normalized, datetime(2000, 1, 1))
    except (CroniterBadCronError, ValueError) as e:
        raise CronSyntaxError(f"Invalid cron expression {source!r}: {e}")
    return normalized


def get_zone(name: str):
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise JobValidationError(f"Unknown time zone: {name!r}")


def _next_cron(expression: str, after: datetime, tz) -> Optional[datetime]:
    local = after.astimezone(tz).replace(tzinfo=None)
    # naive start: croniter steps through wall-clock minutes with no DST arithmetic
    wall_times = croniter(expression, local)
    for _ in range(MAX_CANDIDATES):
        try:
            wall = wall_times.get_next(datetime)
        except CroniterBadDateError:
            return None
        instant = wall.replace(tzinfo=tz).astimezone(timezone.utc)
        if instant.astimezone(tz).replace(tzinfo=None) != wall:
            continue  # inside a spring-forward gap
        if instant > after:
            return instant
    return None


def next_occurrence(schedule: Schedule, after: datetime) -> Optional[datetime]:
    """
    Next due instant of `schedule` strictly after `after`, or None.

    One-shot schedules return their fixed time only while it is still in
    the future relative to `after`.
    """
    if (schedule.cron is None) == (schedule.run_at is None):
        raise JobValidationError("Schedule needs exactly one of cron or run_at.")
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)

    if schedule.cron is not None:
        return _next_cron(parse_cron(schedule.cron), after, get_zone(schedule.timezone))

    run_at = schedule.run_at
    if run_at.tzinfo is None:
        run_at = run_at.replace(tzinfo=get_zone(schedule.timezone))
    run_at = run_at.astimezone(timezone.utc)
    return run_at if run_at > after else None


def iter_occurrences(schedule: Schedule, after: datetime, limit: int = 5) -> Iterator[datetime]:
    current = after
    for _ in range(limit):
        nxt = next_occurrence(schedule, current)
        if nxt is None:
            return
        yield nxt
        current = nxt
