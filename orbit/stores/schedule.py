"""Next-run computation for scheduled tasks.

Pure function of (schedule_type, schedule_value, now):
- cron:     standard 5-field expression, next matching instant after now
- interval: positive integer milliseconds, now + value
- once:     absolute timestamp, returned verbatim even if already past

Anything that cannot produce a time raises InvalidSchedule.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta

from croniter import croniter
from dateutil import parser as dateutil_parser

from orbit.errors import InvalidSchedule

_INTERVAL_RE = re.compile(r"^\d+$")


def _parse_cron(value: str, now: datetime) -> datetime:
    expr = value.strip()
    if len(expr.split()) != 5 or not croniter.is_valid(expr):
        raise InvalidSchedule(f"Invalid cron expression: {value!r}")
    try:
        return croniter(expr, now).get_next(datetime)
    except (ValueError, KeyError) as exc:
        raise InvalidSchedule(f"Invalid cron expression: {value!r}") from exc


def _parse_interval(value: str, now: datetime) -> datetime:
    raw = value.strip()
    if not _INTERVAL_RE.match(raw):
        raise InvalidSchedule(f"Interval must be a positive integer of milliseconds: {value!r}")
    ms = int(raw)
    if ms <= 0:
        raise InvalidSchedule(f"Interval must be positive: {value!r}")
    try:
        return now + timedelta(milliseconds=ms)
    except OverflowError as exc:
        raise InvalidSchedule(f"Interval too large: {value!r}") from exc


def _parse_once(value: str) -> datetime:
    if not value.strip():
        raise InvalidSchedule("Empty timestamp")
    try:
        dt = dateutil_parser.parse(value)
    except (ValueError, OverflowError) as exc:
        raise InvalidSchedule(f"Cannot parse timestamp: {value!r}") from exc

    # Make timezone-aware (assume UTC if naive)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def compute_next_run(
    schedule_type: str,
    schedule_value: str,
    now: datetime | None = None,
) -> datetime:
    """Return the next run time for a schedule, or raise InvalidSchedule."""
    now = now or datetime.now(UTC)
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)

    if schedule_type == "cron":
        return _parse_cron(schedule_value, now)
    if schedule_type == "interval":
        return _parse_interval(schedule_value, now)
    if schedule_type == "once":
        return _parse_once(schedule_value)
    raise InvalidSchedule(f"Unknown schedule type: {schedule_type!r}")
