"""Beijing (UTC+8) civil-day helpers.

Stats buckets are Beijing civil days regardless of where the process runs.
China has not observed DST since 1991, so a fixed +8h offset is exact and no
tz database lookup is needed.

All functions here are pure. Naive datetimes are interpreted as UTC; every
instant returned is a UTC-aware datetime.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Tuple

from recruit_stats.services.stats.types import StatsError

BEIJING_OFFSET = timedelta(hours=8)
BEIJING_TZ = timezone(BEIJING_OFFSET, name="Asia/Shanghai")

_ONE_DAY = timedelta(days=1)
_ONE_MS = timedelta(milliseconds=1)
_DATE_KEY_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")


class InvalidDateFormat(StatsError, ValueError):
    """Raised when a date key is not a valid YYYY-MM-DD calendar date."""


def _as_utc(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def to_beijing(instant: datetime) -> datetime:
    """Return the same instant expressed in Beijing local time."""
    return _as_utc(instant).astimezone(BEIJING_TZ)


def bucket_date(instant: datetime) -> date:
    """Beijing civil date containing ``instant``."""
    return to_beijing(instant).date()


def bucket_start(day: date) -> datetime:
    """UTC instant of Beijing midnight at the start of ``day``."""
    return datetime.combine(day, time.min, tzinfo=BEIJING_TZ).astimezone(timezone.utc)


def day_bounds(instant: datetime) -> Tuple[datetime, datetime]:
    """Return ``(start, end)`` of the Beijing day containing ``instant``.

    ``start`` is 00:00:00.000 and ``end`` is 23:59:59.999 Beijing time, both
    as UTC instants.

    Example:
        2026-01-07T02:30:00Z is 10:30 in Beijing, so the bounds are
        2026-01-06T16:00:00Z .. 2026-01-07T15:59:59.999Z.
    """
    start = bucket_start(bucket_date(instant))
    return start, start + _ONE_DAY - _ONE_MS


def date_key(instant: datetime) -> str:
    """Beijing civil date of ``instant`` as ``YYYY-MM-DD``."""
    return bucket_date(instant).isoformat()


def parse_date_key(value: str) -> datetime:
    """Parse ``YYYY-MM-DD`` into the UTC instant of that date's Beijing midnight.

    Raises:
        InvalidDateFormat: if the string is not a real calendar date in that format.
    """
    if not isinstance(value, str):
        raise InvalidDateFormat(f"Date key must be a string, got {type(value).__name__}")

    match = _DATE_KEY_RE.match(value.strip())
    if match is None:
        raise InvalidDateFormat(f"Invalid date key {value!r}, expected YYYY-MM-DD")

    year, month, day = (int(part) for part in match.groups())
    try:
        parsed = date(year, month, day)
    except ValueError as exc:
        raise InvalidDateFormat(f"Invalid date key {value!r}: {exc}") from exc
    return bucket_start(parsed)


def next_hour_occurrence(hour: int, from_instant: datetime) -> datetime:
    """Next instant strictly after ``from_instant`` at Beijing ``hour:00:00``.

    When ``from_instant`` is exactly on that hour the following day's
    occurrence is returned, so repeated scheduling always moves forward.
    """
    if not 0 <= hour <= 23:
        raise ValueError(f"hour must be in 0-23, got {hour}")

    local = to_beijing(from_instant)
    candidate = local.replace(hour=hour, minute=0, second=0, microsecond=0)
    if candidate <= local:
        candidate += _ONE_DAY
    return candidate.astimezone(timezone.utc)

