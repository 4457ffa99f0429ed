"""UTC day-key helpers (``YYYY-MM-DD``)."""

from __future__ import annotations

import re
from datetime import UTC, date, datetime, timedelta

DAY_KEY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

MAX_DAY_RANGE = 400


def to_utc_day_key(moment: datetime | float | int) -> str:
    """Return the UTC day key of a datetime or epoch-milliseconds value."""
    if isinstance(moment, datetime):
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=UTC)
        return moment.astimezone(UTC).strftime("%Y-%m-%d")
    return datetime.fromtimestamp(float(moment) / 1000, tz=UTC).strftime("%Y-%m-%d")


def parse_day_key(day_key: str) -> date | None:
    """Parse a day key, returning None for anything that is not a real date."""
    if not isinstance(day_key, str) or not DAY_KEY_PATTERN.match(day_key):
        return None
    try:
        return date.fromisoformat(day_key)
    except ValueError:
        return None


def is_valid_day_key(day_key: str) -> bool:
    return parse_day_key(day_key) is not None


def add_days(day_key: str, days: int) -> str:
    """Shift a day key by a number of days.

    Raises:
        ValueError: If ``day_key`` is not a valid day key
    """
    parsed = parse_day_key(day_key)
    if parsed is None:
        raise ValueError(f"Invalid day key: {day_key!r}")
    return (parsed + timedelta(days=days)).isoformat()


def day_keys_inclusive(start_day: str, end_day: str) -> list[str]:
    """List every day key from ``start_day`` to ``end_day`` inclusive.

    Args:
        start_day: First day
        end_day: Last day

    Returns:
        Ordered day keys

    Raises:
        ValueError: For invalid keys, inverted ranges and ranges over 400 days
    """
    start = parse_day_key(start_day)
    end = parse_day_key(end_day)
    if start is None or end is None:
        raise ValueError(f"Invalid day range: {start_day!r}..{end_day!r}")
    if end < start:
        raise ValueError(f"Inverted day range: {start_day}..{end_day}")

    span = (end - start).days + 1
    if span > MAX_DAY_RANGE:
        raise ValueError(f"Day range too large: {span} days (max {MAX_DAY_RANGE})")

    return [(start + timedelta(days=offset)).isoformat() for offset in range(span)]


def lookback_start(lookback_days: int, now: datetime | None = None) -> datetime:
    """Return 00:00 UTC of the first day inside a lookback window."""
    now = now or datetime.now(UTC)
    today = now.astimezone(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
    return today - timedelta(days=max(lookback_days, 1) - 1)
