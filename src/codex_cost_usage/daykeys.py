"""Calendar day keys and scan-window ranges."""

from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta, tzinfo

from .ingestion.errors import InvalidDayKeyError

DAY_KEY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
FILENAME_DATE_PATTERN = re.compile(r"(\d{4}-\d{2}-\d{2})")


class DayKey(str):
    """A `YYYY-MM-DD` calendar day; lexicographic order is calendar order."""

    __slots__ = ()

    def __new__(cls, value: str) -> "DayKey":
        if isinstance(value, DayKey):
            return value
        if not isinstance(value, str) or DAY_KEY_PATTERN.match(value) is None:
            raise InvalidDayKeyError(f"Invalid day key: {value!r}. Expected YYYY-MM-DD.")
        try:
            date.fromisoformat(value)
        except ValueError as exc:
            raise InvalidDayKeyError(f"Invalid day key: {value!r} is not a calendar date.") from exc
        return super().__new__(cls, value)

    def to_date(self) -> date:
        """Return the calendar date for this key."""
        return date.fromisoformat(self)


def day_key(value: date | datetime, timezone: tzinfo | None = None) -> DayKey:
    """Return the day key of a date, or of a datetime in the given zone (local when None)."""
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.astimezone()
        value = aware.astimezone(timezone).date()
    return DayKey(f"{value.year:04d}-{value.month:02d}-{value.day:02d}")


def parse_day_key(key: str) -> date | None:
    """Parse a day key back to a date; None when the key is malformed."""
    try:
        return DayKey(key).to_date()
    except ValueError:
        return None


def is_in_range(key: str, since: str, until: str) -> bool:
    """Return True when `since <= key <= until`."""
    return since <= key <= until


def iter_day_keys(since: DayKey, until: DayKey) -> Iterator[DayKey]:
    """Yield every day key from `since` to `until` inclusive."""
    current = since.to_date()
    last = until.to_date()
    while current <= last:
        yield day_key(current)
        current += timedelta(days=1)


def day_key_from_timestamp(value: str, timezone: tzinfo | None = None) -> DayKey | None:
    """Resolve an ISO-8601 event timestamp to the day key in the selected zone.

    Naive timestamps are treated as UTC, the same way session logs are written.
    Returns None for anything that does not parse.
    """
    if not value:
        return None
    normalized = value.strip().replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return day_key(parsed, timezone)


def day_key_from_filename(filename: str) -> DayKey | None:
    """Return the first valid `YYYY-MM-DD` found in a filename, if any."""
    for match in FILENAME_DATE_PATTERN.finditer(filename):
        try:
            return DayKey(match.group(1))
        except InvalidDayKeyError:
            continue
    return None


@dataclass(frozen=True)
class DayRange:
    """Requested report window plus the scan window padded by one day on each side."""

    since_key: DayKey
    until_key: DayKey
    scan_since_key: DayKey
    scan_until_key: DayKey

    @classmethod
    def from_dates(
        cls,
        since: date | datetime,
        until: date | datetime,
        timezone: tzinfo | None = None,
    ) -> "DayRange":
        """Build a range from host dates, padding the scan window by one day."""
        since_day = day_key(since, timezone).to_date()
        until_day = day_key(until, timezone).to_date()
        return cls(
            since_key=day_key(since_day),
            until_key=day_key(until_day),
            scan_since_key=day_key(since_day - timedelta(days=1)),
            scan_until_key=day_key(until_day + timedelta(days=1)),
        )

    def contains(self, key: str) -> bool:
        """Return True when `key` lies in the exact requested window."""
        return is_in_range(key, self.since_key, self.until_key)

    def scan_contains(self, key: str) -> bool:
        """Return True when `key` lies in the padded scan window."""
        return is_in_range(key, self.scan_since_key, self.scan_until_key)
