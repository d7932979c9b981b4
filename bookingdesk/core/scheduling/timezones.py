"""
Time translation between tenant wall-clock time and canonical UTC.

Appointments are stored and compared in UTC only. Tenant-local strings are
produced for outbound message text and nothing else.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from bookingdesk.core.errors import InvalidTimestamp, InvalidTimeZone, PastTimeRejected

logger = logging.getLogger(__name__)

# "01 Jun, 09:00 AM"
CONFIRMATION_FORMAT = "%d %b, %I:%M %p"

# "2024-06-01 09:00 AM"
REMINDER_FORMAT = "%Y-%m-%d %I:%M %p"


def utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def get_zone(tz_name: Optional[str]) -> ZoneInfo:
    """Resolve an IANA zone name.

    Raises:
        InvalidTimeZone: If the name is empty or unknown
    """
    if not tz_name:
        raise InvalidTimeZone()
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        raise InvalidTimeZone(f"Unknown time zone: {tz_name}")


def to_utc(local_iso: str, tz_name: Optional[str]) -> datetime:
    """Interpret a wall-clock timestamp in the tenant's zone and convert to UTC.

    Timestamps that already carry an offset (or "Z") are absolute instants
    and are converted as-is.

    Args:
        local_iso: ISO 8601 timestamp, e.g. "2024-06-01T09:00"
        tz_name: Tenant IANA time zone

    Returns:
        Timezone-aware UTC datetime

    Raises:
        InvalidTimeZone: Tenant has no usable zone
        InvalidTimestamp: Unparsable, or skipped by a DST transition
    """
    zone = get_zone(tz_name)

    if not isinstance(local_iso, str) or not local_iso.strip():
        raise InvalidTimestamp("Appointment time is required")

    try:
        parsed = datetime.fromisoformat(local_iso.strip())
    except ValueError:
        raise InvalidTimestamp(f"Cannot parse timestamp: {local_iso}")

    if parsed.tzinfo is not None:
        return parsed.astimezone(timezone.utc)

    local = parsed.replace(tzinfo=zone)
    instant = local.astimezone(timezone.utc)

    # Wall-clock times inside a DST gap do not survive the round trip
    if instant.astimezone(zone).replace(tzinfo=None) != parsed:
        raise InvalidTimestamp(f"{local_iso} does not exist in {tz_name}")

    return instant


def format_local(
    instant: datetime,
    tz_name: Optional[str],
    fmt: str = CONFIRMATION_FORMAT,
) -> str:
    """Render a UTC instant in the tenant's zone for message text.

    Falls back to UTC when the tenant has no usable zone.
    """
    try:
        zone = get_zone(tz_name)
    except InvalidTimeZone:
        if tz_name:
            logger.warning(f"Unknown time zone {tz_name!r}, formatting in UTC")
        zone = ZoneInfo("UTC")

    return as_utc(instant).astimezone(zone).strftime(fmt)


def as_utc(instant: datetime) -> datetime:
    """Normalize a datetime to aware UTC. Naive values are taken as UTC."""
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def ensure_future(instant: datetime, now: datetime) -> None:
    """Reject appointment times at or before now.

    Raises:
        PastTimeRejected: If instant <= now
    """
    if as_utc(instant) <= as_utc(now):
        raise PastTimeRejected()


def day_start(value: datetime | date) -> datetime:
    """Midnight UTC of the instant's (or date's) UTC calendar day."""
    if isinstance(value, datetime):
        value = as_utc(value).date()
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def minutes_of_day(instant: datetime) -> int:
    """Minutes since midnight UTC."""
    instant = as_utc(instant)
    return instant.hour * 60 + instant.minute


def days_spanned(start: datetime, duration_minutes: int) -> list[date]:
    """UTC calendar days touched by [start, start + duration)."""
    start = as_utc(start)
    end = start + timedelta(minutes=max(duration_minutes, 1)) - timedelta(microseconds=1)

    days = []
    current = start.date()
    while current <= end.date():
        days.append(current)
        current += timedelta(days=1)
    return days
