"""Tests for tenant time translation."""

from datetime import date, datetime, timezone

import pytest

from bookingdesk.core.errors import InvalidTimestamp, InvalidTimeZone, PastTimeRejected
from bookingdesk.core.scheduling.timezones import (
    REMINDER_FORMAT,
    day_start,
    days_spanned,
    ensure_future,
    format_local,
    minutes_of_day,
    to_utc,
)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestToUtc:
    """Test local wall-clock to UTC conversion."""

    def test_new_york_summer(self):
        """EDT is UTC-4."""
        assert to_utc("2024-06-01T09:00", "America/New_York") == utc(2024, 6, 1, 13, 0)

    def test_new_york_winter(self):
        """EST is UTC-5."""
        assert to_utc("2024-01-15T09:00", "America/New_York") == utc(2024, 1, 15, 14, 0)

    def test_explicit_offset_is_absolute(self):
        """Timestamps with an offset ignore the tenant zone."""
        assert to_utc("2024-06-01T13:15:00Z", "Asia/Kolkata") == utc(2024, 6, 1, 13, 15)
        assert to_utc("2024-06-01T18:45:00+05:30", "America/New_York") == utc(2024, 6, 1, 13, 15)

    def test_result_is_aware_utc(self):
        """Result always carries UTC tzinfo."""
        result = to_utc("2024-06-01T09:00", "Europe/London")
        assert result.utcoffset().total_seconds() == 0

    @pytest.mark.parametrize("tz_name", [None, ""])
    def test_missing_zone(self, tz_name):
        """Tenant without a zone cannot book."""
        with pytest.raises(InvalidTimeZone):
            to_utc("2024-06-01T09:00", tz_name)

    def test_unknown_zone(self):
        """Unknown zone names are rejected."""
        with pytest.raises(InvalidTimeZone):
            to_utc("2024-06-01T09:00", "Mars/Olympus_Mons")

    @pytest.mark.parametrize("value", ["", "   ", "tomorrow at nine", "2024-13-01T09:00"])
    def test_unparsable(self, value):
        """Garbage input is an InvalidTimestamp."""
        with pytest.raises(InvalidTimestamp):
            to_utc(value, "America/New_York")

    def test_dst_gap_rejected(self):
        """02:30 does not exist on the spring-forward day."""
        with pytest.raises(InvalidTimestamp):
            to_utc("2024-03-10T02:30", "America/New_York")

    def test_dst_overlap_accepted(self):
        """Ambiguous fall-back times resolve to the first occurrence."""
        assert to_utc("2024-11-03T01:30", "America/New_York") == utc(2024, 11, 3, 5, 30)


class TestFormatLocal:
    """Test rendering for message text."""

    def test_confirmation_format(self):
        """Default format is day, month, 12-hour time."""
        assert format_local(utc(2024, 6, 1, 13, 0), "America/New_York") == "01 Jun, 09:00 AM"

    def test_reminder_format(self):
        """Reminder format includes the full date."""
        text = format_local(utc(2024, 6, 1, 20, 30), "America/New_York", REMINDER_FORMAT)
        assert text == "2024-06-01 04:30 PM"

    def test_falls_back_to_utc(self):
        """Tenants without a zone see UTC."""
        assert format_local(utc(2024, 6, 1, 13, 0), None) == "01 Jun, 01:00 PM"

    def test_naive_input_taken_as_utc(self):
        """Naive datetimes are treated as UTC."""
        assert format_local(datetime(2024, 6, 1, 13, 0), "UTC") == "01 Jun, 01:00 PM"


class TestHelpers:
    """Test small UTC helpers."""

    def test_ensure_future_rejects_now(self):
        """A time equal to now is in the past."""
        now = utc(2024, 6, 1, 12, 0)
        with pytest.raises(PastTimeRejected):
            ensure_future(now, now)

    def test_ensure_future_accepts_later(self):
        """One second later is fine."""
        ensure_future(utc(2024, 6, 1, 12, 0, 1), utc(2024, 6, 1, 12, 0))

    def test_minutes_of_day(self):
        """Minutes since UTC midnight."""
        assert minutes_of_day(utc(2024, 6, 1, 13, 15)) == 795

    def test_day_start(self):
        """Midnight UTC of the instant's day."""
        assert day_start(utc(2024, 6, 1, 23, 59)) == utc(2024, 6, 1)
        assert day_start(date(2024, 6, 1)) == utc(2024, 6, 1)

    def test_days_spanned_single_day(self):
        """An appointment ending exactly at midnight stays on one day."""
        assert days_spanned(utc(2024, 6, 1, 23, 30), 30) == [date(2024, 6, 1)]

    def test_days_spanned_crosses_midnight(self):
        """Crossing midnight touches both days."""
        assert days_spanned(utc(2024, 6, 1, 23, 45), 30) == [date(2024, 6, 1), date(2024, 6, 2)]
