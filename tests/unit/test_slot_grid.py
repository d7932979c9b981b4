"""Tests for the slot grid."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from bookingdesk.core.scheduling.slots import SlotGrid


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def occupant(start: datetime, duration: int) -> SimpleNamespace:
    return SimpleNamespace(appointment_time=start, duration_minutes=duration)


class TestSlotRange:
    """Test slot indices occupied by an interval."""

    @pytest.fixture
    def grid(self):
        return SlotGrid()

    def test_slots_per_day(self, grid):
        """Default grid has 96 slots."""
        assert grid.slots_per_day == 96

    def test_aligned_start(self, grid):
        """13:00 for 30 minutes covers 13:00 and 13:15."""
        assert grid.slot_range(780, 30) == [52, 53]

    def test_partial_slot_counts(self, grid):
        """20 minutes still occupies two slots."""
        assert grid.slot_range(780, 20) == [52, 53]

    def test_unaligned_start_covers_overlap(self, grid):
        """13:05-13:35 overlaps three slots."""
        assert grid.slot_range(785, 30) == [52, 53, 54]

    def test_crossing_midnight(self, grid):
        """Indices continue past 95 into the next day."""
        assert grid.slot_range(1425, 30) == [95, 96]

    def test_full_day(self, grid):
        """A 1440 minute appointment occupies every slot."""
        assert grid.slot_range(0, 1440) == list(range(96))

    @pytest.mark.parametrize("size", [0, -15, 7])
    def test_invalid_slot_size(self, size):
        """Slot size must divide a day."""
        with pytest.raises(ValueError):
            SlotGrid(size)

    def test_custom_slot_size(self):
        """30 minute grid has 48 slots."""
        grid = SlotGrid(30)
        assert grid.slots_per_day == 48
        assert grid.slot_range(780, 45) == [26, 27]


class TestBuildLoad:
    """Test slot load aggregation."""

    @pytest.fixture
    def grid(self):
        return SlotGrid()

    @pytest.mark.parametrize("duration", [15, 30, 60])
    def test_non_overlapping_load_is_one(self, grid, duration):
        """Back-to-back appointments give every occupied slot a load of 1."""
        day = utc(2024, 6, 1)
        appointments = [
            occupant(day + timedelta(hours=9, minutes=i * duration), duration)
            for i in range(5)
        ]

        load = grid.build_load(appointments, day_start=day)

        assert load
        assert set(load.values()) == {1}
        assert len(load) == 5 * (duration // 15)

    def test_overlapping_adds_up(self, grid):
        """Shared slots count both appointments."""
        day = utc(2024, 6, 1)
        load = grid.build_load(
            [occupant(utc(2024, 6, 1, 13, 0), 30), occupant(utc(2024, 6, 1, 13, 15), 30)],
            day_start=day,
        )

        assert load == {52: 1, 53: 2, 54: 1}

    def test_previous_day_spill_over(self, grid):
        """Yesterday's late appointment lands on negative and low indices."""
        load = grid.build_load(
            [occupant(utc(2024, 5, 31, 23, 45), 30)],
            day_start=utc(2024, 6, 1),
        )

        assert load == {-1: 1, 0: 1}

    def test_without_day_start_uses_minute_of_day(self, grid):
        """Each appointment is placed by its own minute of day."""
        load = grid.build_load([occupant(utc(2024, 6, 1, 0, 30), 15)])
        assert load == {2: 1}

    def test_does_not_mutate_input(self, grid):
        """Pure aggregation."""
        appointment = occupant(utc(2024, 6, 1, 9, 0), 30)
        grid.build_load([appointment], day_start=utc(2024, 6, 1))
        assert appointment.duration_minutes == 30

    def test_load_by_minute_keeps_the_day(self, grid):
        """Re-keyed by start minute, out-of-day indices dropped."""
        assert grid.load_by_minute({-1: 1, 0: 2, 52: 1, 96: 1}) == {0: 2, 780: 1}
