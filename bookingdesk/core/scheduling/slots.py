"""
Slot grid for capacity accounting.

A UTC day is cut into fixed-width slots (15 minutes by default, so slots
0..95). An appointment occupies every slot its interval overlaps, even
partially. Indices are relative to a reference day start, so an interval
that crosses midnight continues at 96, 97, ... (and appointments from the
previous day that spill over land on negative indices).
"""

from datetime import datetime
from typing import Iterable, Optional, Protocol

from bookingdesk.core.scheduling.timezones import as_utc, minutes_of_day

MINUTES_PER_DAY = 1440


class Occupant(Protocol):
    """Anything with a UTC start and a duration (e.g. an Appointment)."""

    appointment_time: datetime
    duration_minutes: int


class SlotGrid:
    """Fixed-width partition of a day into capacity slots."""

    def __init__(self, slot_minutes: int = 15):
        if slot_minutes <= 0 or MINUTES_PER_DAY % slot_minutes:
            raise ValueError(f"slot_minutes must divide {MINUTES_PER_DAY}, got {slot_minutes}")
        self.slot_minutes = slot_minutes

    @property
    def slots_per_day(self) -> int:
        return MINUTES_PER_DAY // self.slot_minutes

    def slot_start(self, index: int) -> int:
        """Start minute of a slot relative to the reference day."""
        return index * self.slot_minutes

    def slot_range(self, start_minute: int, duration_minutes: int) -> list[int]:
        """Contiguous slot indices occupied by [start, start + duration).

        For slot-aligned starts this is ceil(duration / slot) slots beginning
        at floor(start / slot).
        """
        first = start_minute // self.slot_minutes
        end_minute = start_minute + duration_minutes
        last = -(-end_minute // self.slot_minutes) - 1
        return list(range(first, max(last, first) + 1))

    def build_load(
        self,
        appointments: Iterable[Occupant],
        day_start: Optional[datetime] = None,
    ) -> dict[int, int]:
        """Count appointments per slot.

        Args:
            appointments: Scheduled appointments to aggregate
            day_start: Reference midnight (UTC). When omitted, each
                appointment is placed by its own minute of day.

        Returns:
            Mapping of slot index to number of occupying appointments
        """
        load: dict[int, int] = {}

        for appointment in appointments:
            if day_start is None:
                offset = minutes_of_day(appointment.appointment_time)
            else:
                delta = as_utc(appointment.appointment_time) - as_utc(day_start)
                offset = int(delta.total_seconds() // 60)

            for index in self.slot_range(offset, appointment.duration_minutes):
                load[index] = load.get(index, 0) + 1

        return load

    def load_by_minute(self, load: dict[int, int]) -> dict[int, int]:
        """Re-key a load map by slot start minute, keeping only this day."""
        return {
            self.slot_start(index): count
            for index, count in sorted(load.items())
            if 0 <= index < self.slots_per_day
        }
