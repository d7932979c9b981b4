"""
Capacity planning on top of the slot grid.

Capacity is enforced per slot rather than per appointment so overlapping
appointments of different lengths contend for the time they share. The
check is all-or-nothing: one saturated slot blocks the whole range.
"""

from typing import Iterable, Optional

from bookingdesk.core.errors import SlotFullyBooked
from bookingdesk.core.scheduling.slots import MINUTES_PER_DAY, SlotGrid


def is_range_free(
    load: dict[int, int],
    required_slots: Iterable[int],
    max_per_slot: int,
) -> bool:
    """True iff every required slot has load strictly below max_per_slot."""
    return all(load.get(index, 0) < max_per_slot for index in required_slots)


def daily_availability(
    load: dict[int, int],
    duration_minutes: int,
    max_per_slot: int,
    grid: Optional[SlotGrid] = None,
) -> dict[int, bool]:
    """Bookable starts for a day.

    Candidate starts run on the slot cadence from minute 0 up to
    1440 - duration_minutes. Read-only: the load map is not modified.

    Returns:
        Mapping of start minute to whether the full range is free
    """
    grid = grid or SlotGrid()
    availability: dict[int, bool] = {}

    last_start = MINUTES_PER_DAY - duration_minutes
    for start in range(0, last_start + 1, grid.slot_minutes):
        required = grid.slot_range(start, duration_minutes)
        availability[start] = is_range_free(load, required, max_per_slot)

    return availability


class CapacityPlanner:
    """Answers capacity questions for one slot grid."""

    def __init__(self, grid: Optional[SlotGrid] = None):
        self.grid = grid or SlotGrid()

    def is_range_free(
        self,
        load: dict[int, int],
        required_slots: Iterable[int],
        max_per_slot: int,
    ) -> bool:
        return is_range_free(load, required_slots, max_per_slot)

    def daily_availability(
        self,
        load: dict[int, int],
        duration_minutes: int,
        max_per_slot: int,
    ) -> dict[int, bool]:
        return daily_availability(load, duration_minutes, max_per_slot, self.grid)

    def check(
        self,
        load: dict[int, int],
        start_minute: int,
        duration_minutes: int,
        max_per_slot: int,
    ) -> list[int]:
        """Ensure a range can take one more appointment.

        Returns:
            The required slot indices

        Raises:
            SlotFullyBooked: If any required slot is at capacity
        """
        required = self.grid.slot_range(start_minute, duration_minutes)
        if not is_range_free(load, required, max_per_slot):
            raise SlotFullyBooked()
        return required
