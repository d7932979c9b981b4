"""
Scheduling Module

Slot grid, capacity planning, time translation, booking and the
appointment lifecycle.
"""

from bookingdesk.core.scheduling.timezones import (
    CONFIRMATION_FORMAT,
    REMINDER_FORMAT,
    ensure_future,
    format_local,
    to_utc,
    utcnow,
)
from bookingdesk.core.scheduling.slots import SlotGrid, MINUTES_PER_DAY
from bookingdesk.core.scheduling.capacity import (
    CapacityPlanner,
    daily_availability,
    is_range_free,
)
from bookingdesk.core.scheduling.booking import (
    AvailabilityView,
    BookingEngine,
    BookingOutcome,
    BookingRequest,
    DayLocks,
    get_day_locks,
)
from bookingdesk.core.scheduling.lifecycle import (
    EXPLICIT_TARGETS,
    ArchivalScanner,
    NoShowScanner,
    can_transition,
    list_history,
    list_upcoming,
    next_for_customer,
    update_status,
)

__all__ = [
    # Time
    "CONFIRMATION_FORMAT",
    "REMINDER_FORMAT",
    "ensure_future",
    "format_local",
    "to_utc",
    "utcnow",
    # Slots and capacity
    "SlotGrid",
    "MINUTES_PER_DAY",
    "CapacityPlanner",
    "daily_availability",
    "is_range_free",
    # Booking
    "AvailabilityView",
    "BookingEngine",
    "BookingOutcome",
    "BookingRequest",
    "DayLocks",
    "get_day_locks",
    # Lifecycle
    "EXPLICIT_TARGETS",
    "ArchivalScanner",
    "NoShowScanner",
    "can_transition",
    "list_history",
    "list_upcoming",
    "next_for_customer",
    "update_status",
]
