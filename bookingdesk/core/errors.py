"""
Scheduling error taxonomy.

Every error carries the HTTP status an API layer should answer with.
User-correctable problems map to 4xx; store and downstream failures to 500.
"""

from typing import Optional


class BookingDeskError(Exception):
    """Base class for all scheduling errors."""

    status_code: int = 500
    code: str = "internal"
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert to error response body."""
        return {"error": self.code, "detail": self.message}


class InvalidPayload(BookingDeskError):
    """Missing or malformed required fields."""

    status_code = 400
    code = "invalid_payload"
    default_message = "Invalid payload"


class InvalidTimestamp(BookingDeskError):
    """Timestamp cannot be parsed or is not a real local time."""

    status_code = 400
    code = "invalid_timestamp"
    default_message = "Invalid timestamp"


class InvalidTimeZone(BookingDeskError):
    """Tenant has no usable time zone configured."""

    status_code = 400
    code = "invalid_timezone"
    default_message = "Business time zone is not configured"


class PastTimeRejected(BookingDeskError):
    """Requested appointment time is not in the future."""

    status_code = 400
    code = "past_time"
    default_message = "Appointment time must be in the future"


class InvalidStatus(BookingDeskError):
    """Requested status is unknown or not reachable from the current one."""

    status_code = 400
    code = "invalid_status"
    default_message = "Invalid status"


class Forbidden(BookingDeskError):
    """Caller role is not allowed to perform the operation."""

    status_code = 403
    code = "forbidden"
    default_message = "Only the owner can perform this action"


class NotFound(BookingDeskError):
    """Referenced record is absent or belongs to another tenant."""

    status_code = 404
    code = "not_found"
    default_message = "Not found"


class SlotFullyBooked(BookingDeskError):
    """At least one slot in the requested range is at capacity."""

    status_code = 409
    code = "slot_fully_booked"
    default_message = "Selected time slot is fully booked"


class Internal(BookingDeskError):
    """Store or downstream failure."""


class StoreError(Exception):
    """Raised by a SchedulingStore when a read or write fails."""
    pass
