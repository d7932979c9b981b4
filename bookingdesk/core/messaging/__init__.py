"""
Messaging Module

Outbound message log with delivery tracking, and inbound message intake.
"""

from bookingdesk.core.messaging.outbox import Outbox, dispatch
from bookingdesk.core.messaging.inbound import record_inbound

__all__ = [
    "Outbox",
    "dispatch",
    "record_inbound",
]
