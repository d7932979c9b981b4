"""
Data-access seam for the scheduling core.

The booking engine, scans and messaging code only talk to a
SchedulingStore. One store instance wraps one unit of work (one request or
one tenant within a scan); commit() ends it.

Implementations must honor two guarantees the core relies on:
- lock_days() serializes capacity check-then-write per (tenant, day)
  across processes until commit() or rollback().
- add_automation_log() never creates a second row for the same
  (appointment, rule) pair.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from datetime import date, datetime
from typing import Callable, Optional, Sequence
from uuid import UUID

from bookingdesk.models.database import (
    Appointment,
    AppointmentService,
    AutomationRule,
    Combo,
    Customer,
    Message,
    Service,
    Tenant,
)


class SchedulingStore(ABC):
    """Persistence operations used by the scheduling core."""

    # === Unit of work ===

    @abstractmethod
    async def lock_days(self, tenant_id: UUID, days: Sequence[date]) -> None:
        """Hold exclusive (tenant, day) locks until the unit of work ends."""

    @abstractmethod
    async def commit(self) -> None:
        """Commit the unit of work."""

    @abstractmethod
    async def rollback(self) -> None:
        """Discard uncommitted changes."""

    # === Tenants ===

    @abstractmethod
    async def get_tenant(self, tenant_id: UUID) -> Optional[Tenant]:
        pass

    @abstractmethod
    async def list_tenants(self) -> list[Tenant]:
        pass

    @abstractmethod
    async def save_tenant_settings(self, tenant_id: UUID, settings: dict) -> None:
        pass

    # === Customers ===

    @abstractmethod
    async def get_customer(
        self,
        customer_id: UUID,
        tenant_id: Optional[UUID] = None,
    ) -> Optional[Customer]:
        """Get a customer, optionally requiring it to belong to tenant_id."""

    @abstractmethod
    async def find_customer_by_phone(self, tenant_id: UUID, phone: str) -> Optional[Customer]:
        pass

    @abstractmethod
    async def add_customer(
        self,
        tenant_id: UUID,
        phone: str,
        name: Optional[str] = None,
    ) -> Customer:
        """Create a customer. Returns the existing row on (tenant, phone) conflict."""

    @abstractmethod
    async def set_customer_name(self, customer: Customer, name: str) -> None:
        pass

    # === Catalog ===

    @abstractmethod
    async def get_services(self, tenant_id: UUID, service_ids: Sequence[UUID]) -> list[Service]:
        """Services of this tenant among service_ids (any order, missing ones omitted)."""

    @abstractmethod
    async def get_combo(self, tenant_id: UUID, combo_id: UUID) -> Optional[Combo]:
        pass

    # === Appointments ===

    @abstractmethod
    async def get_appointment(self, tenant_id: UUID, appointment_id: UUID) -> Optional[Appointment]:
        pass

    @abstractmethod
    async def list_scheduled_between(
        self,
        tenant_id: UUID,
        start: datetime,
        end: datetime,
        exclude_id: Optional[UUID] = None,
    ) -> list[Appointment]:
        """Scheduled appointments with start <= appointment_time < end."""

    @abstractmethod
    async def add_appointment(self, appointment: Appointment) -> Appointment:
        pass

    @abstractmethod
    async def add_line_items(
        self,
        appointment: Appointment,
        items: Sequence[AppointmentService],
    ) -> None:
        pass

    @abstractmethod
    async def discard_appointment(self, appointment: Appointment) -> None:
        """Remove an appointment whose creation could not be completed."""

    @abstractmethod
    async def save_appointment(self, appointment: Appointment) -> None:
        pass

    @abstractmethod
    async def list_upcoming(self, tenant_id: UUID, now: datetime) -> list[Appointment]:
        """Scheduled, unarchived appointments at or after now, soonest first."""

    @abstractmethod
    async def list_history(self, tenant_id: UUID) -> list[Appointment]:
        """All appointments including archived ones, newest first."""

    @abstractmethod
    async def next_for_customer(
        self,
        tenant_id: UUID,
        customer_id: UUID,
        now: datetime,
    ) -> Optional[Appointment]:
        pass

    @abstractmethod
    async def list_due_appointments(
        self,
        tenant_id: UUID,
        window_start: datetime,
        window_end: datetime,
    ) -> list[Appointment]:
        """Scheduled appointments with window_start <= appointment_time <= window_end."""

    @abstractmethod
    async def mark_no_shows(self, tenant_id: UUID, cutoff: datetime) -> int:
        """Move scheduled appointments starting before cutoff to no_show."""

    @abstractmethod
    async def archive_stale(self, tenant_id: UUID, cutoff: datetime, now: datetime) -> int:
        """Stamp archived_at on unarchived cancelled/no-show appointments before cutoff."""

    # === Automation ===

    @abstractmethod
    async def list_rules(self, tenant_id: UUID, enabled_only: bool = False) -> list[AutomationRule]:
        pass

    @abstractmethod
    async def get_rule(self, tenant_id: UUID, rule_id: UUID) -> Optional[AutomationRule]:
        pass

    @abstractmethod
    async def add_rule(self, rule: AutomationRule) -> AutomationRule:
        pass

    @abstractmethod
    async def save_rule(self, rule: AutomationRule) -> None:
        pass

    @abstractmethod
    async def has_automation_log(self, appointment_id: UUID, rule_id: UUID) -> bool:
        pass

    @abstractmethod
    async def add_automation_log(self, appointment_id: UUID, rule_id: UUID) -> bool:
        """Record a firing. Returns False if the pair was already logged."""

    @abstractmethod
    async def delete_automation_logs(self, appointment_id: UUID) -> int:
        pass

    # === Messages ===

    @abstractmethod
    async def get_message(self, message_id: UUID) -> Optional[Message]:
        pass

    @abstractmethod
    async def add_message(self, message: Message) -> Message:
        pass

    @abstractmethod
    async def save_message(self, message: Message) -> None:
        pass

    @abstractmethod
    async def list_retryable_messages(self, max_retries: int, limit: int) -> list[Message]:
        """Failed outbound messages with retry_count < max_retries, oldest first."""

    @abstractmethod
    async def release_stale_retries(self, cutoff: datetime) -> int:
        """Put outbound messages retrying since before cutoff back to failed.

        Each released message counts the abandoned attempt in retry_count.
        """


StoreFactory = Callable[[], AbstractAsyncContextManager[SchedulingStore]]
"""Opens one unit of work, e.g. ``async with store_factory() as store``."""
