"""
Appointment lifecycle.

Status moves one way out of "scheduled" (to completed, no_show or
cancelled). Archival is a separate axis: archived_at is stamped on old
cancelled/no-show appointments and hides them from upcoming lists only.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Union
from uuid import UUID

from bookingdesk.config import get_settings
from bookingdesk.core.errors import InvalidStatus, NotFound
from bookingdesk.core.scans import ScanSummary, load_tenants
from bookingdesk.core.scheduling.timezones import utcnow
from bookingdesk.core.store import SchedulingStore, StoreFactory
from bookingdesk.core.tenancy import AppointmentSettings
from bookingdesk.models.database import Appointment, AppointmentStatus

logger = logging.getLogger(__name__)

EXPLICIT_TARGETS = frozenset({
    AppointmentStatus.COMPLETED,
    AppointmentStatus.NO_SHOW,
    AppointmentStatus.CANCELLED,
})


def parse_status(value: Union[AppointmentStatus, str, None]) -> AppointmentStatus:
    """Coerce a status value, rejecting unknown ones with InvalidStatus."""
    if isinstance(value, AppointmentStatus):
        return value
    try:
        return AppointmentStatus(value)
    except ValueError:
        raise InvalidStatus(f"Unknown status: {value}")


def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    """Only scheduled appointments move, and only to an explicit target."""
    return current == AppointmentStatus.SCHEDULED and target in EXPLICIT_TARGETS


async def update_status(
    store: SchedulingStore,
    tenant_id: UUID,
    appointment_id: UUID,
    status: Union[AppointmentStatus, str],
) -> Appointment:
    """Apply an explicit status change.

    Args:
        store: Open unit of work
        tenant_id: Caller's tenant
        appointment_id: Appointment to update
        status: "completed", "no_show" or "cancelled"

    Returns:
        The updated appointment

    Raises:
        InvalidStatus: Unknown target, or appointment is no longer scheduled
        NotFound: Appointment absent or owned by another tenant
    """
    target = parse_status(status)
    if target not in EXPLICIT_TARGETS:
        raise InvalidStatus(f"Cannot set status to {target.value}")

    appointment = await store.get_appointment(tenant_id, appointment_id)
    if appointment is None:
        raise NotFound("Appointment not found")

    if not can_transition(appointment.status, target):
        raise InvalidStatus(
            f"Cannot change status from {appointment.status.value} to {target.value}"
        )

    appointment.status = target
    await store.save_appointment(appointment)
    await store.commit()

    logger.info(f"Appointment {appointment_id} marked {target.value}")
    return appointment


# === Queries ===

async def list_upcoming(
    store: SchedulingStore,
    tenant_id: UUID,
    now: Optional[datetime] = None,
) -> list[Appointment]:
    """Scheduled, unarchived appointments from now on, soonest first."""
    return await store.list_upcoming(tenant_id, now or utcnow())


async def list_history(store: SchedulingStore, tenant_id: UUID) -> list[Appointment]:
    """All appointments: scheduled ones first, then the rest, each newest first."""
    appointments = await store.list_history(tenant_id)
    scheduled = [a for a in appointments if a.status == AppointmentStatus.SCHEDULED]
    others = [a for a in appointments if a.status != AppointmentStatus.SCHEDULED]
    return scheduled + others


async def next_for_customer(
    store: SchedulingStore,
    tenant_id: UUID,
    customer_id: UUID,
    now: Optional[datetime] = None,
) -> Optional[Appointment]:
    """The customer's next scheduled appointment, if any."""
    return await store.next_for_customer(tenant_id, customer_id, now or utcnow())


# === Scans ===

class NoShowScanner:
    """Marks scheduled appointments as no_show once their grace period ends."""

    name = "no_show"

    def __init__(
        self,
        store_factory: StoreFactory,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store_factory = store_factory
        self.clock = clock or utcnow

    async def run(self, now: Optional[datetime] = None) -> ScanSummary:
        now = now or self.clock()
        summary = ScanSummary(self.name)

        for tenant in await load_tenants(self.store_factory):
            summary.processed += 1
            grace = AppointmentSettings.from_stored(tenant.appointment_settings).no_show_grace_minutes
            cutoff = now - timedelta(minutes=grace)

            try:
                async with self.store_factory() as store:
                    marked = await store.mark_no_shows(tenant.id, cutoff)
                    await store.commit()
            except Exception as e:
                summary.record_failure(tenant.id)
                logger.error(f"No-show scan failed for tenant {tenant.id}: {e}", exc_info=True)
                continue

            if marked:
                logger.info(f"Auto-marked {marked} appointment(s) as no_show for tenant {tenant.id}")
            summary.changed += marked

        summary.log(logger)
        return summary


class ArchivalScanner:
    """Stamps archived_at on cancelled/no-show appointments past retention."""

    name = "archival"

    def __init__(
        self,
        store_factory: StoreFactory,
        clock: Optional[Callable[[], datetime]] = None,
        retention_days: Optional[int] = None,
    ):
        self.store_factory = store_factory
        self.clock = clock or utcnow
        self.retention_days = (
            retention_days if retention_days is not None else get_settings().archive_after_days
        )

    async def run(self, now: Optional[datetime] = None) -> ScanSummary:
        now = now or self.clock()
        cutoff = now - timedelta(days=self.retention_days)
        summary = ScanSummary(self.name)

        for tenant in await load_tenants(self.store_factory):
            summary.processed += 1
            try:
                async with self.store_factory() as store:
                    archived = await store.archive_stale(tenant.id, cutoff, now)
                    await store.commit()
            except Exception as e:
                summary.record_failure(tenant.id)
                logger.error(f"Archival scan failed for tenant {tenant.id}: {e}", exc_info=True)
                continue

            summary.changed += archived

        summary.log(logger)
        return summary
