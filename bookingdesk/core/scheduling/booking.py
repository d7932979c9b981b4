"""
Booking Engine.

Creates and reschedules appointments. The capacity read and the
appointment write form one critical section per (tenant, UTC day): an
in-process lock serializes coroutines and the store's day lock serializes
processes, and both are held until the write is committed.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import AsyncIterator, Callable, Optional, Sequence, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from bookingdesk.config import get_settings
from bookingdesk.core.customers import resolve_customer
from bookingdesk.core.errors import (
    Internal,
    InvalidPayload,
    NotFound,
    SlotFullyBooked,
    StoreError,
)
from bookingdesk.core.messaging.outbox import Outbox
from bookingdesk.core.scheduling.capacity import CapacityPlanner
from bookingdesk.core.scheduling.slots import MINUTES_PER_DAY, SlotGrid
from bookingdesk.core.scheduling.timezones import (
    CONFIRMATION_FORMAT,
    as_utc,
    day_start,
    days_spanned,
    ensure_future,
    format_local,
    minutes_of_day,
    to_utc,
    utcnow,
)
from bookingdesk.core.store import SchedulingStore
from bookingdesk.core.tenancy import AppointmentSettings
from bookingdesk.infra.messaging import MessagingGateway, get_messaging_gateway
from bookingdesk.models.database import (
    Appointment,
    AppointmentService,
    AppointmentStatus,
    Customer,
    Message,
    Tenant,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def confirmation_text(service: str, when: str) -> str:
    return (
        "Your appointment is confirmed.\n\n"
        f"Service: {service}\n"
        f"Date & Time: {when}\n\n"
        "Reply here if you need to reschedule."
    )


def reschedule_text(service: str, when: str) -> str:
    return (
        "Your appointment has been rescheduled.\n\n"
        f"Service: {service}\n"
        f"New time: {when}\n\n"
        "Reply here if you need help."
    )


class BookingRequest(BaseModel):
    """Validated booking payload."""

    phone: str
    name: Optional[str] = None
    appointment_time: str = Field(description="Tenant-local ISO timestamp")
    service_ids: list[UUID] = Field(default_factory=list)
    combo_id: Optional[UUID] = None

    @field_validator("phone")
    @classmethod
    def phone_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("phone is required")
        return value

    @model_validator(mode="after")
    def requires_services(self) -> "BookingRequest":
        if not self.service_ids and self.combo_id is None:
            raise ValueError("service_ids or combo_id is required")
        return self

    @classmethod
    def parse(cls, payload: Union["BookingRequest", dict]) -> "BookingRequest":
        """Validate a raw payload.

        Raises:
            InvalidPayload: If required fields are missing or malformed
        """
        if isinstance(payload, cls):
            return payload
        if not isinstance(payload, dict):
            raise InvalidPayload("Invalid appointment payload")
        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            first = e.errors()[0]
            location = ".".join(str(part) for part in first["loc"]) or "payload"
            raise InvalidPayload(f"Invalid appointment payload: {location}: {first['msg']}")


@dataclass
class BookingOutcome:
    """Result of a successful book or reschedule."""

    appointment: Appointment
    message: Optional[Message] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        appointment = self.appointment
        result = {
            "id": str(appointment.id),
            "customer_id": str(appointment.customer_id),
            "service": appointment.service,
            "appointment_time": as_utc(appointment.appointment_time).isoformat(),
            "slot_minutes": appointment.slot_minutes,
            "duration_minutes": appointment.duration_minutes,
            "status": appointment.status.value,
        }
        if appointment.combo_id:
            result["combo_id"] = str(appointment.combo_id)
        if self.message is not None and self.message.status is not None:
            result["message_status"] = self.message.status.value
        return result


@dataclass
class AvailabilityView:
    """Slot load and bookable starts for one UTC day."""

    day: date
    duration_minutes: int
    max_per_slot: int
    load: dict[int, int] = field(default_factory=dict)
    available: dict[int, bool] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "date": self.day.isoformat(),
            "duration_minutes": self.duration_minutes,
            "max_per_slot": self.max_per_slot,
            "slots": {str(minute): count for minute, count in self.load.items()},
            "available": {str(minute): free for minute, free in self.available.items()},
        }


class DayLocks:
    """In-process mutual exclusion per (tenant, UTC day).

    Locks are created on demand and dropped once no coroutine holds or
    waits for them.
    """

    def __init__(self):
        self._locks: dict[tuple[UUID, date], asyncio.Lock] = {}
        self._refs: dict[tuple[UUID, date], int] = {}

    @asynccontextmanager
    async def hold(self, tenant_id: UUID, days: Sequence[date]) -> AsyncIterator[None]:
        keys = [(tenant_id, day) for day in sorted(set(days))]
        for key in keys:
            self._refs[key] = self._refs.get(key, 0) + 1
            self._locks.setdefault(key, asyncio.Lock())

        acquired: list[asyncio.Lock] = []
        try:
            for key in keys:
                lock = self._locks[key]
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in keys:
                self._refs[key] -= 1
                if self._refs[key] == 0:
                    del self._refs[key]
                    del self._locks[key]


# Singleton
_day_locks: Optional[DayLocks] = None


def get_day_locks() -> DayLocks:
    """Get the process-wide DayLocks."""
    global _day_locks
    if _day_locks is None:
        _day_locks = DayLocks()
    return _day_locks


class BookingEngine:
    """
    Books and reschedules appointments for one unit of work.

    Flow for a booking:
    1. Validate payload and resolve the requested services
    2. Convert the local time to UTC and reject past times
    3. Resolve or create the customer
    4. Under the day locks: build slot load, check capacity, write, commit
    5. Send the confirmation through the outbox
    """

    def __init__(
        self,
        store: SchedulingStore,
        gateway: Optional[MessagingGateway] = None,
        clock: Optional[Clock] = None,
        grid: Optional[SlotGrid] = None,
        locks: Optional[DayLocks] = None,
    ):
        """Initialize engine.

        Args:
            store: Open unit of work
            gateway: Messaging gateway (defaults to singleton)
            clock: Returns the current UTC time
            grid: Slot grid (defaults to 15-minute slots)
            locks: In-process day locks (defaults to the shared instance)
        """
        self.store = store
        self.clock = clock or utcnow
        self.grid = grid or SlotGrid(get_settings().slot_size_minutes)
        self.planner = CapacityPlanner(self.grid)
        self.locks = locks if locks is not None else get_day_locks()
        self.outbox = Outbox(store, gateway if gateway is not None else get_messaging_gateway())

    # === Booking ===

    async def book(
        self,
        tenant_id: UUID,
        request: Union[BookingRequest, dict],
    ) -> BookingOutcome:
        """Create an appointment.

        Args:
            tenant_id: Tenant the appointment belongs to
            request: BookingRequest or raw payload

        Returns:
            BookingOutcome with the appointment and confirmation message

        Raises:
            InvalidPayload: Missing fields, unknown or empty services
            InvalidTimeZone: Tenant has no usable time zone
            InvalidTimestamp: Unparsable or non-existent local time
            PastTimeRejected: Time is not in the future
            SlotFullyBooked: A required slot is at capacity
            Internal: Store failure (nothing is left behind)
        """
        request = BookingRequest.parse(request)

        try:
            tenant = await self._get_tenant(tenant_id)
            settings = AppointmentSettings.from_stored(tenant.appointment_settings)

            items, combo_id = await self._resolve_line_items(tenant_id, request)
            duration = self._total_duration(items)

            start = to_utc(request.appointment_time, tenant.timezone)
            ensure_future(start, self.clock())

            customer = await resolve_customer(self.store, tenant_id, request.phone, request.name)

            appointment = await self._create(
                tenant_id=tenant_id,
                customer=customer,
                start=start,
                duration=duration,
                items=items,
                combo_id=combo_id,
                max_per_slot=settings.max_appointments_per_slot,
            )
        except StoreError as e:
            await self.store.rollback()
            logger.error(f"Store failure while booking for tenant {tenant_id}: {e}")
            raise Internal("Failed to create appointment") from e

        logger.info(
            f"Booked appointment {appointment.id} for tenant {tenant_id} "
            f"at {start.isoformat()} ({duration} min)"
        )

        when = format_local(start, tenant.timezone, CONFIRMATION_FORMAT)
        message = await self._notify(customer, confirmation_text(appointment.service, when))
        return BookingOutcome(appointment=appointment, message=message)

    async def _create(
        self,
        tenant_id: UUID,
        customer: Customer,
        start: datetime,
        duration: int,
        items: list[AppointmentService],
        combo_id: Optional[UUID],
        max_per_slot: int,
    ) -> Appointment:
        days = days_spanned(start, duration)

        async with self.locks.hold(tenant_id, days):
            await self.store.lock_days(tenant_id, days)

            try:
                load = await self._load_around(tenant_id, start, days)
                self.planner.check(load, minutes_of_day(start), duration, max_per_slot)
            except SlotFullyBooked:
                await self.store.rollback()
                logger.info(f"Slot fully booked for tenant {tenant_id} at {start.isoformat()}")
                raise

            appointment = Appointment(
                id=uuid4(),
                tenant_id=tenant_id,
                customer_id=customer.id,
                customer=customer,
                combo_id=combo_id,
                service=" + ".join(item.service_name for item in items),
                appointment_time=start,
                slot_minutes=minutes_of_day(start),
                duration_minutes=duration,
                status=AppointmentStatus.SCHEDULED,
                archived_at=None,
                line_items=[],
            )
            await self.store.add_appointment(appointment)

            try:
                await self.store.add_line_items(appointment, items)
                await self.store.commit()
            except StoreError as e:
                appointment_id = appointment.id
                logger.error(f"Line items failed for appointment {appointment_id}, discarding: {e}")
                await self.store.discard_appointment(appointment)
                raise Internal("Failed to save appointment services") from e

        return appointment

    # === Reschedule ===

    async def reschedule(
        self,
        tenant_id: UUID,
        appointment_id: UUID,
        appointment_time: str,
    ) -> BookingOutcome:
        """Move an appointment to a new time.

        The stored duration snapshot is reused. The appointment returns to
        "scheduled", is un-archived, and its reminder log is cleared so
        reminders fire again for the new time.

        Raises:
            NotFound: Appointment absent or owned by another tenant
            SlotFullyBooked: A required slot is at capacity
        """
        if not appointment_time:
            raise InvalidPayload("appointment_time is required")

        try:
            tenant = await self._get_tenant(tenant_id)
            settings = AppointmentSettings.from_stored(tenant.appointment_settings)

            appointment = await self.store.get_appointment(tenant_id, appointment_id)
            if appointment is None:
                raise NotFound("Appointment not found")

            start = to_utc(appointment_time, tenant.timezone)
            ensure_future(start, self.clock())

            duration = appointment.duration_minutes
            days = days_spanned(start, duration)

            async with self.locks.hold(tenant_id, days):
                await self.store.lock_days(tenant_id, days)

                try:
                    load = await self._load_around(tenant_id, start, days, exclude_id=appointment.id)
                    self.planner.check(
                        load,
                        minutes_of_day(start),
                        duration,
                        settings.max_appointments_per_slot,
                    )
                except SlotFullyBooked:
                    await self.store.rollback()
                    logger.info(f"Reschedule of {appointment_id} rejected: slot fully booked")
                    raise

                appointment.appointment_time = start
                appointment.slot_minutes = minutes_of_day(start)
                appointment.status = AppointmentStatus.SCHEDULED
                appointment.archived_at = None
                await self.store.save_appointment(appointment)

                cleared = await self.store.delete_automation_logs(appointment.id)
                await self.store.commit()

        except StoreError as e:
            await self.store.rollback()
            logger.error(f"Store failure while rescheduling {appointment_id}: {e}")
            raise Internal("Failed to reschedule appointment") from e

        logger.info(
            f"Rescheduled appointment {appointment_id} to {start.isoformat()}, "
            f"cleared {cleared} reminder log(s)"
        )

        customer = appointment.customer or await self.store.get_customer(appointment.customer_id)
        when = format_local(start, tenant.timezone, CONFIRMATION_FORMAT)
        message = await self._notify(customer, reschedule_text(appointment.service, when))
        return BookingOutcome(appointment=appointment, message=message)

    # === Availability ===

    async def availability(
        self,
        tenant_id: UUID,
        day: Union[date, str],
        duration_minutes: Optional[int] = None,
        service_ids: Optional[Sequence[UUID]] = None,
        exclude_appointment_id: Optional[UUID] = None,
    ) -> AvailabilityView:
        """Slot load and bookable starts for a UTC day.

        Args:
            tenant_id: Tenant
            day: UTC date or "YYYY-MM-DD"
            duration_minutes: Candidate duration (defaults to one slot)
            service_ids: Derive the duration from these services instead
            exclude_appointment_id: Ignore this appointment (reschedule preview)
        """
        if isinstance(day, str):
            try:
                day = date.fromisoformat(day)
            except ValueError:
                raise InvalidPayload("date must be YYYY-MM-DD")

        tenant = await self._get_tenant(tenant_id)
        settings = AppointmentSettings.from_stored(tenant.appointment_settings)

        if service_ids:
            services = await self.store.get_services(tenant_id, service_ids)
            by_id = {service.id: service for service in services}
            missing = [str(sid) for sid in service_ids if sid not in by_id]
            if missing:
                raise InvalidPayload(f"Unknown service(s): {', '.join(missing)}")
            duration_minutes = sum(by_id[sid].duration_minutes for sid in service_ids)

        duration = duration_minutes or self.grid.slot_minutes
        if duration <= 0 or duration > MINUTES_PER_DAY:
            raise InvalidPayload(f"duration_minutes must be between 1 and {MINUTES_PER_DAY}")

        reference = day_start(day)
        appointments = await self.store.list_scheduled_between(
            tenant_id,
            reference - timedelta(days=1),
            reference + timedelta(days=1),
            exclude_id=exclude_appointment_id,
        )
        load = self.grid.build_load(appointments, day_start=reference)

        return AvailabilityView(
            day=day,
            duration_minutes=duration,
            max_per_slot=settings.max_appointments_per_slot,
            load=self.grid.load_by_minute(load),
            available=self.planner.daily_availability(
                load,
                duration,
                settings.max_appointments_per_slot,
            ),
        )

    # === Helpers ===

    async def _get_tenant(self, tenant_id: UUID) -> Tenant:
        tenant = await self.store.get_tenant(tenant_id)
        if tenant is None:
            raise NotFound("Business not found")
        return tenant

    async def _resolve_line_items(
        self,
        tenant_id: UUID,
        request: BookingRequest,
    ) -> tuple[list[AppointmentService], Optional[UUID]]:
        """Snapshot the requested services as ordered line items."""
        combo_id = None
        service_ids = list(request.service_ids)

        if request.combo_id is not None:
            combo = await self.store.get_combo(tenant_id, request.combo_id)
            if combo is None:
                raise InvalidPayload("Unknown combo")
            if not combo.is_active:
                raise InvalidPayload("Combo is no longer available")
            combo_id = combo.id
            service_ids = combo.service_ids

        if not service_ids:
            raise InvalidPayload("At least one service is required")

        services = await self.store.get_services(tenant_id, service_ids)
        by_id = {service.id: service for service in services}

        items = []
        for position, service_id in enumerate(service_ids):
            service = by_id.get(service_id)
            if service is None:
                raise InvalidPayload(f"Unknown service: {service_id}")
            if not service.is_active:
                raise InvalidPayload(f"Service {service.name} is not active")
            if not service.duration_minutes or service.duration_minutes <= 0:
                raise InvalidPayload(f"Service {service.name} has no duration")

            items.append(
                AppointmentService(
                    id=uuid4(),
                    service_id=service.id,
                    service_name=service.name,
                    duration_minutes=service.duration_minutes,
                    position=position,
                )
            )

        return items, combo_id

    @staticmethod
    def _total_duration(items: Sequence[AppointmentService]) -> int:
        duration = sum(item.duration_minutes for item in items)
        if duration > MINUTES_PER_DAY:
            raise InvalidPayload(f"Total duration cannot exceed {MINUTES_PER_DAY} minutes")
        return duration

    async def _load_around(
        self,
        tenant_id: UUID,
        start: datetime,
        days: Sequence[date],
        exclude_id: Optional[UUID] = None,
    ) -> dict[int, int]:
        """Slot load relative to start's UTC day, including spill-over
        from the previous day and into the following ones."""
        reference = day_start(start)
        appointments = await self.store.list_scheduled_between(
            tenant_id,
            reference - timedelta(days=1),
            day_start(max(days)) + timedelta(days=1),
            exclude_id=exclude_id,
        )
        return self.grid.build_load(appointments, day_start=reference)

    async def _notify(self, customer: Optional[Customer], text: str) -> Optional[Message]:
        """Send a system message. Failures are logged, never raised."""
        if customer is None:
            logger.warning("No customer to notify")
            return None
        try:
            message = await self.outbox.send_system_message(customer, text)
            await self.store.commit()
            return message
        except StoreError as e:
            logger.error(f"Failed to log message for customer {customer.id}: {e}", exc_info=True)
            await self.store.rollback()
            return None
