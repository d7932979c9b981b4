"""Shared fixtures: in-memory store, recording gateway and a fixed clock."""

import asyncio
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Sequence
from uuid import UUID, uuid4

import pytest

from bookingdesk.core.errors import StoreError
from bookingdesk.core.store import SchedulingStore
from bookingdesk.infra.messaging import STATUS_FAILED, STATUS_SUBMITTED, SendResult
from bookingdesk.models.database import (
    Appointment,
    AppointmentService,
    AppointmentStatus,
    AutomationRule,
    Combo,
    ComboService,
    Customer,
    Message,
    MessageDirection,
    MessageStatus,
    Service,
    Tenant,
)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeGateway:
    """Records every send; fails for configured phones or globally."""

    def __init__(self, status: str = STATUS_SUBMITTED):
        self.status = status
        self.sent: list[tuple[str, str]] = []
        self.failing_phones: set[str] = set()
        self.closed = False

    async def send(self, phone: str, text: str) -> SendResult:
        self.sent.append((phone, text))
        if self.status != STATUS_SUBMITTED or phone in self.failing_phones:
            return SendResult(status=STATUS_FAILED, error="gateway unavailable")
        return SendResult(status=STATUS_SUBMITTED)

    async def close(self) -> None:
        self.closed = True


class InMemoryStore(SchedulingStore):
    """SchedulingStore over plain dicts.

    list_scheduled_between yields to the event loop before answering so
    concurrent bookings interleave between capacity read and write.
    """

    def __init__(self):
        self.tenants: dict[UUID, Tenant] = {}
        self.customers: dict[UUID, Customer] = {}
        self.services: dict[UUID, Service] = {}
        self.combos: dict[UUID, Combo] = {}
        self.appointments: dict[UUID, Appointment] = {}
        self.rules: dict[UUID, AutomationRule] = {}
        self.logs: set[tuple[UUID, UUID]] = set()
        self.messages: dict[UUID, Message] = {}

        self.locked: list[tuple[UUID, date]] = []
        self.commits = 0
        self.rollbacks = 0
        self.fail_line_items = False
        self.failing_tenants: set[UUID] = set()
        self._clock = utc(2024, 1, 1)

    def _stamp(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def _check_tenant(self, tenant_id: UUID) -> None:
        if tenant_id in self.failing_tenants:
            raise StoreError(f"tenant {tenant_id} unavailable")

    # === Unit of work ===

    async def lock_days(self, tenant_id: UUID, days: Sequence[date]) -> None:
        self.locked.extend((tenant_id, day) for day in sorted(set(days)))

    async def commit(self) -> None:
        self.commits += 1

    async def rollback(self) -> None:
        self.rollbacks += 1

    # === Tenants ===

    async def get_tenant(self, tenant_id: UUID) -> Optional[Tenant]:
        return self.tenants.get(tenant_id)

    async def list_tenants(self) -> list[Tenant]:
        return list(self.tenants.values())

    async def save_tenant_settings(self, tenant_id: UUID, settings: dict) -> None:
        self.tenants[tenant_id].appointment_settings = dict(settings)

    # === Customers ===

    async def get_customer(self, customer_id: UUID, tenant_id: Optional[UUID] = None) -> Optional[Customer]:
        customer = self.customers.get(customer_id)
        if customer is None or (tenant_id is not None and customer.tenant_id != tenant_id):
            return None
        return customer

    async def find_customer_by_phone(self, tenant_id: UUID, phone: str) -> Optional[Customer]:
        for customer in self.customers.values():
            if customer.tenant_id == tenant_id and customer.phone == phone:
                return customer
        return None

    async def add_customer(self, tenant_id: UUID, phone: str, name: Optional[str] = None) -> Customer:
        existing = await self.find_customer_by_phone(tenant_id, phone)
        if existing is not None:
            return existing
        customer = Customer(id=uuid4(), tenant_id=tenant_id, phone=phone, name=name)
        self.customers[customer.id] = customer
        return customer

    async def set_customer_name(self, customer: Customer, name: str) -> None:
        customer.name = name

    # === Catalog ===

    async def get_services(self, tenant_id: UUID, service_ids: Sequence[UUID]) -> list[Service]:
        return [
            service for service in self.services.values()
            if service.tenant_id == tenant_id and service.id in set(service_ids)
        ]

    async def get_combo(self, tenant_id: UUID, combo_id: UUID) -> Optional[Combo]:
        combo = self.combos.get(combo_id)
        if combo is None or combo.tenant_id != tenant_id:
            return None
        return combo

    # === Appointments ===

    async def get_appointment(self, tenant_id: UUID, appointment_id: UUID) -> Optional[Appointment]:
        appointment = self.appointments.get(appointment_id)
        if appointment is None or appointment.tenant_id != tenant_id:
            return None
        return appointment

    async def list_scheduled_between(
        self,
        tenant_id: UUID,
        start: datetime,
        end: datetime,
        exclude_id: Optional[UUID] = None,
    ) -> list[Appointment]:
        await asyncio.sleep(0)
        return [
            a for a in self.appointments.values()
            if a.tenant_id == tenant_id
            and a.status == AppointmentStatus.SCHEDULED
            and start <= a.appointment_time < end
            and a.id != exclude_id
        ]

    async def add_appointment(self, appointment: Appointment) -> Appointment:
        if appointment.id is None:
            appointment.id = uuid4()
        if appointment.customer is None:
            appointment.customer = self.customers.get(appointment.customer_id)
        self.appointments[appointment.id] = appointment
        return appointment

    async def add_line_items(self, appointment: Appointment, items: Sequence[AppointmentService]) -> None:
        if self.fail_line_items:
            raise StoreError("line item insert failed")
        for item in items:
            item.appointment_id = appointment.id
        appointment.line_items.extend(items)

    async def discard_appointment(self, appointment: Appointment) -> None:
        self.appointments.pop(appointment.id, None)

    async def save_appointment(self, appointment: Appointment) -> None:
        self.appointments[appointment.id] = appointment

    async def list_upcoming(self, tenant_id: UUID, now: datetime) -> list[Appointment]:
        return sorted(
            (
                a for a in self.appointments.values()
                if a.tenant_id == tenant_id
                and a.status == AppointmentStatus.SCHEDULED
                and a.appointment_time >= now
                and a.archived_at is None
            ),
            key=lambda a: a.appointment_time,
        )

    async def list_history(self, tenant_id: UUID) -> list[Appointment]:
        return sorted(
            (a for a in self.appointments.values() if a.tenant_id == tenant_id),
            key=lambda a: a.appointment_time,
            reverse=True,
        )

    async def next_for_customer(self, tenant_id: UUID, customer_id: UUID, now: datetime) -> Optional[Appointment]:
        upcoming = [
            a for a in await self.list_upcoming(tenant_id, now)
            if a.customer_id == customer_id
        ]
        return upcoming[0] if upcoming else None

    async def list_due_appointments(
        self,
        tenant_id: UUID,
        window_start: datetime,
        window_end: datetime,
    ) -> list[Appointment]:
        self._check_tenant(tenant_id)
        return [
            a for a in self.appointments.values()
            if a.tenant_id == tenant_id
            and a.status == AppointmentStatus.SCHEDULED
            and window_start <= a.appointment_time <= window_end
        ]

    async def mark_no_shows(self, tenant_id: UUID, cutoff: datetime) -> int:
        self._check_tenant(tenant_id)
        marked = 0
        for a in self.appointments.values():
            if (
                a.tenant_id == tenant_id
                and a.status == AppointmentStatus.SCHEDULED
                and a.appointment_time < cutoff
            ):
                a.status = AppointmentStatus.NO_SHOW
                marked += 1
        return marked

    async def archive_stale(self, tenant_id: UUID, cutoff: datetime, now: datetime) -> int:
        self._check_tenant(tenant_id)
        archived = 0
        for a in self.appointments.values():
            if (
                a.tenant_id == tenant_id
                and a.status in (AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW)
                and a.appointment_time < cutoff
                and a.archived_at is None
            ):
                a.archived_at = now
                archived += 1
        return archived

    # === Automation ===

    async def list_rules(self, tenant_id: UUID, enabled_only: bool = False) -> list[AutomationRule]:
        return sorted(
            (
                r for r in self.rules.values()
                if r.tenant_id == tenant_id and (r.enabled or not enabled_only)
            ),
            key=lambda r: r.offset_minutes,
        )

    async def get_rule(self, tenant_id: UUID, rule_id: UUID) -> Optional[AutomationRule]:
        rule = self.rules.get(rule_id)
        if rule is None or rule.tenant_id != tenant_id:
            return None
        return rule

    async def add_rule(self, rule: AutomationRule) -> AutomationRule:
        if rule.id is None:
            rule.id = uuid4()
        self.rules[rule.id] = rule
        return rule

    async def save_rule(self, rule: AutomationRule) -> None:
        self.rules[rule.id] = rule

    async def has_automation_log(self, appointment_id: UUID, rule_id: UUID) -> bool:
        return (appointment_id, rule_id) in self.logs

    async def add_automation_log(self, appointment_id: UUID, rule_id: UUID) -> bool:
        if (appointment_id, rule_id) in self.logs:
            return False
        self.logs.add((appointment_id, rule_id))
        return True

    async def delete_automation_logs(self, appointment_id: UUID) -> int:
        matching = {pair for pair in self.logs if pair[0] == appointment_id}
        self.logs -= matching
        return len(matching)

    # === Messages ===

    async def get_message(self, message_id: UUID) -> Optional[Message]:
        return self.messages.get(message_id)

    async def add_message(self, message: Message) -> Message:
        if message.id is None:
            message.id = uuid4()
        message.created_at = self._stamp()
        self.messages[message.id] = message
        return message

    async def save_message(self, message: Message) -> None:
        self.messages[message.id] = message

    async def list_retryable_messages(self, max_retries: int, limit: int) -> list[Message]:
        candidates = sorted(
            (
                m for m in self.messages.values()
                if m.direction == MessageDirection.OUT
                and m.status == MessageStatus.FAILED
                and m.retry_count < max_retries
            ),
            key=lambda m: m.created_at,
        )
        return candidates[:limit]

    async def release_stale_retries(self, cutoff: datetime) -> int:
        released = 0
        for m in self.messages.values():
            touched = m.updated_at or m.created_at
            if m.direction == MessageDirection.OUT and m.status == MessageStatus.RETRYING and touched < cutoff:
                m.status = MessageStatus.FAILED
                m.retry_count += 1
                m.error = "Retry abandoned"
                released += 1
        return released

    # === Seeding helpers ===

    def add_tenant(self, name: str = "Glow Salon", tz: Optional[str] = "America/New_York", settings: Optional[dict] = None) -> Tenant:
        tenant = Tenant(id=uuid4(), name=name, timezone=tz, appointment_settings=settings)
        self.tenants[tenant.id] = tenant
        return tenant

    def add_service(self, tenant: Tenant, name: str, duration: int, active: bool = True) -> Service:
        service = Service(id=uuid4(), tenant_id=tenant.id, name=name, duration_minutes=duration, is_active=active)
        self.services[service.id] = service
        return service

    def add_combo(self, tenant: Tenant, name: str, services: Sequence[Service], active: bool = True) -> Combo:
        combo = Combo(
            id=uuid4(),
            tenant_id=tenant.id,
            name=name,
            is_active=active,
            items=[
                ComboService(id=uuid4(), service_id=service.id, position=position)
                for position, service in enumerate(services)
            ],
        )
        self.combos[combo.id] = combo
        return combo

    def seed_customer(self, tenant: Tenant, phone: str = "+15550001111", name: Optional[str] = None) -> Customer:
        customer = Customer(id=uuid4(), tenant_id=tenant.id, phone=phone, name=name)
        self.customers[customer.id] = customer
        return customer

    def seed_appointment(
        self,
        tenant: Tenant,
        customer: Customer,
        start: datetime,
        duration: int = 30,
        status: AppointmentStatus = AppointmentStatus.SCHEDULED,
        service: str = "Haircut",
        archived_at: Optional[datetime] = None,
    ) -> Appointment:
        appointment = Appointment(
            id=uuid4(),
            tenant_id=tenant.id,
            customer_id=customer.id,
            customer=customer,
            service=service,
            appointment_time=start,
            slot_minutes=start.hour * 60 + start.minute,
            duration_minutes=duration,
            status=status,
            archived_at=archived_at,
            line_items=[],
        )
        self.appointments[appointment.id] = appointment
        return appointment

    def seed_rule(
        self,
        tenant: Tenant,
        rule_type: str = "reminder_24h",
        offset: int = 1440,
        template: str = "Reminder: {{service}} at {{appointment_time}}",
        enabled: bool = True,
    ) -> AutomationRule:
        rule = AutomationRule(
            id=uuid4(),
            tenant_id=tenant.id,
            rule_type=rule_type,
            offset_minutes=offset,
            message_template=template,
            enabled=enabled,
        )
        self.rules[rule.id] = rule
        return rule

    def seed_message(
        self,
        customer: Customer,
        content: str = "hello",
        status: MessageStatus = MessageStatus.FAILED,
        retry_count: int = 1,
    ) -> Message:
        message = Message(
            id=uuid4(),
            customer_id=customer.id,
            direction=MessageDirection.OUT,
            content=content,
            status=status,
            retry_count=retry_count,
            created_at=self._stamp(),
        )
        self.messages[message.id] = message
        return message


def store_factory_for(store: SchedulingStore):
    """StoreFactory that hands out the same store for every unit of work."""

    @asynccontextmanager
    async def factory():
        yield store

    return factory


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def store_factory(store):
    return store_factory_for(store)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(utc(2024, 5, 1, 12, 0))


@pytest.fixture
def tenant(store) -> Tenant:
    return store.add_tenant()
