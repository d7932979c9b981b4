"""
PostgreSQL implementation of the SchedulingStore.

Wraps one AsyncSession per unit of work. Capacity locks are
transaction-scoped advisory locks, so they are released by the same
commit or rollback that ends the booking attempt.
"""

import hashlib
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import AsyncGenerator, Optional, Sequence
from uuid import UUID, uuid4

from sqlalchemy import delete, func, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bookingdesk.core.errors import StoreError
from bookingdesk.core.store import SchedulingStore
from bookingdesk.infra.database import session_scope
from bookingdesk.models.database import (
    Appointment,
    AppointmentService,
    AppointmentStatus,
    AutomationLog,
    AutomationRule,
    Combo,
    Customer,
    Message,
    MessageDirection,
    MessageStatus,
    Service,
    Tenant,
)

logger = logging.getLogger(__name__)


def advisory_key(tenant_id: UUID, day: date) -> int:
    """Stable signed 64-bit key for a (tenant, day) advisory lock."""
    digest = hashlib.sha256(f"{tenant_id}:{day.isoformat()}".encode()).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


class SqlSchedulingStore(SchedulingStore):
    """SchedulingStore over an async SQLAlchemy session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    @property
    def _dialect(self) -> str:
        bind = self.session.bind
        return bind.dialect.name if bind is not None else ""

    # === Unit of work ===

    async def lock_days(self, tenant_id: UUID, days: Sequence[date]) -> None:
        if self._dialect != "postgresql":
            return

        # Sorted acquisition keeps multi-day bookings deadlock free
        for day in sorted(set(days)):
            await self.session.execute(
                text("SELECT pg_advisory_xact_lock(:key)"),
                {"key": advisory_key(tenant_id, day)},
            )
            logger.debug(f"Acquired capacity lock for tenant {tenant_id} on {day}")

    async def commit(self) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise StoreError(f"Commit failed: {e}") from e

    async def rollback(self) -> None:
        await self.session.rollback()

    # === Tenants ===

    async def get_tenant(self, tenant_id: UUID) -> Optional[Tenant]:
        return await self.session.get(Tenant, tenant_id)

    async def list_tenants(self) -> list[Tenant]:
        result = await self.session.execute(select(Tenant).order_by(Tenant.created_at))
        return list(result.scalars().all())

    async def save_tenant_settings(self, tenant_id: UUID, settings: dict) -> None:
        await self.session.execute(
            update(Tenant)
            .where(Tenant.id == tenant_id)
            .values({Tenant.appointment_settings: settings})
            .execution_options(synchronize_session=False)
        )

    # === Customers ===

    async def get_customer(
        self,
        customer_id: UUID,
        tenant_id: Optional[UUID] = None,
    ) -> Optional[Customer]:
        query = select(Customer).where(Customer.id == customer_id)
        if tenant_id is not None:
            query = query.where(Customer.tenant_id == tenant_id)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def find_customer_by_phone(self, tenant_id: UUID, phone: str) -> Optional[Customer]:
        result = await self.session.execute(
            select(Customer).where(
                Customer.tenant_id == tenant_id,
                Customer.phone == phone,
            )
        )
        return result.scalar_one_or_none()

    async def add_customer(
        self,
        tenant_id: UUID,
        phone: str,
        name: Optional[str] = None,
    ) -> Customer:
        try:
            if self._dialect == "postgresql":
                table = Customer.__table__
                await self.session.execute(
                    pg_insert(table)
                    .values(id=uuid4(), business_id=tenant_id, phone=phone, name=name)
                    .on_conflict_do_nothing(index_elements=["business_id", "phone"])
                )
            else:
                self.session.add(Customer(id=uuid4(), tenant_id=tenant_id, phone=phone, name=name))
                await self.session.flush()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to create customer: {e}") from e

        customer = await self.find_customer_by_phone(tenant_id, phone)
        if customer is None:
            raise StoreError(f"Customer {phone} missing after insert")
        return customer

    async def set_customer_name(self, customer: Customer, name: str) -> None:
        customer.name = name
        await self.session.flush()

    # === Catalog ===

    async def get_services(self, tenant_id: UUID, service_ids: Sequence[UUID]) -> list[Service]:
        if not service_ids:
            return []
        result = await self.session.execute(
            select(Service).where(
                Service.tenant_id == tenant_id,
                Service.id.in_(list(service_ids)),
            )
        )
        return list(result.scalars().all())

    async def get_combo(self, tenant_id: UUID, combo_id: UUID) -> Optional[Combo]:
        result = await self.session.execute(
            select(Combo).where(Combo.id == combo_id, Combo.tenant_id == tenant_id)
        )
        return result.scalar_one_or_none()

    # === Appointments ===

    async def get_appointment(self, tenant_id: UUID, appointment_id: UUID) -> Optional[Appointment]:
        result = await self.session.execute(
            select(Appointment).where(
                Appointment.id == appointment_id,
                Appointment.tenant_id == tenant_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_scheduled_between(
        self,
        tenant_id: UUID,
        start: datetime,
        end: datetime,
        exclude_id: Optional[UUID] = None,
    ) -> list[Appointment]:
        query = select(Appointment).where(
            Appointment.tenant_id == tenant_id,
            Appointment.status == AppointmentStatus.SCHEDULED,
            Appointment.appointment_time >= start,
            Appointment.appointment_time < end,
        )
        if exclude_id is not None:
            query = query.where(Appointment.id != exclude_id)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def add_appointment(self, appointment: Appointment) -> Appointment:
        if appointment.id is None:
            appointment.id = uuid4()
        try:
            self.session.add(appointment)
            await self.session.flush()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to create appointment: {e}") from e
        return appointment

    async def add_line_items(
        self,
        appointment: Appointment,
        items: Sequence[AppointmentService],
    ) -> None:
        try:
            for item in items:
                item.appointment_id = appointment.id
            appointment.line_items.extend(items)
            await self.session.flush()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to create line items: {e}") from e

    async def discard_appointment(self, appointment: Appointment) -> None:
        appointment_id = appointment.id
        await self.session.rollback()
        await self.session.execute(
            delete(Appointment).where(Appointment.id == appointment_id)
        )
        await self.session.commit()
        logger.warning(f"Discarded incomplete appointment {appointment_id}")

    async def save_appointment(self, appointment: Appointment) -> None:
        try:
            await self.session.flush()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to update appointment: {e}") from e

    async def list_upcoming(self, tenant_id: UUID, now: datetime) -> list[Appointment]:
        result = await self.session.execute(
            select(Appointment)
            .where(
                Appointment.tenant_id == tenant_id,
                Appointment.status == AppointmentStatus.SCHEDULED,
                Appointment.appointment_time >= now,
                Appointment.archived_at.is_(None),
            )
            .order_by(Appointment.appointment_time.asc())
        )
        return list(result.scalars().all())

    async def list_history(self, tenant_id: UUID) -> list[Appointment]:
        result = await self.session.execute(
            select(Appointment)
            .where(Appointment.tenant_id == tenant_id)
            .order_by(Appointment.appointment_time.desc())
        )
        return list(result.scalars().all())

    async def next_for_customer(
        self,
        tenant_id: UUID,
        customer_id: UUID,
        now: datetime,
    ) -> Optional[Appointment]:
        result = await self.session.execute(
            select(Appointment)
            .where(
                Appointment.tenant_id == tenant_id,
                Appointment.customer_id == customer_id,
                Appointment.status == AppointmentStatus.SCHEDULED,
                Appointment.appointment_time >= now,
            )
            .order_by(Appointment.appointment_time.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_due_appointments(
        self,
        tenant_id: UUID,
        window_start: datetime,
        window_end: datetime,
    ) -> list[Appointment]:
        result = await self.session.execute(
            select(Appointment).where(
                Appointment.tenant_id == tenant_id,
                Appointment.status == AppointmentStatus.SCHEDULED,
                Appointment.appointment_time >= window_start,
                Appointment.appointment_time <= window_end,
            )
        )
        return list(result.scalars().all())

    async def mark_no_shows(self, tenant_id: UUID, cutoff: datetime) -> int:
        result = await self.session.execute(
            update(Appointment)
            .where(
                Appointment.tenant_id == tenant_id,
                Appointment.status == AppointmentStatus.SCHEDULED,
                Appointment.appointment_time < cutoff,
            )
            .values({
                Appointment.status: AppointmentStatus.NO_SHOW,
                Appointment.updated_at: func.now(),
            })
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def archive_stale(self, tenant_id: UUID, cutoff: datetime, now: datetime) -> int:
        result = await self.session.execute(
            update(Appointment)
            .where(
                Appointment.tenant_id == tenant_id,
                Appointment.status.in_([AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW]),
                Appointment.appointment_time < cutoff,
                Appointment.archived_at.is_(None),
            )
            .values({Appointment.archived_at: now})
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    # === Automation ===

    async def list_rules(self, tenant_id: UUID, enabled_only: bool = False) -> list[AutomationRule]:
        query = select(AutomationRule).where(AutomationRule.tenant_id == tenant_id)
        if enabled_only:
            query = query.where(AutomationRule.enabled.is_(True))
        result = await self.session.execute(query.order_by(AutomationRule.offset_minutes))
        return list(result.scalars().all())

    async def get_rule(self, tenant_id: UUID, rule_id: UUID) -> Optional[AutomationRule]:
        result = await self.session.execute(
            select(AutomationRule).where(
                AutomationRule.id == rule_id,
                AutomationRule.tenant_id == tenant_id,
            )
        )
        return result.scalar_one_or_none()

    async def add_rule(self, rule: AutomationRule) -> AutomationRule:
        if rule.id is None:
            rule.id = uuid4()
        self.session.add(rule)
        await self.session.flush()
        return rule

    async def save_rule(self, rule: AutomationRule) -> None:
        await self.session.flush()

    async def has_automation_log(self, appointment_id: UUID, rule_id: UUID) -> bool:
        result = await self.session.execute(
            select(AutomationLog.id).where(
                AutomationLog.appointment_id == appointment_id,
                AutomationLog.rule_id == rule_id,
            )
        )
        return result.first() is not None

    async def add_automation_log(self, appointment_id: UUID, rule_id: UUID) -> bool:
        if self._dialect == "postgresql":
            result = await self.session.execute(
                pg_insert(AutomationLog.__table__)
                .values(id=uuid4(), appointment_id=appointment_id, rule_id=rule_id)
                .on_conflict_do_nothing(index_elements=["appointment_id", "rule_id"])
                .returning(AutomationLog.__table__.c.id)
            )
            return result.first() is not None

        if await self.has_automation_log(appointment_id, rule_id):
            return False
        self.session.add(AutomationLog(id=uuid4(), appointment_id=appointment_id, rule_id=rule_id))
        await self.session.flush()
        return True

    async def delete_automation_logs(self, appointment_id: UUID) -> int:
        result = await self.session.execute(
            delete(AutomationLog).where(AutomationLog.appointment_id == appointment_id)
        )
        return result.rowcount or 0

    # === Messages ===

    async def get_message(self, message_id: UUID) -> Optional[Message]:
        return await self.session.get(Message, message_id)

    async def add_message(self, message: Message) -> Message:
        if message.id is None:
            message.id = uuid4()
        try:
            self.session.add(message)
            await self.session.flush()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to log message: {e}") from e
        return message

    async def save_message(self, message: Message) -> None:
        try:
            await self.session.flush()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to update message {message.id}: {e}") from e

    async def list_retryable_messages(self, max_retries: int, limit: int) -> list[Message]:
        result = await self.session.execute(
            select(Message)
            .where(
                Message.direction == MessageDirection.OUT,
                Message.status == MessageStatus.FAILED,
                Message.retry_count < max_retries,
            )
            .order_by(Message.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def release_stale_retries(self, cutoff: datetime) -> int:
        result = await self.session.execute(
            update(Message)
            .where(
                Message.direction == MessageDirection.OUT,
                Message.status == MessageStatus.RETRYING,
                Message.updated_at < cutoff,
            )
            .values({
                Message.status: MessageStatus.FAILED,
                Message.retry_count: Message.retry_count + 1,
                Message.error: "Retry abandoned",
                Message.updated_at: func.now(),
            })
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0


@asynccontextmanager
async def sql_store_scope() -> AsyncGenerator[SqlSchedulingStore, None]:
    """Open a unit of work backed by a fresh database session.

    Usage:
        async with sql_store_scope() as store:
            await store.list_tenants()
    """
    async with session_scope() as session:
        yield SqlSchedulingStore(session)
