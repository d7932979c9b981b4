"""
Database Models

SQLAlchemy ORM models for the multi-tenant appointment booking backend.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional, List

from sqlalchemy import (
    Boolean, DateTime, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint, Enum as SQLEnum, text
)
from sqlalchemy.dialects.postgresql import UUID, JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )


def _values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class AppointmentStatus(str, Enum):
    """Appointment status enumeration."""
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    NO_SHOW = "no_show"
    CANCELLED = "cancelled"


class MessageDirection(str, Enum):
    """Message direction enumeration."""
    IN = "in"
    OUT = "out"


class MessageStatus(str, Enum):
    """Outbound delivery status enumeration."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    RETRYING = "retrying"


class MessageType(str, Enum):
    """Distinguishes generated messages from free-form replies."""
    SYSTEM = "system"
    REPLY = "reply"


class Tenant(Base, TimestampMixin):
    """
    Tenant model (Business).

    All scheduling data is partitioned by tenant. Appointment settings are
    stored as JSON and read through AppointmentSettings.from_stored().
    """

    __tablename__ = "businesses"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    whatsapp_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    timezone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    appointment_settings: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    services: Mapped[List["Service"]] = relationship("Service", back_populates="tenant")
    rules: Mapped[List["AutomationRule"]] = relationship(
        "AutomationRule",
        back_populates="tenant"
    )

    def __repr__(self) -> str:
        return f"<Tenant(id={self.id}, name='{self.name}', timezone='{self.timezone}')>"


class Service(Base, TimestampMixin):
    """
    Service offered by a tenant.

    Appointments snapshot the duration at booking time, so later edits
    never change already-booked appointments.
    """

    __tablename__ = "services"
    __table_args__ = (
        Index("idx_service_tenant", "business_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        "business_id",
        UUID(as_uuid=True),
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    tenant: Mapped["Tenant"] = relationship("Tenant", back_populates="services")

    def __repr__(self) -> str:
        return f"<Service(id={self.id}, name='{self.name}', duration={self.duration_minutes})>"


class Combo(Base, TimestampMixin):
    """Ordered bundle of services. Deactivated, never deleted, once used."""

    __tablename__ = "combos"
    __table_args__ = (
        Index("idx_combo_tenant", "business_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        "business_id",
        UUID(as_uuid=True),
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    items: Mapped[List["ComboService"]] = relationship(
        "ComboService",
        order_by="ComboService.position",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    @property
    def service_ids(self) -> list[uuid.UUID]:
        """Service IDs in combo order."""
        return [item.service_id for item in self.items]


class ComboService(Base):
    """Position of a service within a combo."""

    __tablename__ = "combo_services"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    combo_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("combos.id", ondelete="CASCADE"),
        nullable=False
    )
    service_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("services.id"),
        nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class Customer(Base, TimestampMixin):
    """
    Customer model.

    Unique per (tenant, phone). Created lazily on first booking or first
    inbound message; the name is backfilled once and never overwritten.
    """

    __tablename__ = "customers"
    __table_args__ = (
        UniqueConstraint("business_id", "phone", name="uq_customer_tenant_phone"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        "business_id",
        UUID(as_uuid=True),
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False
    )
    phone: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<Customer(id={self.id}, phone='{self.phone}')>"


class Appointment(Base, TimestampMixin):
    """
    Appointment model.

    appointment_time is the canonical UTC start; slot_minutes is its
    minute of day in UTC. duration_minutes always equals the sum of the
    line-item durations captured at booking time.
    """

    __tablename__ = "appointments"
    __table_args__ = (
        Index("idx_appointment_tenant_time", "business_id", "appointment_time"),
        Index("idx_appointment_status", "business_id", "status"),
        Index("idx_appointment_customer", "customer_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        "business_id",
        UUID(as_uuid=True),
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False
    )
    combo_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("combos.id", ondelete="SET NULL"),
        nullable=True
    )
    service: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    appointment_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False
    )
    slot_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[AppointmentStatus] = mapped_column(
        SQLEnum(AppointmentStatus, name="appointment_status", values_callable=_values),
        default=AppointmentStatus.SCHEDULED,
        nullable=False
    )
    archived_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )

    customer: Mapped["Customer"] = relationship("Customer", lazy="selectin")
    line_items: Mapped[List["AppointmentService"]] = relationship(
        "AppointmentService",
        back_populates="appointment",
        order_by="AppointmentService.position",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return (
            f"<Appointment(id={self.id}, customer_id={self.customer_id}, "
            f"start={self.appointment_time}, status={self.status.value})>"
        )


class AppointmentService(Base):
    """Service line item captured when the appointment was booked."""

    __tablename__ = "appointment_services"
    __table_args__ = (
        Index("idx_appointment_service_appointment", "appointment_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=False
    )
    service_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("services.id"),
        nullable=False
    )
    service_name: Mapped[str] = mapped_column(String(255), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    appointment: Mapped["Appointment"] = relationship(
        "Appointment",
        back_populates="line_items"
    )


class AutomationRule(Base, TimestampMixin):
    """
    Reminder rule.

    Fires offset_minutes before an appointment's start. The reminder_24h
    and reminder_2h rules mirror the tenant's reminder settings flags.
    """

    __tablename__ = "automation_rules"
    __table_args__ = (
        UniqueConstraint("business_id", "rule_type", name="uq_rule_tenant_type"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        "business_id",
        UUID(as_uuid=True),
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False
    )
    rule_type: Mapped[str] = mapped_column(String(50), nullable=False)
    offset_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    message_template: Mapped[str] = mapped_column(Text, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    tenant: Mapped["Tenant"] = relationship("Tenant", back_populates="rules")

    def __repr__(self) -> str:
        return (
            f"<AutomationRule(id={self.id}, type='{self.rule_type}', "
            f"offset={self.offset_minutes}, enabled={self.enabled})>"
        )


class AutomationLog(Base):
    """
    Marks that a rule already fired for an appointment.

    The unique (appointment_id, rule_id) pair is the reminder idempotency
    guarantee. Rows are deleted when the appointment is rescheduled.
    """

    __tablename__ = "automation_logs"
    __table_args__ = (
        UniqueConstraint("appointment_id", "rule_id", name="uq_automation_log"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=False
    )
    rule_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("automation_rules.id", ondelete="CASCADE"),
        nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )


class Message(Base, TimestampMixin):
    """
    Chat message log.

    Outbound rows track delivery status and retries; inbound rows have no
    status.
    """

    __tablename__ = "messages"
    __table_args__ = (
        Index("idx_message_customer", "customer_id", "created_at"),
        Index("idx_message_status", "status", "retry_count"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False
    )
    direction: Mapped[MessageDirection] = mapped_column(
        SQLEnum(MessageDirection, name="message_direction", values_callable=_values),
        nullable=False
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[Optional[MessageStatus]] = mapped_column(
        SQLEnum(MessageStatus, name="message_status", values_callable=_values),
        nullable=True
    )
    message_type: Mapped[Optional[MessageType]] = mapped_column(
        SQLEnum(MessageType, name="message_type", values_callable=_values),
        nullable=True
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        status = self.status.value if self.status else None
        return f"<Message(id={self.id}, direction={self.direction.value}, status={status})>"
