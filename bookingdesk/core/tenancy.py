"""
Tenant context and per-tenant appointment settings.
"""

import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, ValidationError

from bookingdesk.core.errors import Forbidden, InvalidPayload

logger = logging.getLogger(__name__)

OWNER_ROLE = "owner"


class AppointmentSettings(BaseModel):
    """Structured form of a tenant's appointment_settings JSON."""

    model_config = ConfigDict(extra="ignore")

    reminder_24h: StrictBool = True
    reminder_2h: StrictBool = False
    no_show_grace_minutes: StrictInt = Field(default=30, ge=0)
    max_appointments_per_slot: StrictInt = Field(default=1, ge=1)

    @classmethod
    def from_stored(cls, stored: Optional[dict]) -> "AppointmentSettings":
        """Build settings from the persisted JSON, defaulting missing keys.

        A stored value that no longer validates is replaced by its default
        rather than breaking every booking for the tenant.
        """
        if not stored:
            return cls()
        try:
            return cls.model_validate(stored)
        except ValidationError as e:
            logger.warning(f"Stored appointment settings invalid, using defaults per field: {e}")
            defaults = cls()
            merged = defaults.model_dump()
            for key, value in stored.items():
                if key not in merged:
                    continue
                try:
                    cls.model_validate({key: value})
                except ValidationError:
                    continue
                merged[key] = value
            return cls.model_validate(merged)

    @classmethod
    def parse_update(cls, current: "AppointmentSettings", payload: dict) -> "AppointmentSettings":
        """Apply a partial update on top of current settings.

        Raises:
            InvalidPayload: If any provided field has the wrong type or range
        """
        if not isinstance(payload, dict):
            raise InvalidPayload("Settings payload must be an object")
        try:
            return cls.model_validate({**current.model_dump(), **payload})
        except ValidationError as e:
            raise InvalidPayload(f"Invalid appointment settings: {e.errors()[0]['msg']}")


@dataclass(frozen=True)
class TenantContext:
    """Caller identity as resolved by the upstream identity layer."""

    tenant_id: UUID
    role: str = OWNER_ROLE

    @property
    def is_owner(self) -> bool:
        return self.role == OWNER_ROLE

    def require_owner(self) -> None:
        """Raise Forbidden unless the caller is the tenant owner."""
        if not self.is_owner:
            raise Forbidden()
