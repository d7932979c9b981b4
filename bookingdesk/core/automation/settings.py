"""
Tenant appointment settings and automation rule management.

The reminder_24h / reminder_2h settings flags and the enabled flag of the
rule with the same rule_type are always written together, in one unit of
work, whichever side the change comes from.
"""

import logging
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, ValidationError

from bookingdesk.core.automation.rules import DEFAULT_RULES
from bookingdesk.core.errors import InvalidPayload, NotFound
from bookingdesk.core.store import SchedulingStore
from bookingdesk.core.tenancy import AppointmentSettings, TenantContext
from bookingdesk.models.database import AutomationRule

logger = logging.getLogger(__name__)

# rule_type -> AppointmentSettings field
REMINDER_FLAGS = {
    "reminder_24h": "reminder_24h",
    "reminder_2h": "reminder_2h",
}


class RuleUpdate(BaseModel):
    """Partial update of an automation rule."""

    model_config = ConfigDict(extra="ignore")

    enabled: Optional[StrictBool] = None
    offset_minutes: Optional[StrictInt] = Field(default=None, ge=1)
    message_template: Optional[str] = Field(default=None, min_length=1)


async def get_appointment_settings(store: SchedulingStore, tenant_id: UUID) -> AppointmentSettings:
    """Current settings with defaults applied for anything unset."""
    tenant = await store.get_tenant(tenant_id)
    if tenant is None:
        raise NotFound("Business not found")
    return AppointmentSettings.from_stored(tenant.appointment_settings)


async def update_appointment_settings(
    store: SchedulingStore,
    context: TenantContext,
    payload: dict,
) -> AppointmentSettings:
    """Owner-only settings update; reminder rules follow the new flags.

    Args:
        store: Open unit of work
        context: Caller identity
        payload: Any subset of the settings fields

    Returns:
        The settings now in effect

    Raises:
        Forbidden: Caller is not the owner
        InvalidPayload: Wrong field type or out-of-range value
    """
    context.require_owner()

    current = await get_appointment_settings(store, context.tenant_id)
    updated = AppointmentSettings.parse_update(current, payload)

    await store.save_tenant_settings(context.tenant_id, updated.model_dump())
    await sync_reminder_rules(store, context.tenant_id, updated)
    await store.commit()

    logger.info(f"Updated appointment settings for tenant {context.tenant_id}: {updated.model_dump()}")
    return updated


async def sync_reminder_rules(
    store: SchedulingStore,
    tenant_id: UUID,
    settings: AppointmentSettings,
) -> list[AutomationRule]:
    """Align reminder rules with the settings flags, creating missing ones."""
    existing = {rule.rule_type: rule for rule in await store.list_rules(tenant_id)}
    synced = []

    for rule_type, flag in REMINDER_FLAGS.items():
        enabled = getattr(settings, flag)
        rule = existing.get(rule_type)

        if rule is None:
            defaults = DEFAULT_RULES[rule_type]
            rule = await store.add_rule(
                AutomationRule(
                    id=uuid4(),
                    tenant_id=tenant_id,
                    rule_type=rule_type,
                    offset_minutes=defaults["offset_minutes"],
                    message_template=defaults["message_template"],
                    enabled=enabled,
                )
            )
            logger.info(f"Created default {rule_type} rule for tenant {tenant_id}")
        elif rule.enabled != enabled:
            rule.enabled = enabled
            await store.save_rule(rule)

        synced.append(rule)

    return synced


async def list_rules(store: SchedulingStore, tenant_id: UUID) -> list[AutomationRule]:
    """All rules of the tenant ordered by offset."""
    return await store.list_rules(tenant_id)


async def update_rule(
    store: SchedulingStore,
    context: TenantContext,
    rule_id: UUID,
    payload: dict,
) -> AutomationRule:
    """Owner-only rule update.

    Toggling a reminder rule also flips the matching settings flag.

    Raises:
        Forbidden: Caller is not the owner
        InvalidPayload: No updatable field, or invalid values
        NotFound: Rule absent or owned by another tenant
    """
    context.require_owner()

    if not isinstance(payload, dict):
        raise InvalidPayload("Rule payload must be an object")
    try:
        update = RuleUpdate.model_validate(payload)
    except ValidationError as e:
        raise InvalidPayload(f"Invalid rule update: {e.errors()[0]['msg']}")

    changes = update.model_dump(exclude_none=True)
    if not changes:
        raise InvalidPayload("No valid fields to update")

    rule = await store.get_rule(context.tenant_id, rule_id)
    if rule is None:
        raise NotFound("Automation rule not found")

    for key, value in changes.items():
        setattr(rule, key, value)
    await store.save_rule(rule)

    flag = REMINDER_FLAGS.get(rule.rule_type)
    if flag is not None and "enabled" in changes:
        current = await get_appointment_settings(store, context.tenant_id)
        if getattr(current, flag) != rule.enabled:
            updated = current.model_copy(update={flag: rule.enabled})
            await store.save_tenant_settings(context.tenant_id, updated.model_dump())

    await store.commit()

    logger.info(f"Updated rule {rule_id} for tenant {context.tenant_id}: {changes}")
    return rule
