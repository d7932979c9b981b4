"""
Automation Rule Engine.

Each pass looks one rule-offset ahead: a rule with offset N fires for
scheduled appointments starting in [now + N - 1min, now + N]. A firing is
logged only after the gateway accepts the message, and the
(appointment, rule) log makes every firing happen at most once.
"""

import logging
import re
from datetime import datetime, timedelta
from typing import Callable, Mapping, Optional

from bookingdesk.core.messaging.outbox import Outbox, dispatch
from bookingdesk.core.scans import ScanSummary, load_tenants
from bookingdesk.core.scheduling.timezones import REMINDER_FORMAT, format_local, utcnow
from bookingdesk.core.store import SchedulingStore, StoreFactory
from bookingdesk.infra.messaging import MessagingGateway, get_messaging_gateway
from bookingdesk.models.database import Appointment, AutomationRule, Tenant

logger = logging.getLogger(__name__)

WINDOW = timedelta(minutes=1)

PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")

DEFAULT_RULES: dict[str, dict] = {
    "reminder_24h": {
        "offset_minutes": 1440,
        "message_template": (
            "Reminder: your {{service}} appointment is tomorrow at "
            "{{appointment_time}}. Reply here if you need to reschedule."
        ),
    },
    "reminder_2h": {
        "offset_minutes": 120,
        "message_template": (
            "Reminder: your {{service}} appointment is at {{appointment_time}}. "
            "See you soon!"
        ),
    },
}


def render_template(template: str, context: Mapping[str, object]) -> str:
    """Substitute {{placeholders}} found in context; leave unknown ones as-is."""

    def substitute(match: re.Match) -> str:
        key = match.group(1)
        if key in context and context[key] is not None:
            return str(context[key])
        return match.group(0)

    return PLACEHOLDER.sub(substitute, template)


def firing_window(now: datetime, offset_minutes: int) -> tuple[datetime, datetime]:
    """The one-minute window a rule scans on this pass.

    now is truncated to the minute so consecutive once-a-minute passes
    produce adjacent windows regardless of when in the minute they run.
    """
    anchor = now.replace(second=0, microsecond=0) + timedelta(minutes=offset_minutes)
    return anchor - WINDOW, anchor


def reminder_context(tenant: Tenant, appointment: Appointment) -> dict[str, object]:
    customer = appointment.customer
    return {
        "service": appointment.service or "your service",
        "appointment_time": format_local(
            appointment.appointment_time,
            tenant.timezone,
            REMINDER_FORMAT,
        ),
        "customer_name": (customer.name if customer else None) or "",
        "business_name": tenant.name,
    }


class AutomationEngine:
    """Fires enabled reminder rules for every tenant."""

    name = "automation"

    def __init__(
        self,
        store_factory: StoreFactory,
        gateway: Optional[MessagingGateway] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize engine.

        Args:
            store_factory: Opens a unit of work
            gateway: Messaging gateway (defaults to singleton)
            clock: Returns the current UTC time
        """
        self.store_factory = store_factory
        self.gateway = gateway if gateway is not None else get_messaging_gateway()
        self.clock = clock or utcnow

    async def run(self, now: Optional[datetime] = None) -> ScanSummary:
        """Run one pass over all tenants and their enabled rules.

        A failing tenant or rule is logged and skipped; the pass continues.

        Returns:
            Summary with the number of reminders sent in changed
        """
        now = now or self.clock()
        summary = ScanSummary(self.name)

        for tenant in await load_tenants(self.store_factory):
            try:
                async with self.store_factory() as store:
                    rules = await store.list_rules(tenant.id, enabled_only=True)
            except Exception as e:
                summary.record_failure(tenant.id)
                logger.error(f"Could not load rules for tenant {tenant.id}: {e}", exc_info=True)
                continue

            for rule in rules:
                summary.processed += 1
                try:
                    summary.changed += await self.fire_rule(tenant, rule, now)
                except Exception as e:
                    summary.record_failure(rule.id)
                    logger.error(
                        f"Rule {rule.id} ({rule.rule_type}) failed for tenant {tenant.id}: {e}",
                        exc_info=True,
                    )

        summary.log(logger)
        return summary

    async def fire_rule(self, tenant: Tenant, rule: AutomationRule, now: datetime) -> int:
        """Send one rule's reminders for its current window.

        Returns:
            Number of reminders delivered
        """
        window_start, window_end = firing_window(now, rule.offset_minutes)
        sent = 0

        async with self.store_factory() as store:
            appointments = await store.list_due_appointments(tenant.id, window_start, window_end)

            for appointment in appointments:
                if await self._fire_one(store, tenant, rule, appointment):
                    sent += 1

        return sent

    async def _fire_one(
        self,
        store: SchedulingStore,
        tenant: Tenant,
        rule: AutomationRule,
        appointment: Appointment,
    ) -> bool:
        if await store.has_automation_log(appointment.id, rule.id):
            return False

        customer = appointment.customer or await store.get_customer(appointment.customer_id)
        if customer is None:
            logger.warning(f"Appointment {appointment.id} has no customer, skipping rule {rule.id}")
            return False

        text = render_template(rule.message_template, reminder_context(tenant, appointment))
        result = await dispatch(self.gateway, customer.phone, text)

        if not result.submitted:
            # No log row: a later pass inside the window may retry
            logger.warning(
                f"Reminder {rule.rule_type} for appointment {appointment.id} not submitted: {result.error}"
            )
            return False

        if not await store.add_automation_log(appointment.id, rule.id):
            logger.warning(f"Rule {rule.id} already logged for appointment {appointment.id}")
            return False

        await Outbox(store, self.gateway).record_sent(customer, text)
        await store.commit()

        logger.info(f"Rule {rule.id} executed for appointment {appointment.id} (tenant {tenant.id})")
        return True
