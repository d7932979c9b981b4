"""Customer resolution shared by booking and inbound messaging."""

import logging
from typing import Optional
from uuid import UUID

from bookingdesk.core.store import SchedulingStore
from bookingdesk.models.database import Customer

logger = logging.getLogger(__name__)


async def resolve_customer(
    store: SchedulingStore,
    tenant_id: UUID,
    phone: str,
    name: Optional[str] = None,
) -> Customer:
    """Find the tenant's customer by phone, creating it on first contact.

    A name is only ever backfilled onto a customer that has none; an
    existing name is never overwritten.
    """
    phone = phone.strip()
    name = name.strip() if name else None

    customer = await store.find_customer_by_phone(tenant_id, phone)
    if customer is None:
        customer = await store.add_customer(tenant_id, phone, name)
        logger.info(f"Created customer {customer.id} for tenant {tenant_id}")
        return customer

    if name and not customer.name:
        await store.set_customer_name(customer, name)
        logger.debug(f"Backfilled name for customer {customer.id}")

    return customer
