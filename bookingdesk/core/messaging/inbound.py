"""Inbound chat messages: resolve the sender and log the text."""

import logging
from typing import Optional
from uuid import UUID

from bookingdesk.core.errors import InvalidPayload, NotFound
from bookingdesk.core.customers import resolve_customer
from bookingdesk.core.store import SchedulingStore
from bookingdesk.models.database import Message, MessageDirection

logger = logging.getLogger(__name__)


async def record_inbound(
    store: SchedulingStore,
    tenant_id: UUID,
    phone: str,
    text: str,
    name: Optional[str] = None,
) -> Message:
    """Log an inbound message, creating the customer on first contact.

    Args:
        store: Open unit of work
        tenant_id: Receiving tenant
        phone: Sender phone number
        text: Message body
        name: Sender display name, used only to backfill an empty name

    Returns:
        The logged message (status is None for inbound rows)
    """
    if not phone or text is None:
        raise InvalidPayload("Inbound message requires phone and text")

    if await store.get_tenant(tenant_id) is None:
        raise NotFound("Business not found")

    customer = await resolve_customer(store, tenant_id, phone, name)

    message = await store.add_message(
        Message(
            customer_id=customer.id,
            direction=MessageDirection.IN,
            content=text,
            status=None,
            message_type=None,
            retry_count=0,
        )
    )
    await store.commit()

    logger.info(f"Inbound message from customer {customer.id} for tenant {tenant_id}")
    return message
