"""
Outbound message log.

Every message sent to a customer is written to the message log first and
then handed to the gateway. Delivery failures never propagate: the row is
left as "failed" for the retry scan to pick up.
"""

import logging
from typing import Optional
from uuid import UUID

from bookingdesk.core.errors import NotFound
from bookingdesk.core.store import SchedulingStore
from bookingdesk.infra.messaging import STATUS_FAILED, MessagingGateway, SendResult
from bookingdesk.models.database import (
    Customer,
    Message,
    MessageDirection,
    MessageStatus,
    MessageType,
)

logger = logging.getLogger(__name__)


async def dispatch(gateway: MessagingGateway, phone: str, text: str) -> SendResult:
    """Send through the gateway, turning unexpected errors into a failed result."""
    try:
        return await gateway.send(phone, text)
    except Exception as e:
        logger.error(f"Messaging gateway raised for {phone}: {e}", exc_info=True)
        return SendResult(status=STATUS_FAILED, error=str(e) or e.__class__.__name__)


class Outbox:
    """Writes outbound messages to the log and delivers them."""

    def __init__(self, store: SchedulingStore, gateway: MessagingGateway):
        self.store = store
        self.gateway = gateway

    async def send_system_message(self, customer: Customer, content: str) -> Message:
        """Send a generated message (confirmation, reschedule notice)."""
        return await self._send(customer, content, MessageType.SYSTEM)

    async def send_reply(self, tenant_id: UUID, customer_id: UUID, text: str) -> Message:
        """Send a free-form reply to a customer of this tenant.

        Raises:
            NotFound: If the customer does not belong to the tenant
        """
        customer = await self.store.get_customer(customer_id, tenant_id=tenant_id)
        if customer is None:
            raise NotFound("Customer not found")
        return await self._send(customer, text, MessageType.REPLY)

    async def record_sent(self, customer: Customer, content: str) -> Message:
        """Log a system message that was already delivered elsewhere."""
        message = Message(
            customer_id=customer.id,
            direction=MessageDirection.OUT,
            content=content,
            status=MessageStatus.SENT,
            message_type=MessageType.SYSTEM,
            retry_count=0,
        )
        return await self.store.add_message(message)

    async def _send(
        self,
        customer: Customer,
        content: str,
        message_type: Optional[MessageType],
    ) -> Message:
        message = Message(
            customer_id=customer.id,
            direction=MessageDirection.OUT,
            content=content,
            status=MessageStatus.PENDING,
            message_type=message_type,
            retry_count=0,
        )
        message = await self.store.add_message(message)

        result = await dispatch(self.gateway, customer.phone, content)

        if result.submitted:
            message.status = MessageStatus.SENT
        else:
            message.status = MessageStatus.FAILED
            message.retry_count = 1
            message.error = result.error or STATUS_FAILED
            logger.warning(f"Message {message.id} to customer {customer.id} failed: {message.error}")

        await self.store.save_message(message)
        return message
