"""
Inbound Message Webhook

Receives chat gateway events. Always answers 200 so the gateway does not
redeliver; anything that is not a usable text message is ignored.
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ValidationError

from bookingdesk.api.deps import get_store
from bookingdesk.core.errors import BookingDeskError
from bookingdesk.core.messaging.inbound import record_inbound
from bookingdesk.core.store import SchedulingStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


class Sender(BaseModel):
    phone: Optional[str] = None
    name: Optional[str] = None


class MessageBody(BaseModel):
    text: Optional[str] = None


class MessagePayload(BaseModel):
    sender: Optional[Sender] = None
    payload: Optional[MessageBody] = None


class InboundEvent(BaseModel):
    """Gateway event envelope; only type "message" is processed."""
    type: Optional[str] = None
    payload: Optional[MessagePayload] = None


class WebhookAck(BaseModel):
    status: str


@router.post(
    "/messages/{tenant_id}",
    response_model=WebhookAck,
    summary="Inbound chat message",
)
async def inbound_message(
    tenant_id: UUID,
    request: Request,
    store: SchedulingStore = Depends(get_store),
) -> WebhookAck:
    """Log an inbound customer message, creating the customer if new."""
    try:
        event = InboundEvent.model_validate(await request.json())
    except (ValueError, ValidationError) as e:
        logger.info(f"Ignored malformed webhook for tenant {tenant_id}: {e}")
        return WebhookAck(status="ignored")

    if event.type != "message" or event.payload is None:
        return WebhookAck(status="ignored")

    sender = event.payload.sender
    text = event.payload.payload.text if event.payload.payload else None

    if not sender or not sender.phone or not text:
        logger.info("Ignored webhook (no text / phone)")
        return WebhookAck(status="ignored")

    try:
        await record_inbound(store, tenant_id, sender.phone, text, name=sender.name)
    except BookingDeskError as e:
        logger.warning(f"Inbound message for tenant {tenant_id} rejected: {e.message}")
        return WebhookAck(status="ignored")
    except Exception as e:
        logger.error(f"Webhook processing error for tenant {tenant_id}: {e}", exc_info=True)
        await store.rollback()
        return WebhookAck(status="error")

    return WebhookAck(status="stored")
