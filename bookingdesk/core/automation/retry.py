"""
Delivery Retry Coordinator.

Resends failed outbound messages in small batches. Each attempt bumps
retry_count on failure; once it reaches the ceiling the message stays
failed for good.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import UUID

from bookingdesk.config import get_settings
from bookingdesk.core.messaging.outbox import dispatch
from bookingdesk.core.scans import ScanSummary
from bookingdesk.core.scheduling.timezones import utcnow
from bookingdesk.core.store import SchedulingStore, StoreFactory
from bookingdesk.infra.messaging import MessagingGateway, SendResult, STATUS_FAILED, get_messaging_gateway
from bookingdesk.models.database import Message, MessageStatus

logger = logging.getLogger(__name__)


class RetryCoordinator:
    """Retries failed outbound messages."""

    name = "retry"

    def __init__(
        self,
        store_factory: StoreFactory,
        gateway: Optional[MessagingGateway] = None,
        max_attempts: Optional[int] = None,
        batch_size: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
        stale_after_seconds: Optional[int] = None,
    ):
        """Initialize coordinator.

        Args:
            store_factory: Opens a unit of work
            gateway: Messaging gateway (defaults to singleton)
            max_attempts: Retry ceiling (defaults to settings, 3)
            batch_size: Messages per pass (defaults to settings, 10)
            clock: Returns the current UTC time
            stale_after_seconds: Age after which a retrying message counts as abandoned
        """
        settings = get_settings()
        self.store_factory = store_factory
        self.gateway = gateway if gateway is not None else get_messaging_gateway()
        self.max_attempts = max_attempts if max_attempts is not None else settings.max_retry_attempts
        self.batch_size = batch_size if batch_size is not None else settings.retry_batch_size
        self.clock = clock or utcnow
        self.stale_after_seconds = (
            stale_after_seconds if stale_after_seconds is not None else settings.retry_stale_after_seconds
        )

    async def run(self, now: Optional[datetime] = None) -> ScanSummary:
        """Retry one batch. Each message is its own unit of work.

        Messages left in retrying by a crashed process are first put back
        to failed, counting the lost attempt.
        """
        now = now or self.clock()
        summary = ScanSummary(self.name)

        async with self.store_factory() as store:
            released = await store.release_stale_retries(now - timedelta(seconds=self.stale_after_seconds))
            if released:
                await store.commit()
                logger.warning(f"Released {released} stale retrying message(s)")
            batch = await store.list_retryable_messages(self.max_attempts, self.batch_size)
            message_ids = [message.id for message in batch]

        for message_id in message_ids:
            summary.processed += 1
            try:
                async with self.store_factory() as store:
                    if await self.retry_message(store, message_id):
                        summary.changed += 1
            except Exception as e:
                summary.record_failure(message_id)
                logger.error(f"Retry of message {message_id} errored: {e}", exc_info=True)

        summary.log(logger)
        return summary

    async def retry_message(self, store: SchedulingStore, message_id: UUID) -> bool:
        """Resend one message.

        The message is committed as retrying before the send. If anything
        interrupts the attempt after that, including cancellation, the
        outcome is written in a fresh unit of work so the message never
        stays retrying.

        Returns:
            True if the message is now sent
        """
        message = await store.get_message(message_id)
        if message is None or message.status != MessageStatus.FAILED:
            return False
        if message.retry_count >= self.max_attempts:
            return False

        attempt = message.retry_count + 1
        message.status = MessageStatus.RETRYING
        message.updated_at = self.clock()
        await store.save_message(message)
        await store.commit()

        result: Optional[SendResult] = None
        try:
            customer = await store.get_customer(message.customer_id)
            if customer is None:
                result = SendResult(status=STATUS_FAILED, error="Customer not found")
            else:
                result = await dispatch(self.gateway, customer.phone, message.content)

            apply_outcome(message, result, attempt)
            await store.save_message(message)
            await store.commit()
        except BaseException as e:
            await self._settle(message_id, result, attempt, e)
            raise

        if result.submitted:
            logger.info(f"Retry succeeded for message {message.id}")
        else:
            logger.warning(
                f"Retry failed for message {message.id} "
                f"(attempt {attempt}/{self.max_attempts}): {message.error}"
            )
        return result.submitted

    async def _settle(
        self,
        message_id: UUID,
        result: Optional[SendResult],
        attempt: int,
        error: BaseException,
    ) -> None:
        """Record an interrupted attempt. Errors here are logged; the stale sweep covers them."""
        try:
            async with self.store_factory() as store:
                message = await store.get_message(message_id)
                if message is None:
                    return
                apply_outcome(message, result, attempt, interrupted=str(error) or type(error).__name__)
                message.updated_at = self.clock()
                await store.save_message(message)
                await store.commit()
        except Exception as e:
            logger.error(f"Could not settle interrupted retry of message {message_id}: {e}", exc_info=True)
            return
        logger.warning(f"Retry of message {message_id} interrupted, recorded as {message.status.value}")


def apply_outcome(
    message: Message,
    result: Optional[SendResult],
    attempt: int,
    interrupted: Optional[str] = None,
) -> None:
    """Set the final status of a retry attempt.

    retry_count is assigned, not incremented, so applying the same
    outcome twice is harmless.
    """
    if result is not None and result.submitted:
        message.status = MessageStatus.SENT
        message.error = None
        return
    message.status = MessageStatus.FAILED
    message.retry_count = attempt
    if result is not None:
        message.error = result.error or STATUS_FAILED
    else:
        message.error = f"Retry interrupted: {interrupted}"
