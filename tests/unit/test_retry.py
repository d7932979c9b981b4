"""Tests for the delivery retry coordinator."""

import asyncio
from datetime import timedelta
from unittest.mock import patch

import pytest

from bookingdesk.core.automation.retry import RetryCoordinator
from bookingdesk.core.errors import StoreError
from bookingdesk.models.database import MessageDirection, MessageStatus


@pytest.fixture
def customer(store, tenant):
    return store.seed_customer(tenant)


@pytest.fixture
def coordinator(store_factory, gateway, clock):
    return RetryCoordinator(store_factory, gateway=gateway, max_attempts=3, batch_size=10, clock=clock)


class TestRetryCoordinator:
    """Test RetryCoordinator.run."""

    @pytest.mark.asyncio
    async def test_successful_retry(self, coordinator, store, gateway, customer):
        message = store.seed_message(customer, content="Your appointment is confirmed.")
        message.error = "timeout"

        summary = await coordinator.run()

        assert message.status == MessageStatus.SENT
        assert message.error is None
        assert message.retry_count == 1
        assert gateway.sent == [(customer.phone, "Your appointment is confirmed.")]
        assert summary.changed == 1

    @pytest.mark.asyncio
    async def test_failed_retry_increments(self, coordinator, store, gateway, customer):
        message = store.seed_message(customer)
        gateway.failing_phones.add(customer.phone)

        summary = await coordinator.run()

        assert message.status == MessageStatus.FAILED
        assert message.retry_count == 2
        assert message.error == "gateway unavailable"
        assert summary.changed == 0

    @pytest.mark.asyncio
    async def test_stops_at_ceiling(self, coordinator, store, gateway, customer):
        """Three failed attempts in total leaves the message failed for good."""
        message = store.seed_message(customer, retry_count=1)
        gateway.failing_phones.add(customer.phone)

        for _ in range(4):
            await coordinator.run()

        assert message.retry_count == 3
        assert message.status == MessageStatus.FAILED
        assert len(gateway.sent) == 2

    @pytest.mark.asyncio
    async def test_ignores_other_messages(self, coordinator, store, gateway, customer):
        store.seed_message(customer, status=MessageStatus.SENT, retry_count=0)
        store.seed_message(customer, status=MessageStatus.PENDING, retry_count=0)
        inbound = store.seed_message(customer, status=MessageStatus.FAILED)
        inbound.direction = MessageDirection.IN

        await coordinator.run()

        assert gateway.sent == []

    @pytest.mark.asyncio
    async def test_batch_limit_oldest_first(self, store_factory, store, gateway, customer):
        messages = [store.seed_message(customer, content=f"m{i}") for i in range(5)]
        coordinator = RetryCoordinator(store_factory, gateway=gateway, max_attempts=3, batch_size=2)

        summary = await coordinator.run()

        assert [text for _, text in gateway.sent] == ["m0", "m1"]
        assert summary.processed == 2
        assert messages[4].status == MessageStatus.FAILED

    @pytest.mark.asyncio
    async def test_missing_customer_counts_as_failure(self, coordinator, store, gateway, customer):
        message = store.seed_message(customer)
        del store.customers[customer.id]

        await coordinator.run()

        assert gateway.sent == []
        assert message.status == MessageStatus.FAILED
        assert message.retry_count == 2

    @pytest.mark.asyncio
    async def test_error_on_one_message_is_isolated(self, coordinator, store, gateway, customer):
        first = store.seed_message(customer, content="first")
        second = store.seed_message(customer, content="second")
        original = store.get_customer
        calls = {"n": 0}

        async def flaky_get_customer(customer_id, tenant_id=None):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("connection reset")
            return await original(customer_id, tenant_id)

        with patch.object(store, "get_customer", new=flaky_get_customer):
            summary = await coordinator.run()

        assert summary.failures == 1
        assert summary.failed_units == [str(first.id)]
        assert second.status == MessageStatus.SENT

    @pytest.mark.asyncio
    async def test_status_set_to_retrying_before_send(self, coordinator, store, customer):
        message = store.seed_message(customer)
        seen = []

        class PeekingGateway:
            async def send(self, phone, text):
                seen.append(message.status)
                raise ConnectionError("down")

        coordinator.gateway = PeekingGateway()
        await coordinator.run()

        assert seen == [MessageStatus.RETRYING]
        assert message.status == MessageStatus.FAILED
        assert message.retry_count == 2


class TestInterruptedRetry:
    """Test that an interrupted attempt never leaves a message retrying."""

    @pytest.mark.asyncio
    async def test_cancelled_send_recorded_as_failed(self, coordinator, store, customer):
        message = store.seed_message(customer)

        class HangingGateway:
            async def send(self, phone, text):
                raise asyncio.CancelledError()

        coordinator.gateway = HangingGateway()

        with pytest.raises(asyncio.CancelledError):
            await coordinator.run()

        assert message.status == MessageStatus.FAILED
        assert message.retry_count == 2
        assert message.error == "Retry interrupted: CancelledError"

    @pytest.mark.asyncio
    async def test_failed_final_commit_keeps_known_outcome(self, coordinator, store, gateway, customer):
        message = store.seed_message(customer)
        commits = []

        async def flaky_commit():
            commits.append(message.status)
            if len(commits) == 2:
                # The rolled back session still holds the retrying row
                message.status = MessageStatus.RETRYING
                raise StoreError("connection lost")

        with patch.object(store, "commit", new=flaky_commit):
            summary = await coordinator.run()

        assert len(gateway.sent) == 1
        assert message.status == MessageStatus.SENT
        assert message.retry_count == 1
        assert len(commits) == 3
        assert summary.failures == 1

    @pytest.mark.asyncio
    async def test_failed_final_commit_after_failed_send(self, coordinator, store, gateway, customer):
        message = store.seed_message(customer)
        gateway.failing_phones.add(customer.phone)
        commits = []

        async def flaky_commit():
            commits.append(message.status)
            if len(commits) == 2:
                message.status = MessageStatus.RETRYING
                message.retry_count = 1
                raise StoreError("connection lost")

        with patch.object(store, "commit", new=flaky_commit):
            await coordinator.run()

        assert message.status == MessageStatus.FAILED
        assert message.retry_count == 2
        assert message.error == "gateway unavailable"

    @pytest.mark.asyncio
    async def test_stale_retrying_message_released_and_retried(self, coordinator, store, gateway, customer):
        message = store.seed_message(customer, status=MessageStatus.RETRYING)

        summary = await coordinator.run()

        assert message.status == MessageStatus.SENT
        assert message.retry_count == 2
        assert gateway.sent == [(customer.phone, "hello")]
        assert summary.changed == 1

    @pytest.mark.asyncio
    async def test_recent_retrying_message_left_alone(self, coordinator, store, gateway, customer, clock):
        message = store.seed_message(customer, status=MessageStatus.RETRYING)
        message.updated_at = clock() - timedelta(minutes=1)

        await coordinator.run()

        assert message.status == MessageStatus.RETRYING
        assert message.retry_count == 1
        assert gateway.sent == []

    @pytest.mark.asyncio
    async def test_stale_message_at_ceiling_stays_failed(self, coordinator, store, gateway, customer):
        message = store.seed_message(customer, status=MessageStatus.RETRYING, retry_count=2)

        await coordinator.run()

        assert message.status == MessageStatus.FAILED
        assert message.retry_count == 3
        assert message.error == "Retry abandoned"
        assert gateway.sent == []
