"""
Component Tests for Group Buy Event Handlers and Publisher

Gateway signals arrive through the event bus subscription; published events
are fire-and-forget.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from microservices.group_buy_service.events import (
    GroupBuyEventHandler,
    GroupBuyEventPublisher,
    GroupBuyEventType,
    GroupBuyStreamConfig,
)
from microservices.group_buy_service.events.models import CampaignLockedEventData
from tests.contracts.group_buy.data_contract import PaymentIntentStatus

S = PaymentIntentStatus


@pytest_asyncio.fixture
async def subscribed_handler(payment_intents, mock_event_bus):
    handler = GroupBuyEventHandler(payment_intent_service=payment_intents)
    await mock_event_bus.subscribe_to_events(
        GroupBuyStreamConfig.GATEWAY_SUBJECTS,
        handler.handle,
        durable=GroupBuyStreamConfig.CONSUMER_NAME,
    )
    return handler


@pytest.mark.component
class TestGatewayEventHandling:

    @pytest.mark.asyncio
    async def test_checkout_created_starts_processing(self, subscribed_handler, mock_event_bus, seed, repository):
        intent = seed.intent(status=S.PENDING)

        await mock_event_bus.simulate_event(
            "payment_gateway.checkout_created", {"intent_id": intent.intent_id, "checkout_id": "cs_123"}
        )

        assert repository.intents[intent.intent_id].status == S.PROCESSING

    @pytest.mark.asyncio
    async def test_success_outcome(self, subscribed_handler, mock_event_bus, seed, repository):
        intent = seed.intent(status=S.PROCESSING)

        await mock_event_bus.simulate_event(
            "payment_gateway.outcome", {"intent_id": intent.intent_id, "outcome": "SUCCEEDED"}
        )

        assert repository.intents[intent.intent_id].status == S.SUCCEEDED
        mock_event_bus.assert_event_published("payment_intent.succeeded")

    @pytest.mark.asyncio
    async def test_failed_outcome_retries(self, subscribed_handler, mock_event_bus, seed, repository):
        intent = seed.intent(status=S.PROCESSING, retry_count=1)

        await mock_event_bus.simulate_event(
            "payment_gateway.outcome",
            {"intent_id": intent.intent_id, "outcome": "failed", "reason": "card expired"},
        )

        stored = repository.intents[intent.intent_id]
        assert stored.status == S.FAILED_RETRY_2
        assert stored.failure_reason == "card expired"

    @pytest.mark.asyncio
    async def test_redelivered_failure_counts_once(self, subscribed_handler, mock_event_bus, seed, repository):
        # Given: A processing intent
        intent = seed.intent(status=S.PROCESSING)
        payload = {"intent_id": intent.intent_id, "outcome": "failed", "reason": "card expired"}

        # When: The same failure is delivered three times
        for _ in range(3):
            await mock_event_bus.simulate_event("payment_gateway.outcome", payload)

        # Then: One failed attempt is recorded and nothing is escalated
        stored = repository.intents[intent.intent_id]
        assert stored.status == S.FAILED_RETRY_1
        assert stored.retry_count == 1

    @pytest.mark.asyncio
    async def test_unknown_outcome_ignored(self, subscribed_handler, mock_event_bus, seed, repository):
        intent = seed.intent(status=S.PROCESSING)

        await mock_event_bus.simulate_event(
            "payment_gateway.outcome", {"intent_id": intent.intent_id, "outcome": "refunded"}
        )

        assert repository.intents[intent.intent_id].status == S.PROCESSING

    @pytest.mark.asyncio
    async def test_rejected_transition_is_dropped(self, subscribed_handler, mock_event_bus, seed, repository):
        intent = seed.intent(status=S.WRITTEN_OFF, retry_count=3)

        await mock_event_bus.simulate_event(
            "payment_gateway.outcome", {"intent_id": intent.intent_id, "outcome": "succeeded"}
        )

        assert repository.intents[intent.intent_id].status == S.WRITTEN_OFF

    @pytest.mark.asyncio
    async def test_malformed_payload_is_dropped(self, subscribed_handler, mock_event_bus):
        await mock_event_bus.simulate_event("payment_gateway.outcome", {"outcome": "succeeded"})

    @pytest.mark.asyncio
    async def test_unknown_intent_is_dropped(self, subscribed_handler, mock_event_bus):
        await mock_event_bus.simulate_event(
            "payment_gateway.outcome", {"intent_id": "pi_missing", "outcome": "succeeded"}
        )

    @pytest.mark.asyncio
    async def test_infrastructure_error_propagates(self, mock_event_bus):
        service = MagicMock()
        service.start_processing = AsyncMock(side_effect=ConnectionError("database unavailable"))
        handler = GroupBuyEventHandler(payment_intent_service=service)

        with pytest.raises(ConnectionError):
            await handler.handle_event("payment_gateway.checkout_created", {"intent_id": "pi_1"})

        service.start_processing.assert_awaited_once_with("pi_1")

    @pytest.mark.asyncio
    async def test_unrouted_event_type(self):
        handler = GroupBuyEventHandler()

        await handler.handle_event("payment_gateway.refund_issued", {"intent_id": "pi_1"})


@pytest.mark.component
class TestEventPublisher:

    @pytest.mark.asyncio
    async def test_publish_success(self, mock_event_bus):
        publisher = GroupBuyEventPublisher(mock_event_bus)

        published = await publisher.publish(GroupBuyEventType.CAMPAIGN_PUBLISHED, {"campaign_id": "gbc_1"})

        assert published is True
        event = mock_event_bus.assert_event_published("campaign.published")
        assert event["source"] == "group_buy_service"

    @pytest.mark.asyncio
    async def test_publish_without_bus(self):
        publisher = GroupBuyEventPublisher()

        assert await publisher.publish(GroupBuyEventType.CAMPAIGN_PUBLISHED, {}) is False

    @pytest.mark.asyncio
    async def test_publish_error_is_swallowed(self, mock_event_bus):
        mock_event_bus.set_error(ConnectionError("nats down"))
        publisher = GroupBuyEventPublisher(mock_event_bus)

        assert await publisher.publish(GroupBuyEventType.CAMPAIGN_PUBLISHED, {}) is False

    @pytest.mark.asyncio
    async def test_publish_rejected(self, mock_event_bus):
        mock_event_bus.set_reject()
        publisher = GroupBuyEventPublisher(mock_event_bus)

        assert await publisher.publish(GroupBuyEventType.CAMPAIGN_PUBLISHED, {}) is False

    @pytest.mark.asyncio
    async def test_campaign_locked_payload(self, mock_event_bus):
        publisher = GroupBuyEventPublisher(mock_event_bus)

        await publisher.publish_campaign_locked(
            CampaignLockedEventData(
                campaign_id="gbc_1",
                campaign_title="Bulk Monitors",
                buyer_org_id="org_1",
                pledge_id="plg_1",
                intent_id="pi_1",
                quantity=60,
                unit_price=Decimal("90.00"),
                total_amount=Decimal("5400.00"),
                discount_percentage=Decimal("10"),
            )
        )

        data = mock_event_bus.assert_event_published("campaign.locked")["data"]
        assert data["total_amount"] == "5400.00"
        assert data["buyer_org_id"] == "org_1"
