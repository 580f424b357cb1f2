"""
Group Buy Event Publishers

Publishes events to NATS JetStream. Publishing is fire-and-forget: failures
are logged and reported as False, never raised into the caller's state change.
"""

import logging
from typing import Any, Dict, Optional

from core.nats_client import Event

from ..models import Campaign, PaymentIntent, Pledge
from .models import (
    GroupBuyEventType,
    CampaignPublishedEventData,
    CampaignGracePeriodStartedEventData,
    CampaignLockedEventData,
    CampaignCancelledEventData,
    PledgeCommittedEventData,
    PaymentIntentEventData,
)

logger = logging.getLogger(__name__)


class GroupBuyEventPublisher:
    """Publisher for group buy service events"""

    def __init__(self, event_bus=None):
        self.event_bus = event_bus
        self.source = "group_buy_service"

    async def publish(
        self,
        event_type: GroupBuyEventType,
        data: Dict[str, Any],
    ) -> bool:
        """
        Publish an event to NATS.

        Args:
            event_type: The event type enum
            data: Event data payload (JSON-safe)

        Returns:
            True if published successfully, False otherwise
        """
        if not self.event_bus:
            logger.debug(f"Event bus not configured, skipping publish: {event_type.value}")
            return False

        try:
            event = Event(event_type=event_type, source=self.source, data=data)
            published = await self.event_bus.publish_event(event)
            if published is False:
                logger.warning(f"Event bus rejected event {event_type.value}")
                return False
            logger.debug(f"Published event: {event_type.value}")
            return True

        except Exception as e:
            logger.error(f"Failed to publish event {event_type.value}: {e}")
            return False

    # ====================
    # Campaign Lifecycle Events
    # ====================

    async def publish_campaign_published(self, campaign: Campaign) -> bool:
        data = CampaignPublishedEventData(
            campaign_id=campaign.campaign_id,
            supplier_id=campaign.supplier_id,
            title=campaign.title,
            end_date=campaign.end_date,
        )
        return await self.publish(GroupBuyEventType.CAMPAIGN_PUBLISHED, data.model_dump(mode="json"))

    async def publish_grace_period_started(self, campaign: Campaign) -> bool:
        data = CampaignGracePeriodStartedEventData(
            campaign_id=campaign.campaign_id,
            supplier_id=campaign.supplier_id,
            grace_period_ends_at=campaign.grace_period_ends_at or campaign.end_date,
        )
        return await self.publish(
            GroupBuyEventType.CAMPAIGN_GRACE_PERIOD_STARTED, data.model_dump(mode="json")
        )

    async def publish_campaign_locked(self, data: CampaignLockedEventData) -> bool:
        """Publish campaign.locked for one committed buyer"""
        return await self.publish(GroupBuyEventType.CAMPAIGN_LOCKED, data.model_dump(mode="json"))

    async def publish_campaign_cancelled(
        self, campaign: Campaign, previous_phase: str, reason: Optional[str] = None
    ) -> bool:
        data = CampaignCancelledEventData(
            campaign_id=campaign.campaign_id,
            supplier_id=campaign.supplier_id,
            previous_phase=previous_phase,
            reason=reason,
        )
        return await self.publish(GroupBuyEventType.CAMPAIGN_CANCELLED, data.model_dump(mode="json"))

    # ====================
    # Pledge Events
    # ====================

    async def publish_pledge_committed(self, pledge: Pledge) -> bool:
        data = PledgeCommittedEventData(
            pledge_id=pledge.pledge_id,
            campaign_id=pledge.campaign_id,
            buyer_org_id=pledge.buyer_org_id,
            quantity=pledge.quantity,
            committed_at=pledge.committed_at,
        )
        return await self.publish(GroupBuyEventType.PLEDGE_COMMITTED, data.model_dump(mode="json"))

    # ====================
    # Payment Intent Events
    # ====================

    async def publish_payment_intent(
        self, event_type: GroupBuyEventType, intent: PaymentIntent
    ) -> bool:
        data = PaymentIntentEventData(
            intent_id=intent.intent_id,
            campaign_id=intent.campaign_id,
            pledge_id=intent.pledge_id,
            buyer_org_id=intent.buyer_org_id,
            amount=intent.amount,
            status=intent.status.value,
            retry_count=intent.retry_count,
            failure_reason=intent.failure_reason,
        )
        return await self.publish(event_type, data.model_dump(mode="json"))
