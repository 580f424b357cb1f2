"""
Group Buy Service Event Models

Event data models for group_buy_service.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Event Type Definitions (Service-Specific)
# =============================================================================

class GroupBuyEventType(str, Enum):
    """
    Events published by group_buy_service.

    Streams: campaign-stream, pledge-stream, payment-intent-stream
    """
    CAMPAIGN_PUBLISHED = "campaign.published"
    CAMPAIGN_GRACE_PERIOD_STARTED = "campaign.grace_period_started"
    CAMPAIGN_LOCKED = "campaign.locked"
    CAMPAIGN_CANCELLED = "campaign.cancelled"
    PLEDGE_COMMITTED = "pledge.committed"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_FAILED = "payment_intent.failed"
    PAYMENT_INTENT_SENT_TO_AR = "payment_intent.sent_to_ar"


class GroupBuySubscribedEventType(str, Enum):
    """Events that group_buy_service subscribes to from the payment gateway integration."""
    CHECKOUT_CREATED = "payment_gateway.checkout_created"
    PAYMENT_OUTCOME = "payment_gateway.outcome"


class GroupBuyStreamConfig:
    """Stream configuration for group_buy_service"""
    GATEWAY_SUBJECTS = "payment_gateway.>"
    CONSUMER_NAME = "group-buy-gateway"


# =============================================================================
# Published Event Data Models
# =============================================================================

class GroupBuyBaseEventData(BaseModel):
    """Base event data for group_buy_service events."""
    timestamp: datetime = Field(default_factory=_utcnow)


class CampaignPublishedEventData(GroupBuyBaseEventData):
    campaign_id: str
    supplier_id: str
    title: str
    end_date: datetime


class CampaignGracePeriodStartedEventData(GroupBuyBaseEventData):
    campaign_id: str
    supplier_id: str
    grace_period_ends_at: datetime


class CampaignLockedEventData(GroupBuyBaseEventData):
    """One per committed buyer, carrying that buyer's final bill"""
    campaign_id: str
    campaign_title: str
    buyer_org_id: str
    pledge_id: str
    intent_id: str
    quantity: int
    unit_price: Decimal
    total_amount: Decimal
    discount_percentage: Decimal


class CampaignCancelledEventData(GroupBuyBaseEventData):
    campaign_id: str
    supplier_id: str
    previous_phase: str
    reason: Optional[str] = None


class PledgeCommittedEventData(GroupBuyBaseEventData):
    pledge_id: str
    campaign_id: str
    buyer_org_id: str
    quantity: int
    committed_at: datetime


class PaymentIntentEventData(GroupBuyBaseEventData):
    intent_id: str
    campaign_id: str
    pledge_id: str
    buyer_org_id: str
    amount: Decimal
    status: str
    retry_count: int
    failure_reason: Optional[str] = None


# =============================================================================
# Subscribed Event Data Models
# =============================================================================

class CheckoutCreatedEventData(BaseModel):
    """payment_gateway.checkout_created"""
    intent_id: str
    checkout_id: Optional[str] = None


class PaymentOutcomeEventData(BaseModel):
    """payment_gateway.outcome"""
    intent_id: str
    outcome: str
    reason: Optional[str] = None
