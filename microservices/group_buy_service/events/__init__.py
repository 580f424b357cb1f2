"""
Group Buy Service Events

Event handlers and publishers for group buy service.
"""

from .models import (
    GroupBuyEventType,
    GroupBuySubscribedEventType,
    GroupBuyStreamConfig,
    CampaignPublishedEventData,
    CampaignGracePeriodStartedEventData,
    CampaignLockedEventData,
    CampaignCancelledEventData,
    PledgeCommittedEventData,
    PaymentIntentEventData,
    CheckoutCreatedEventData,
    PaymentOutcomeEventData,
)
from .handlers import GroupBuyEventHandler
from .publishers import GroupBuyEventPublisher

__all__ = [
    # Event Types
    "GroupBuyEventType",
    "GroupBuySubscribedEventType",
    "GroupBuyStreamConfig",
    # Event Data Models
    "CampaignPublishedEventData",
    "CampaignGracePeriodStartedEventData",
    "CampaignLockedEventData",
    "CampaignCancelledEventData",
    "PledgeCommittedEventData",
    "PaymentIntentEventData",
    "CheckoutCreatedEventData",
    "PaymentOutcomeEventData",
    # Handler and Publisher
    "GroupBuyEventHandler",
    "GroupBuyEventPublisher",
]
