"""
Group Buy Service Data Contract

Re-exports the group_buy_service models and provides test data factories.
All group buy tests build their data through GroupBuyTestDataFactory.
"""

import random
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple
from uuid import uuid4

from microservices.group_buy_service.models import (
    # Enums
    CampaignPhase,
    PledgeStatus,
    PaymentIntentStatus,
    GatewayOutcome,
    # Models
    Campaign,
    DiscountBracket,
    Pledge,
    PaymentIntent,
    PaymentIntentTransition,
    # Requests
    BracketSpec,
    CampaignCreateRequest,
    CampaignUpdateRequest,
    PledgeCreateRequest,
)

# (min, max, unit price) of the standard three-tier schedule
STANDARD_TIERS: Tuple[Tuple[int, Optional[int], str], ...] = (
    (0, 99, "100.00"),
    (100, 249, "90.00"),
    (250, None, "80.00"),
)


class GroupBuyTestDataFactory:
    """Factory for generating test data for group buy service tests

    Usage:
        factory = GroupBuyTestDataFactory()
        campaign = factory.make_campaign(phase=CampaignPhase.ACTIVE)
        pledge = factory.make_pledge(campaign_id=campaign.campaign_id)
    """

    @staticmethod
    def make_id(prefix: str) -> str:
        """Generate a unique ID with prefix"""
        return f"{prefix}_{uuid4().hex[:16]}"

    @classmethod
    def make_campaign_id(cls) -> str:
        return cls.make_id("gbc")

    @classmethod
    def make_pledge_id(cls) -> str:
        return cls.make_id("plg")

    @classmethod
    def make_intent_id(cls) -> str:
        return cls.make_id("pi")

    @classmethod
    def make_org_id(cls) -> str:
        return cls.make_id("org")

    @staticmethod
    def make_title() -> str:
        items = ["Office Chairs", "Laptops", "Printer Paper", "Standing Desks", "Monitors"]
        return f"Bulk {random.choice(items)} {random.randint(1, 100)}"

    @staticmethod
    def now() -> datetime:
        return datetime.now(timezone.utc)

    # ====================
    # Brackets
    # ====================

    @classmethod
    def make_bracket_specs(
        cls, tiers: Sequence[Tuple[int, Optional[int], str]] = STANDARD_TIERS
    ) -> List[BracketSpec]:
        return [
            BracketSpec(
                min_quantity=low,
                max_quantity=high,
                unit_price=Decimal(price),
                bracket_order=order,
            )
            for order, (low, high, price) in enumerate(tiers)
        ]

    @classmethod
    def make_brackets(
        cls,
        campaign_id: Optional[str] = None,
        tiers: Sequence[Tuple[int, Optional[int], str]] = STANDARD_TIERS,
    ) -> List[DiscountBracket]:
        return [
            DiscountBracket(
                bracket_id=cls.make_id("brk"),
                campaign_id=campaign_id,
                min_quantity=low,
                max_quantity=high,
                unit_price=Decimal(price),
                bracket_order=order,
            )
            for order, (low, high, price) in enumerate(tiers)
        ]

    # ====================
    # Campaigns
    # ====================

    @classmethod
    def make_campaign(
        cls,
        phase: CampaignPhase = CampaignPhase.DRAFT,
        supplier_id: Optional[str] = None,
        end_date: Optional[datetime] = None,
        tiers: Sequence[Tuple[int, Optional[int], str]] = STANDARD_TIERS,
    ) -> Campaign:
        """Campaign in any phase; end date defaults to ten days out"""
        campaign_id = cls.make_campaign_id()
        now = cls.now()
        end = end_date or now + timedelta(days=10)
        return Campaign(
            campaign_id=campaign_id,
            supplier_id=supplier_id or cls.make_org_id(),
            title=cls.make_title(),
            description="Test group buy campaign",
            start_date=min(now, end) - timedelta(days=1),
            end_date=end,
            target_quantity=250,
            brackets=cls.make_brackets(campaign_id, tiers) if tiers else [],
            phase=phase,
            grace_period_ends_at=end if phase == CampaignPhase.GRACE_PERIOD else None,
            created_at=now,
            updated_at=now,
        )

    @classmethod
    def make_campaign_create_request(
        cls,
        with_brackets: bool = True,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> CampaignCreateRequest:
        now = cls.now()
        return CampaignCreateRequest(
            title=cls.make_title(),
            description="Bulk purchase for member organizations",
            start_date=start_date or now,
            end_date=end_date or now + timedelta(days=10),
            target_quantity=250,
            brackets=cls.make_bracket_specs() if with_brackets else [],
        )

    @classmethod
    def make_campaign_update_request(cls, **overrides) -> CampaignUpdateRequest:
        return CampaignUpdateRequest(**overrides)

    # ====================
    # Pledges
    # ====================

    @classmethod
    def make_pledge(
        cls,
        campaign_id: Optional[str] = None,
        buyer_org_id: Optional[str] = None,
        quantity: int = 10,
        status: PledgeStatus = PledgeStatus.PENDING,
    ) -> Pledge:
        now = cls.now()
        return Pledge(
            pledge_id=cls.make_pledge_id(),
            campaign_id=campaign_id or cls.make_campaign_id(),
            buyer_org_id=buyer_org_id or cls.make_org_id(),
            quantity=quantity,
            status=status,
            committed_at=now if status == PledgeStatus.COMMITTED else None,
            created_at=now,
            updated_at=now,
        )

    @classmethod
    def make_pledge_create_request(
        cls, campaign_id: str, quantity: int = 10
    ) -> PledgeCreateRequest:
        return PledgeCreateRequest(campaign_id=campaign_id, quantity=quantity)

    # ====================
    # Payment Intents
    # ====================

    @classmethod
    def make_payment_intent(
        cls,
        campaign_id: Optional[str] = None,
        pledge_id: Optional[str] = None,
        buyer_org_id: Optional[str] = None,
        quantity: int = 10,
        unit_price: Decimal = Decimal("90.00"),
        status: PaymentIntentStatus = PaymentIntentStatus.PENDING,
        retry_count: int = 0,
    ) -> PaymentIntent:
        now = cls.now()
        return PaymentIntent(
            intent_id=cls.make_intent_id(),
            campaign_id=campaign_id or cls.make_campaign_id(),
            pledge_id=pledge_id or cls.make_pledge_id(),
            buyer_org_id=buyer_org_id or cls.make_org_id(),
            quantity=quantity,
            unit_price=unit_price,
            amount=unit_price * quantity,
            status=status,
            retry_count=retry_count,
            created_at=now,
            updated_at=now,
        )


__all__ = [
    "CampaignPhase",
    "PledgeStatus",
    "PaymentIntentStatus",
    "GatewayOutcome",
    "Campaign",
    "DiscountBracket",
    "Pledge",
    "PaymentIntent",
    "PaymentIntentTransition",
    "BracketSpec",
    "CampaignCreateRequest",
    "CampaignUpdateRequest",
    "PledgeCreateRequest",
    "STANDARD_TIERS",
    "GroupBuyTestDataFactory",
]
