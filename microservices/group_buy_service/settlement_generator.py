"""
Settlement Generator

Converts the committed pledges of a LOCKED campaign into payment intents at
one clearing price. A pledge yields at most one intent; a second attempt
fails and rolls back the whole batch.
"""

import logging
import uuid
from datetime import datetime, timezone

from .bracket_resolver import resolve_bracket
from .models import (
    CampaignPhase,
    PaymentIntent,
    PaymentIntentStatus,
    PledgeStatus,
    SettlementResult,
)
from .protocols import (
    CampaignRepositoryProtocol,
    PaymentIntentRepositoryProtocol,
    PledgeRepositoryProtocol,
    CampaignNotFoundError,
    DuplicateRecordError,
    DuplicateSettlementError,
    PhaseViolationError,
)

logger = logging.getLogger(__name__)


class SettlementGenerator:
    """Produces one payment intent per committed pledge"""

    def __init__(
        self,
        campaign_repository: CampaignRepositoryProtocol,
        pledge_repository: PledgeRepositoryProtocol,
        intent_repository: PaymentIntentRepositoryProtocol,
    ):
        self.campaigns = campaign_repository
        self.pledges = pledge_repository
        self.intents = intent_repository

    async def generate(self, campaign_id: str) -> SettlementResult:
        """
        Create payment intents for every COMMITTED pledge of a LOCKED campaign.

        Raises:
            PhaseViolationError: campaign is not LOCKED
            DuplicateSettlementError: a pledge already has an intent
            BracketConfigurationError: brackets do not cover the committed total
        """
        campaign = await self.campaigns.get_campaign(campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
        if campaign.phase != CampaignPhase.LOCKED:
            raise PhaseViolationError(
                f"Settlement requires a LOCKED campaign. Campaign {campaign_id} is in {campaign.phase.value}",
                campaign.phase,
            )

        committed = await self.pledges.list_pledges(
            campaign_id=campaign_id, statuses=[PledgeStatus.COMMITTED]
        )
        total_quantity = sum(p.quantity for p in committed)
        resolution = resolve_bracket(campaign.brackets, total_quantity)
        clearing_price = resolution.current_bracket.unit_price

        result = SettlementResult(
            campaign_id=campaign_id,
            total_committed_quantity=total_quantity,
            clearing_price=clearing_price,
        )

        now = datetime.now(timezone.utc)
        async with self.intents.transaction():
            for pledge in committed:
                intent = PaymentIntent(
                    intent_id=f"pi_{uuid.uuid4().hex[:16]}",
                    campaign_id=campaign_id,
                    pledge_id=pledge.pledge_id,
                    buyer_org_id=pledge.buyer_org_id,
                    quantity=pledge.quantity,
                    unit_price=clearing_price,
                    amount=clearing_price * pledge.quantity,
                    status=PaymentIntentStatus.PENDING,
                    retry_count=0,
                    created_at=now,
                    updated_at=now,
                )
                try:
                    result.intents.append(await self.intents.insert_payment_intent(intent))
                except DuplicateRecordError as e:
                    raise DuplicateSettlementError(
                        f"Pledge {pledge.pledge_id} already has a payment intent"
                    ) from e

        logger.info(
            f"Settled campaign {campaign_id}: {len(result.intents)} intents, "
            f"total qty={total_quantity}, clearing price={clearing_price}"
        )
        return result
