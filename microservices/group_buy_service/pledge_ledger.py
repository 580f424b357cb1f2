"""
Pledge Ledger

Buyer commitments under phase-dependent mutation rules. At most one pledge
row exists per (campaign, buyer); a withdrawn row is reactivated in place.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Union

from .models import (
    Campaign,
    CampaignPhase,
    Pledge,
    PledgeStatus,
    UnknownStatus,
    parse_pledge_status,
)
from .protocols import (
    CampaignRepositoryProtocol,
    PledgeRepositoryProtocol,
    OrganizationClientProtocol,
    DuplicateRecordError,
    CampaignNotFoundError,
    CampaignValidationError,
    DuplicateCommitmentError,
    InvalidTransitionError,
    OrganizationNotActiveError,
    PhaseViolationError,
    PledgeAccessDeniedError,
    PledgeNotFoundError,
)
from .events.publishers import GroupBuyEventPublisher

logger = logging.getLogger(__name__)


PLEDGE_TRANSITIONS = {
    PledgeStatus.PENDING: frozenset({PledgeStatus.COMMITTED, PledgeStatus.WITHDRAWN}),
    PledgeStatus.COMMITTED: frozenset(),
    PledgeStatus.WITHDRAWN: frozenset({PledgeStatus.PENDING}),
}

PLEDGE_OPEN_PHASES = frozenset({CampaignPhase.ACTIVE, CampaignPhase.GRACE_PERIOD})


class PledgeLedger:
    """Pledge create/update/cancel/commit and campaign aggregates"""

    def __init__(
        self,
        pledge_repository: PledgeRepositoryProtocol,
        campaign_repository: CampaignRepositoryProtocol,
        organization_client: OrganizationClientProtocol,
        event_publisher: Optional[GroupBuyEventPublisher] = None,
    ):
        self.pledges = pledge_repository
        self.campaigns = campaign_repository
        self.organization_client = organization_client
        self.event_publisher = event_publisher

    # ====================
    # Buyer Operations
    # ====================

    async def create_pledge(self, campaign_id: str, buyer_org_id: str, quantity: int) -> Pledge:
        """
        Create a PENDING pledge, or reactivate the buyer's withdrawn one.

        Raises:
            OrganizationNotActiveError: buyer organization is not active
            PhaseViolationError: campaign is not ACTIVE or GRACE_PERIOD
            DuplicateCommitmentError: a PENDING or COMMITTED pledge already exists
        """
        self._validate_quantity(quantity)

        # Remote lookup stays outside the transaction; the phase is read after it
        if not await self.organization_client.is_organization_active(buyer_org_id):
            raise OrganizationNotActiveError(f"Organization {buyer_org_id} is not active")

        async with self.pledges.transaction():
            # Share lock on the campaign row blocks a concurrent lock until this insert commits
            campaign = await self._get_campaign(campaign_id, for_share=True)
            if campaign.phase not in PLEDGE_OPEN_PHASES:
                raise PhaseViolationError(
                    f"Campaign {campaign_id} is not accepting pledges. Current phase: {campaign.phase.value}",
                    campaign.phase,
                )

            existing = await self.pledges.get_pledge_for_buyer(campaign_id, buyer_org_id)
            if existing is not None:
                if existing.status != PledgeStatus.WITHDRAWN:
                    raise DuplicateCommitmentError(
                        f"A pledge already exists for campaign {campaign_id} by buyer {buyer_org_id}"
                    )
                return await self._reactivate(existing, quantity)

            now = datetime.now(timezone.utc)
            pledge = Pledge(
                pledge_id=f"plg_{uuid.uuid4().hex[:16]}",
                campaign_id=campaign_id,
                buyer_org_id=buyer_org_id,
                quantity=quantity,
                status=PledgeStatus.PENDING,
                created_at=now,
                updated_at=now,
            )
            try:
                created = await self.pledges.insert_pledge(pledge)
            except DuplicateRecordError as e:
                raise DuplicateCommitmentError(
                    f"A pledge already exists for campaign {campaign_id} by buyer {buyer_org_id}"
                ) from e

        logger.info(f"Pledge {created.pledge_id} created for campaign {campaign_id} by {buyer_org_id} (qty={quantity})")
        return created

    async def update_pledge(self, pledge_id: str, buyer_org_id: str, quantity: int) -> Pledge:
        """Change quantity; ACTIVE phase and owning buyer only"""
        self._validate_quantity(quantity)
        pledge = await self._get_owned_pledge(pledge_id, buyer_org_id)

        async with self.pledges.transaction():
            await self._require_phase(pledge.campaign_id, CampaignPhase.ACTIVE, "modified")
            updated = await self.pledges.update_pledge_quantity(pledge_id, quantity)
            if updated is None:
                raise PledgeNotFoundError(f"Pledge {pledge_id} not found")

        logger.info(f"Pledge {pledge_id} quantity {pledge.quantity} -> {quantity}")
        return updated

    async def cancel_pledge(self, pledge_id: str, buyer_org_id: str) -> Pledge:
        """Withdraw a pledge; no-op if already withdrawn"""
        pledge = await self._get_owned_pledge(pledge_id, buyer_org_id)

        if pledge.status == PledgeStatus.WITHDRAWN:
            logger.debug(f"Pledge {pledge_id} is already withdrawn")
            return pledge

        async with self.pledges.transaction():
            await self._require_phase(pledge.campaign_id, CampaignPhase.ACTIVE, "cancelled")
            self._validate_transition(pledge.status, PledgeStatus.WITHDRAWN)

            withdrawn = await self.pledges.compare_and_set_pledge_status(
                pledge_id, pledge.status, PledgeStatus.WITHDRAWN, committed_at=None
            )
            if withdrawn is None:
                return await self._after_lost_race(pledge_id, PledgeStatus.WITHDRAWN)

        logger.info(f"Pledge {pledge_id} withdrawn by {buyer_org_id}")
        return withdrawn

    async def commit_pledge(self, pledge_id: str, buyer_org_id: str) -> Pledge:
        """
        Confirm a PENDING pledge during the grace period.

        Raises:
            PhaseViolationError: campaign is not in GRACE_PERIOD
            InvalidTransitionError: pledge is not PENDING
        """
        pledge = await self._get_owned_pledge(pledge_id, buyer_org_id)

        async with self.pledges.transaction():
            await self._require_phase(pledge.campaign_id, CampaignPhase.GRACE_PERIOD, "committed")
            self._validate_transition(pledge.status, PledgeStatus.COMMITTED)

            committed = await self.pledges.compare_and_set_pledge_status(
                pledge_id,
                PledgeStatus.PENDING,
                PledgeStatus.COMMITTED,
                committed_at=datetime.now(timezone.utc),
            )
            if committed is None:
                current = await self.pledges.get_pledge(pledge_id)
                raise InvalidTransitionError(
                    current.status if current else pledge.status, PledgeStatus.COMMITTED, entity="pledge"
                )

        logger.info(f"Pledge {pledge_id} committed (qty={committed.quantity})")
        if self.event_publisher:
            await self.event_publisher.publish_pledge_committed(committed)
        return committed

    # ====================
    # System Operations
    # ====================

    async def sweep_uncommitted(self, campaign_id: str) -> int:
        """Withdraw every PENDING pledge of the campaign"""
        count = await self.pledges.withdraw_pending_pledges(campaign_id)
        logger.info(f"Swept {count} uncommitted pledges for campaign {campaign_id}")
        return count

    async def total_committed_quantity(self, campaign_id: str) -> int:
        return await self.pledges.sum_pledge_quantity(campaign_id, [PledgeStatus.COMMITTED])

    async def total_active_quantity(self, campaign_id: str) -> int:
        """Committed + pending quantity, used for live progress before lock"""
        return await self.pledges.sum_pledge_quantity(
            campaign_id, [PledgeStatus.PENDING, PledgeStatus.COMMITTED]
        )

    # ====================
    # Queries
    # ====================

    async def get_pledge(self, pledge_id: str, buyer_org_id: Optional[str] = None) -> Pledge:
        if buyer_org_id is not None:
            return await self._get_owned_pledge(pledge_id, buyer_org_id)
        pledge = await self.pledges.get_pledge(pledge_id)
        if pledge is None:
            raise PledgeNotFoundError(f"Pledge {pledge_id} not found")
        return pledge

    async def list_buyer_pledges(self, buyer_org_id: str, status: Optional[str] = None) -> List[Pledge]:
        """Non-withdrawn pledges by default; a status filter selects exactly that status"""
        if status is None:
            statuses = [PledgeStatus.PENDING, PledgeStatus.COMMITTED]
        else:
            parsed: Union[PledgeStatus, UnknownStatus] = parse_pledge_status(status)
            if isinstance(parsed, UnknownStatus):
                raise CampaignValidationError(str(parsed), "status")
            statuses = [parsed]
        return await self.pledges.list_pledges(buyer_org_id=buyer_org_id, statuses=statuses)

    async def list_campaign_pledges(self, campaign_id: str) -> List[Pledge]:
        await self._get_campaign(campaign_id)
        return await self.pledges.list_pledges(campaign_id=campaign_id)

    # ====================
    # Helpers
    # ====================

    async def _reactivate(self, pledge: Pledge, quantity: int) -> Pledge:
        self._validate_transition(pledge.status, PledgeStatus.PENDING)
        reactivated = await self.pledges.compare_and_set_pledge_status(
            pledge.pledge_id,
            PledgeStatus.WITHDRAWN,
            PledgeStatus.PENDING,
            committed_at=None,
            quantity=quantity,
        )
        if reactivated is None:
            raise DuplicateCommitmentError(
                f"A pledge already exists for campaign {pledge.campaign_id} by buyer {pledge.buyer_org_id}"
            )
        logger.info(
            f"Reactivated withdrawn pledge {pledge.pledge_id} for campaign {pledge.campaign_id} "
            f"by {pledge.buyer_org_id} (qty={quantity})"
        )
        return reactivated

    async def _after_lost_race(self, pledge_id: str, target: PledgeStatus) -> Pledge:
        current = await self.pledges.get_pledge(pledge_id)
        if current is None:
            raise PledgeNotFoundError(f"Pledge {pledge_id} not found")
        if current.status == target:
            return current
        raise InvalidTransitionError(current.status, target, entity="pledge")

    async def _get_campaign(self, campaign_id: str, for_share: bool = False) -> Campaign:
        campaign = await self.campaigns.get_campaign(campaign_id, for_share=for_share)
        if campaign is None:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
        return campaign

    async def _get_owned_pledge(self, pledge_id: str, buyer_org_id: str) -> Pledge:
        pledge = await self.pledges.get_pledge(pledge_id)
        if pledge is None:
            raise PledgeNotFoundError(f"Pledge {pledge_id} not found")
        if pledge.buyer_org_id != buyer_org_id:
            raise PledgeAccessDeniedError("You do not have permission to modify this pledge")
        return pledge

    async def _require_phase(self, campaign_id: str, phase: CampaignPhase, action: str) -> Campaign:
        campaign = await self._get_campaign(campaign_id, for_share=True)
        if campaign.phase != phase:
            raise PhaseViolationError(
                f"Pledges can only be {action} during {phase.value}. "
                f"Campaign {campaign_id} is in {campaign.phase.value}",
                campaign.phase,
            )
        return campaign

    @staticmethod
    def _validate_transition(current: PledgeStatus, target: PledgeStatus) -> None:
        if target not in PLEDGE_TRANSITIONS.get(current, frozenset()):
            raise InvalidTransitionError(current, target, entity="pledge")

    @staticmethod
    def _validate_quantity(quantity: int) -> None:
        if quantity <= 0:
            raise CampaignValidationError("Pledge quantity must be positive", "quantity")
