"""
Campaign Lifecycle

Campaign phase state machine, draft authoring, bracket progress and the
time-driven phase advancement run.

    DRAFT -> ACTIVE -> GRACE_PERIOD -> LOCKED -> DONE
      \\________\\___________\\-> CANCELLED

Phase changes are compare-and-set updates; entering LOCKED sweeps
uncommitted pledges and generates settlement in the same transaction.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

from .bracket_resolver import (
    discount_percentage,
    resolve_bracket,
    sort_brackets,
    validate_bracket_partition,
)
from .models import (
    BracketProgress,
    BracketSpec,
    Campaign,
    CampaignCreateRequest,
    CampaignLockResult,
    CampaignPhase,
    CampaignUpdateRequest,
    DiscountBracket,
    PhaseAdvanceSummary,
    SettlementResult,
    UnknownStatus,
    parse_campaign_phase,
)
from .pledge_ledger import PledgeLedger
from .protocols import (
    CampaignRepositoryProtocol,
    PaymentIntentRepositoryProtocol,
    CampaignAccessDeniedError,
    CampaignNotFoundError,
    CampaignValidationError,
    PhaseViolationError,
)
from .settlement_generator import SettlementGenerator
from .events.models import CampaignLockedEventData
from .events.publishers import GroupBuyEventPublisher

logger = logging.getLogger(__name__)


CAMPAIGN_TRANSITIONS = {
    CampaignPhase.DRAFT: frozenset({CampaignPhase.ACTIVE, CampaignPhase.CANCELLED}),
    CampaignPhase.ACTIVE: frozenset({CampaignPhase.GRACE_PERIOD, CampaignPhase.CANCELLED}),
    CampaignPhase.GRACE_PERIOD: frozenset({CampaignPhase.LOCKED, CampaignPhase.CANCELLED}),
    CampaignPhase.LOCKED: frozenset({CampaignPhase.DONE}),
    CampaignPhase.CANCELLED: frozenset(),  # Terminal state
    CampaignPhase.DONE: frozenset(),  # Terminal state
}

SETTLED_PHASES = frozenset({CampaignPhase.LOCKED, CampaignPhase.DONE})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CampaignLifecycleService:
    """Campaign phase state machine"""

    def __init__(
        self,
        campaign_repository: CampaignRepositoryProtocol,
        intent_repository: PaymentIntentRepositoryProtocol,
        pledge_ledger: PledgeLedger,
        settlement_generator: SettlementGenerator,
        event_publisher: Optional[GroupBuyEventPublisher] = None,
        grace_period: timedelta = timedelta(hours=48),
    ):
        self.campaigns = campaign_repository
        self.intents = intent_repository
        self.pledge_ledger = pledge_ledger
        self.settlement_generator = settlement_generator
        self.event_publisher = event_publisher
        self.grace_period = grace_period

    # ====================
    # Draft Authoring
    # ====================

    async def create_campaign(self, supplier_id: str, request: CampaignCreateRequest) -> Campaign:
        """Create a campaign in DRAFT"""
        self._validate_schedule(request.start_date, request.end_date)

        campaign_id = f"gbc_{uuid.uuid4().hex[:16]}"
        brackets: List[DiscountBracket] = []
        if request.brackets:
            brackets = self._build_brackets(campaign_id, request.brackets)

        now = _utcnow()
        campaign = Campaign(
            campaign_id=campaign_id,
            supplier_id=supplier_id,
            title=request.title,
            description=request.description,
            start_date=request.start_date,
            end_date=request.end_date,
            target_quantity=request.target_quantity,
            brackets=brackets,
            phase=CampaignPhase.DRAFT,
            metadata=request.metadata or {},
            created_at=now,
            updated_at=now,
        )
        created = await self.campaigns.insert_campaign(campaign)
        logger.info(f"Campaign {campaign_id} created in draft by supplier {supplier_id}")
        return created

    async def update_campaign(
        self, campaign_id: str, supplier_id: str, request: CampaignUpdateRequest
    ) -> Campaign:
        """Update descriptive fields of a DRAFT campaign"""
        campaign = await self._get_draft_for_supplier(campaign_id, supplier_id)

        updates = request.model_dump(exclude_unset=True)
        if not updates:
            return campaign

        self._validate_schedule(
            updates.get("start_date", campaign.start_date),
            updates.get("end_date", campaign.end_date),
        )
        updated = await self.campaigns.update_campaign_fields(campaign_id, updates)
        if updated is None:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
        logger.info(f"Campaign {campaign_id} updated: {sorted(updates)}")
        return updated

    async def set_brackets(
        self, campaign_id: str, supplier_id: str, tiers: Sequence[BracketSpec]
    ) -> Campaign:
        """Replace the bracket list of a DRAFT campaign"""
        await self._get_draft_for_supplier(campaign_id, supplier_id)
        brackets = self._build_brackets(campaign_id, tiers)

        async with self.campaigns.transaction():
            await self.campaigns.replace_brackets(campaign_id, brackets)
            campaign = await self._get_campaign(campaign_id)

        logger.info(f"Campaign {campaign_id} brackets replaced ({len(brackets)} tiers)")
        return campaign

    async def delete_draft_campaign(self, campaign_id: str, supplier_id: str) -> bool:
        """Hard delete a never-published campaign"""
        await self._get_draft_for_supplier(campaign_id, supplier_id)
        deleted = await self.campaigns.delete_campaign(campaign_id)
        logger.info(f"Draft campaign {campaign_id} deleted")
        return deleted

    # ====================
    # Queries
    # ====================

    async def get_campaign(self, campaign_id: str) -> Campaign:
        return await self._get_campaign(campaign_id)

    async def list_campaigns(
        self,
        supplier_id: Optional[str] = None,
        phase: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Campaign]:
        phases = None
        if phase is not None:
            parsed = parse_campaign_phase(phase)
            if isinstance(parsed, UnknownStatus):
                raise CampaignValidationError(str(parsed), "phase")
            phases = [parsed]
        return await self.campaigns.list_campaigns(
            supplier_id=supplier_id, phases=phases, limit=limit, offset=offset
        )

    async def get_bracket_progress(self, campaign_id: str) -> BracketProgress:
        """
        Tier standing of a campaign.

        Before lock the basis is every non-withdrawn pledge; once settled only
        committed quantity counts.
        """
        campaign = await self._get_campaign(campaign_id)

        if campaign.phase in SETTLED_PHASES:
            basis = "committed"
            total = await self.pledge_ledger.total_committed_quantity(campaign_id)
        else:
            basis = "pledged"
            total = await self.pledge_ledger.total_active_quantity(campaign_id)

        resolution = resolve_bracket(campaign.brackets, total)
        base_price = sort_brackets(campaign.brackets)[0].unit_price
        next_bracket = resolution.next_bracket

        return BracketProgress(
            campaign_id=campaign_id,
            phase=campaign.phase,
            basis=basis,
            total_quantity=total,
            current_bracket=resolution.current_bracket,
            next_bracket=next_bracket,
            progress_percentage=resolution.progress_percentage,
            units_to_next_bracket=(next_bracket.min_quantity - total) if next_bracket else None,
            current_discount_percentage=discount_percentage(
                base_price, resolution.current_bracket.unit_price
            ),
        )

    # ====================
    # Phase Transitions
    # ====================

    async def publish_campaign(
        self, campaign_id: str, supplier_id: str, now: Optional[datetime] = None
    ) -> Campaign:
        """
        DRAFT -> ACTIVE.

        Raises:
            PhaseViolationError: campaign is not DRAFT
            BracketConfigurationError: brackets missing or not a partition
            CampaignValidationError: end date is not in the future
        """
        campaign = await self._get_owned_campaign(campaign_id, supplier_id)
        self._validate_transition(campaign, CampaignPhase.ACTIVE)

        validate_bracket_partition(campaign.brackets)
        now = now or _utcnow()
        if campaign.end_date <= now:
            raise CampaignValidationError("Campaign end date must be in the future", "end_date")

        published = await self._compare_and_set(
            campaign, CampaignPhase.ACTIVE, {"published_at": now}
        )
        logger.info(f"Campaign {campaign_id} published (ends {campaign.end_date.isoformat()})")
        if self.event_publisher:
            await self.event_publisher.publish_campaign_published(published)
        return published

    async def start_grace_period(self, campaign_id: str, now: Optional[datetime] = None) -> Campaign:
        """ACTIVE -> GRACE_PERIOD once the grace window before the end date is reached"""
        campaign = await self._get_campaign(campaign_id)
        self._validate_transition(campaign, CampaignPhase.GRACE_PERIOD)

        now = now or _utcnow()
        if now < campaign.end_date - self.grace_period:
            raise PhaseViolationError(
                f"Campaign {campaign_id} grace period starts at "
                f"{(campaign.end_date - self.grace_period).isoformat()}",
                campaign.phase,
            )

        started = await self._compare_and_set(
            campaign, CampaignPhase.GRACE_PERIOD, {"grace_period_ends_at": campaign.end_date}
        )
        logger.info(f"Campaign {campaign_id} entered grace period (ends {campaign.end_date.isoformat()})")
        if self.event_publisher:
            await self.event_publisher.publish_grace_period_started(started)
        return started

    async def lock_campaign(self, campaign_id: str, now: Optional[datetime] = None) -> CampaignLockResult:
        """
        GRACE_PERIOD -> LOCKED, then sweep and settle in one transaction.

        A campaign that is already LOCKED is returned unchanged; only the
        caller that wins the phase compare-and-set sweeps and settles.
        """
        campaign = await self._get_campaign(campaign_id)
        if campaign.phase == CampaignPhase.LOCKED:
            logger.info(f"Campaign {campaign_id} is already locked")
            return CampaignLockResult(campaign=campaign, locked_now=False)

        self._validate_transition(campaign, CampaignPhase.LOCKED)
        now = now or _utcnow()
        if now < campaign.end_date:
            raise PhaseViolationError(
                f"Campaign {campaign_id} grace period ends at {campaign.end_date.isoformat()}",
                campaign.phase,
            )

        async with self.campaigns.transaction():
            locked = await self.campaigns.compare_and_set_phase(
                campaign_id, CampaignPhase.GRACE_PERIOD, CampaignPhase.LOCKED, {"locked_at": now}
            )
            if locked is None:
                current = await self._get_campaign(campaign_id)
                if current.phase == CampaignPhase.LOCKED:
                    logger.info(f"Campaign {campaign_id} was locked concurrently")
                    return CampaignLockResult(campaign=current, locked_now=False)
                raise PhaseViolationError(
                    f"Campaign {campaign_id} cannot be locked from {current.phase.value}",
                    current.phase,
                )

            swept = await self.pledge_ledger.sweep_uncommitted(campaign_id)
            settlement = await self.settlement_generator.generate(campaign_id)

        logger.info(
            f"Campaign {campaign_id} locked: swept={swept}, intents={len(settlement.intents)}, "
            f"clearing price={settlement.clearing_price}"
        )
        await self._notify_locked(locked, settlement)
        return CampaignLockResult(
            campaign=locked, locked_now=True, swept_pledges=swept, settlement=settlement
        )

    async def cancel_campaign(
        self,
        campaign_id: str,
        supplier_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Campaign:
        """DRAFT/ACTIVE/GRACE_PERIOD -> CANCELLED; no settlement"""
        if supplier_id is not None:
            campaign = await self._get_owned_campaign(campaign_id, supplier_id)
        else:
            campaign = await self._get_campaign(campaign_id)
        self._validate_transition(campaign, CampaignPhase.CANCELLED)

        previous = campaign.phase
        cancelled = await self._compare_and_set(
            campaign, CampaignPhase.CANCELLED, {"cancelled_at": _utcnow()}
        )
        logger.info(f"Campaign {campaign_id} cancelled from {previous.value}")
        if self.event_publisher:
            await self.event_publisher.publish_campaign_cancelled(cancelled, previous.value, reason)
        return cancelled

    async def complete_campaign(self, campaign_id: str) -> Campaign:
        """LOCKED -> DONE once every payment intent has reached a terminal state"""
        campaign = await self._get_campaign(campaign_id)
        self._validate_transition(campaign, CampaignPhase.DONE)

        intents = await self.intents.list_payment_intents(campaign_id=campaign_id)
        open_intents = [i.intent_id for i in intents if not i.is_terminal]
        if open_intents:
            raise PhaseViolationError(
                f"Campaign {campaign_id} has {len(open_intents)} payment intents still open",
                campaign.phase,
            )

        done = await self._compare_and_set(campaign, CampaignPhase.DONE, {"completed_at": _utcnow()})
        logger.info(f"Campaign {campaign_id} completed")
        return done

    # ====================
    # Phase Advancement Run
    # ====================

    async def advance_due_phases(self, now: Optional[datetime] = None) -> PhaseAdvanceSummary:
        """
        Move every campaign whose time has come.

        ACTIVE campaigns within the grace window enter GRACE_PERIOD; GRACE_PERIOD
        campaigns past their end date are locked. One campaign's failure is
        recorded and does not stop the others.
        """
        now = now or _utcnow()
        summary = PhaseAdvanceSummary()
        logger.info(f"Advancing campaign phases at {now.isoformat()}")

        for campaign in await self.campaigns.find_campaigns_ending_before(
            CampaignPhase.ACTIVE, now + self.grace_period
        ):
            try:
                await self.start_grace_period(campaign.campaign_id, now=now)
                summary.grace_period_started.append(campaign.campaign_id)
            except Exception as e:
                logger.error(f"Failed to start grace period for {campaign.campaign_id}: {e}", exc_info=True)
                summary.failures[campaign.campaign_id] = str(e)

        for campaign in await self.campaigns.find_campaigns_ending_before(
            CampaignPhase.GRACE_PERIOD, now
        ):
            try:
                result = await self.lock_campaign(campaign.campaign_id, now=now)
                if result.locked_now:
                    summary.locked.append(campaign.campaign_id)
            except Exception as e:
                logger.error(f"Failed to lock campaign {campaign.campaign_id}: {e}", exc_info=True)
                summary.failures[campaign.campaign_id] = str(e)

        logger.info(
            f"Phase advancement finished: grace_period={len(summary.grace_period_started)}, "
            f"locked={len(summary.locked)}, failed={len(summary.failures)}"
        )
        return summary

    # ====================
    # Helpers
    # ====================

    async def _notify_locked(self, campaign: Campaign, settlement: SettlementResult) -> None:
        if not self.event_publisher or not settlement.intents:
            return

        base_price = sort_brackets(campaign.brackets)[0].unit_price
        discount = discount_percentage(base_price, settlement.clearing_price)
        for intent in settlement.intents:
            await self.event_publisher.publish_campaign_locked(
                CampaignLockedEventData(
                    campaign_id=campaign.campaign_id,
                    campaign_title=campaign.title,
                    buyer_org_id=intent.buyer_org_id,
                    pledge_id=intent.pledge_id,
                    intent_id=intent.intent_id,
                    quantity=intent.quantity,
                    unit_price=intent.unit_price,
                    total_amount=intent.amount,
                    discount_percentage=discount,
                )
            )

    async def _compare_and_set(self, campaign: Campaign, target: CampaignPhase, timestamps: dict) -> Campaign:
        updated = await self.campaigns.compare_and_set_phase(
            campaign.campaign_id, campaign.phase, target, timestamps
        )
        if updated is None:
            current = await self._get_campaign(campaign.campaign_id)
            raise PhaseViolationError(
                f"Campaign {campaign.campaign_id} moved to {current.phase.value} concurrently",
                current.phase,
            )
        return updated

    @staticmethod
    def _validate_transition(campaign: Campaign, target: CampaignPhase) -> None:
        if target not in CAMPAIGN_TRANSITIONS.get(campaign.phase, frozenset()):
            raise PhaseViolationError(
                f"Campaign {campaign.campaign_id} cannot move from {campaign.phase.value} to {target.value}",
                campaign.phase,
            )

    @staticmethod
    def _validate_schedule(start_date: datetime, end_date: datetime) -> None:
        if end_date <= start_date:
            raise CampaignValidationError("End date must be after start date", "end_date")

    @staticmethod
    def _build_brackets(campaign_id: str, tiers: Sequence[BracketSpec]) -> List[DiscountBracket]:
        brackets = [
            DiscountBracket(
                bracket_id=f"brk_{uuid.uuid4().hex[:16]}",
                campaign_id=campaign_id,
                min_quantity=tier.min_quantity,
                max_quantity=tier.max_quantity,
                unit_price=tier.unit_price,
                bracket_order=tier.bracket_order,
            )
            for tier in tiers
        ]
        return validate_bracket_partition(brackets)

    async def _get_campaign(self, campaign_id: str) -> Campaign:
        campaign = await self.campaigns.get_campaign(campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
        return campaign

    async def _get_owned_campaign(self, campaign_id: str, supplier_id: str) -> Campaign:
        campaign = await self._get_campaign(campaign_id)
        if campaign.supplier_id != supplier_id:
            raise CampaignAccessDeniedError("You do not have permission to manage this campaign")
        return campaign

    async def _get_draft_for_supplier(self, campaign_id: str, supplier_id: str) -> Campaign:
        campaign = await self._get_owned_campaign(campaign_id, supplier_id)
        if campaign.phase != CampaignPhase.DRAFT:
            raise PhaseViolationError(
                f"Campaign {campaign_id} can only be edited in draft. Current phase: {campaign.phase.value}",
                campaign.phase,
            )
        return campaign
