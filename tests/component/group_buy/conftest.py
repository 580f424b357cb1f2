"""
Component Test Fixtures for Group Buy Service

Real services wired against an in-memory repository that honours
transactions (snapshot/rollback), compare-and-set updates and the
uniqueness constraints of the storage schema.
"""

import asyncio
import copy
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

import pytest
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from microservices.group_buy_service.campaign_lifecycle import CampaignLifecycleService
from microservices.group_buy_service.events.publishers import GroupBuyEventPublisher
from microservices.group_buy_service.payment_intent_service import PaymentIntentService
from microservices.group_buy_service.pledge_ledger import PledgeLedger
from microservices.group_buy_service.protocols import DuplicateRecordError
from microservices.group_buy_service.retry_reconciliation import RetryReconciliationJob
from microservices.group_buy_service.settlement_generator import SettlementGenerator
from tests.component.mocks import MockEventBus
from tests.contracts.group_buy.data_contract import (
    Campaign,
    CampaignPhase,
    DiscountBracket,
    PaymentIntent,
    PaymentIntentStatus,
    PaymentIntentTransition,
    Pledge,
    PledgeStatus,
    GroupBuyTestDataFactory,
)

GRACE_PERIOD = timedelta(hours=48)


# ====================
# Mock Repository
# ====================


class InMemoryGroupBuyRepository:
    """In-memory implementation of the campaign, pledge and intent repositories"""

    def __init__(self):
        self.campaigns: Dict[str, Campaign] = {}
        self.pledges: Dict[str, Pledge] = {}
        self.intents: Dict[str, PaymentIntent] = {}
        self.transitions: List[PaymentIntentTransition] = []
        self.fail_intent_insert_after: Optional[int] = None
        self._intent_inserts = 0
        self._lock = asyncio.Lock()
        self._depth: ContextVar[int] = ContextVar("in_memory_tx_depth", default=0)

    async def initialize(self):
        pass

    async def close(self):
        pass

    async def health_check(self) -> bool:
        return True

    @asynccontextmanager
    async def transaction(self):
        depth = self._depth.get()
        if depth == 0:
            await self._lock.acquire()
        token = self._depth.set(depth + 1)
        snapshot = self._snapshot()
        try:
            yield
        except BaseException:
            self._restore(snapshot)
            raise
        finally:
            self._depth.reset(token)
            if depth == 0:
                self._lock.release()

    def _snapshot(self):
        return copy.deepcopy((self.campaigns, self.pledges, self.intents, self.transitions))

    def _restore(self, snapshot):
        self.campaigns, self.pledges, self.intents, self.transitions = snapshot

    # Seeding helpers

    def add_campaign(self, campaign: Campaign) -> Campaign:
        self.campaigns[campaign.campaign_id] = campaign.model_copy(deep=True)
        return campaign

    def add_pledge(self, pledge: Pledge) -> Pledge:
        self.pledges[pledge.pledge_id] = pledge.model_copy(deep=True)
        return pledge

    def add_intent(self, intent: PaymentIntent) -> PaymentIntent:
        self.intents[intent.intent_id] = intent.model_copy(deep=True)
        return intent

    # Campaigns

    async def get_campaign(self, campaign_id: str, for_share: bool = False) -> Optional[Campaign]:
        # Transactions already serialize on self._lock
        campaign = self.campaigns.get(campaign_id)
        return campaign.model_copy(deep=True) if campaign else None

    async def insert_campaign(self, campaign: Campaign) -> Campaign:
        if campaign.campaign_id in self.campaigns:
            raise DuplicateRecordError("duplicate campaign", constraint="campaigns_pkey")
        return self.add_campaign(campaign).model_copy(deep=True)

    async def update_campaign_fields(self, campaign_id: str, updates: Dict[str, Any]) -> Optional[Campaign]:
        campaign = self.campaigns.get(campaign_id)
        if campaign is None:
            return None
        for key, value in updates.items():
            setattr(campaign, key, value)
        campaign.updated_at = datetime.now(timezone.utc)
        return campaign.model_copy(deep=True)

    async def replace_brackets(self, campaign_id: str, brackets: Sequence[DiscountBracket]) -> List[DiscountBracket]:
        campaign = self.campaigns[campaign_id]
        campaign.brackets = [b.model_copy(deep=True) for b in brackets]
        return [b.model_copy(deep=True) for b in campaign.brackets]

    async def delete_campaign(self, campaign_id: str) -> bool:
        return self.campaigns.pop(campaign_id, None) is not None

    async def compare_and_set_phase(
        self,
        campaign_id: str,
        expected: CampaignPhase,
        new_phase: CampaignPhase,
        timestamps: Optional[Dict[str, datetime]] = None,
    ) -> Optional[Campaign]:
        campaign = self.campaigns.get(campaign_id)
        if campaign is None or campaign.phase != expected:
            return None
        campaign.phase = new_phase
        for key, value in (timestamps or {}).items():
            setattr(campaign, key, value)
        campaign.updated_at = datetime.now(timezone.utc)
        return campaign.model_copy(deep=True)

    async def list_campaigns(
        self,
        supplier_id: Optional[str] = None,
        phases: Optional[Sequence[CampaignPhase]] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Campaign]:
        results = list(self.campaigns.values())
        if supplier_id:
            results = [c for c in results if c.supplier_id == supplier_id]
        if phases:
            results = [c for c in results if c.phase in phases]
        return [c.model_copy(deep=True) for c in results[offset:offset + limit]]

    async def find_campaigns_ending_before(self, phase: CampaignPhase, cutoff: datetime) -> List[Campaign]:
        return [
            c.model_copy(deep=True)
            for c in self.campaigns.values()
            if c.phase == phase and c.end_date <= cutoff
        ]

    # Pledges

    async def get_pledge(self, pledge_id: str) -> Optional[Pledge]:
        pledge = self.pledges.get(pledge_id)
        return pledge.model_copy(deep=True) if pledge else None

    async def get_pledge_for_buyer(self, campaign_id: str, buyer_org_id: str) -> Optional[Pledge]:
        for pledge in self.pledges.values():
            if pledge.campaign_id == campaign_id and pledge.buyer_org_id == buyer_org_id:
                return pledge.model_copy(deep=True)
        return None

    async def insert_pledge(self, pledge: Pledge) -> Pledge:
        for existing in self.pledges.values():
            if existing.campaign_id == pledge.campaign_id and existing.buyer_org_id == pledge.buyer_org_id:
                raise DuplicateRecordError("duplicate pledge", constraint="uq_pledges_campaign_buyer")
        return self.add_pledge(pledge).model_copy(deep=True)

    async def update_pledge_quantity(self, pledge_id: str, quantity: int) -> Optional[Pledge]:
        pledge = self.pledges.get(pledge_id)
        if pledge is None:
            return None
        pledge.quantity = quantity
        pledge.updated_at = datetime.now(timezone.utc)
        return pledge.model_copy(deep=True)

    async def compare_and_set_pledge_status(
        self,
        pledge_id: str,
        expected: PledgeStatus,
        new_status: PledgeStatus,
        committed_at: Optional[datetime] = None,
        quantity: Optional[int] = None,
    ) -> Optional[Pledge]:
        pledge = self.pledges.get(pledge_id)
        if pledge is None or pledge.status != expected:
            return None
        pledge.status = new_status
        pledge.committed_at = committed_at
        if quantity is not None:
            pledge.quantity = quantity
        pledge.updated_at = datetime.now(timezone.utc)
        return pledge.model_copy(deep=True)

    async def withdraw_pending_pledges(self, campaign_id: str) -> int:
        count = 0
        for pledge in self.pledges.values():
            if pledge.campaign_id == campaign_id and pledge.status == PledgeStatus.PENDING:
                pledge.status = PledgeStatus.WITHDRAWN
                count += 1
        return count

    async def list_pledges(
        self,
        campaign_id: Optional[str] = None,
        buyer_org_id: Optional[str] = None,
        statuses: Optional[Sequence[PledgeStatus]] = None,
    ) -> List[Pledge]:
        results = list(self.pledges.values())
        if campaign_id:
            results = [p for p in results if p.campaign_id == campaign_id]
        if buyer_org_id:
            results = [p for p in results if p.buyer_org_id == buyer_org_id]
        if statuses:
            results = [p for p in results if p.status in statuses]
        return [p.model_copy(deep=True) for p in results]

    async def sum_pledge_quantity(self, campaign_id: str, statuses: Sequence[PledgeStatus]) -> int:
        return sum(
            p.quantity
            for p in self.pledges.values()
            if p.campaign_id == campaign_id and p.status in statuses
        )

    # Payment intents

    async def insert_payment_intent(self, intent: PaymentIntent) -> PaymentIntent:
        if self.fail_intent_insert_after is not None and self._intent_inserts >= self.fail_intent_insert_after:
            raise RuntimeError("storage failure while inserting payment intent")
        if any(i.pledge_id == intent.pledge_id for i in self.intents.values()):
            raise DuplicateRecordError("duplicate intent", constraint="uq_payment_intents_pledge")
        self._intent_inserts += 1
        return self.add_intent(intent).model_copy(deep=True)

    async def get_payment_intent(self, intent_id: str) -> Optional[PaymentIntent]:
        intent = self.intents.get(intent_id)
        return intent.model_copy(deep=True) if intent else None

    async def compare_and_set_intent_status(
        self,
        intent_id: str,
        expected: PaymentIntentStatus,
        new_status: PaymentIntentStatus,
        retry_count: int,
        failure_reason: Optional[str] = None,
    ) -> Optional[PaymentIntent]:
        intent = self.intents.get(intent_id)
        if intent is None or intent.status != expected:
            return None
        intent.status = new_status
        intent.retry_count = retry_count
        intent.failure_reason = failure_reason
        intent.updated_at = datetime.now(timezone.utc)
        return intent.model_copy(deep=True)

    async def add_intent_transition(self, transition: PaymentIntentTransition) -> PaymentIntentTransition:
        self.transitions.append(transition.model_copy(deep=True))
        return transition

    async def list_intent_transitions(self, intent_id: str) -> List[PaymentIntentTransition]:
        return [t.model_copy(deep=True) for t in self.transitions if t.intent_id == intent_id]

    async def list_payment_intents(
        self,
        campaign_id: Optional[str] = None,
        buyer_org_id: Optional[str] = None,
        statuses: Optional[Sequence[PaymentIntentStatus]] = None,
        max_retry_count: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[PaymentIntent]:
        results = list(self.intents.values())
        if campaign_id:
            results = [i for i in results if i.campaign_id == campaign_id]
        if buyer_org_id:
            results = [i for i in results if i.buyer_org_id == buyer_org_id]
        if statuses:
            results = [i for i in results if i.status in statuses]
        if max_retry_count is not None:
            results = [i for i in results if i.retry_count <= max_retry_count]
        if limit is not None:
            results = results[:limit]
        return [i.model_copy(deep=True) for i in results]


# ====================
# Mock Service Clients
# ====================


class MockOrganizationClient:
    """Organization activity lookups; unknown organizations are active"""

    def __init__(self):
        self.inactive: set = set()
        self.calls: List[str] = []

    async def is_organization_active(self, organization_id: str) -> bool:
        self.calls.append(organization_id)
        # Yield so concurrent callers interleave here
        await asyncio.sleep(0)
        return organization_id not in self.inactive


# ====================
# Fixtures
# ====================


@pytest.fixture
def repository() -> InMemoryGroupBuyRepository:
    return InMemoryGroupBuyRepository()


@pytest.fixture
def organization_client() -> MockOrganizationClient:
    return MockOrganizationClient()


@pytest.fixture
def event_publisher(mock_event_bus: MockEventBus) -> GroupBuyEventPublisher:
    return GroupBuyEventPublisher(mock_event_bus)


@pytest.fixture
def pledge_ledger(repository, organization_client, event_publisher) -> PledgeLedger:
    return PledgeLedger(
        pledge_repository=repository,
        campaign_repository=repository,
        organization_client=organization_client,
        event_publisher=event_publisher,
    )


@pytest.fixture
def settlement_generator(repository) -> SettlementGenerator:
    return SettlementGenerator(
        campaign_repository=repository,
        pledge_repository=repository,
        intent_repository=repository,
    )


@pytest.fixture
def lifecycle(repository, pledge_ledger, settlement_generator, event_publisher) -> CampaignLifecycleService:
    return CampaignLifecycleService(
        campaign_repository=repository,
        intent_repository=repository,
        pledge_ledger=pledge_ledger,
        settlement_generator=settlement_generator,
        event_publisher=event_publisher,
        grace_period=GRACE_PERIOD,
    )


@pytest.fixture
def payment_intents(repository, event_publisher) -> PaymentIntentService:
    return PaymentIntentService(intent_repository=repository, event_publisher=event_publisher)


@pytest.fixture
def reconciliation_job(payment_intents) -> RetryReconciliationJob:
    return RetryReconciliationJob(payment_intent_service=payment_intents, batch_size=500)


@pytest.fixture
def seed(repository):
    """Insert test data directly into the in-memory store"""

    class Seeder:
        @staticmethod
        def campaign(phase: CampaignPhase = CampaignPhase.ACTIVE, **kwargs) -> Campaign:
            return repository.add_campaign(GroupBuyTestDataFactory.make_campaign(phase=phase, **kwargs))

        @staticmethod
        def pledge(campaign: Campaign, **kwargs) -> Pledge:
            return repository.add_pledge(
                GroupBuyTestDataFactory.make_pledge(campaign_id=campaign.campaign_id, **kwargs)
            )

        @staticmethod
        def intent(**kwargs) -> PaymentIntent:
            return repository.add_intent(GroupBuyTestDataFactory.make_payment_intent(**kwargs))

    return Seeder()
