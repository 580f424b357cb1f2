"""
Group Buy Service Data Models

Pydantic models for campaigns, discount brackets, pledges and payment intents.
"""

from enum import Enum
from typing import Optional, Dict, Any, List, Type, TypeVar, Union
from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, Field


# ====================
# Enum Types
# ====================

class CampaignPhase(str, Enum):
    """Campaign lifecycle phase"""
    DRAFT = "draft"
    ACTIVE = "active"
    GRACE_PERIOD = "grace_period"
    LOCKED = "locked"
    CANCELLED = "cancelled"
    DONE = "done"


class PledgeStatus(str, Enum):
    """Pledge status"""
    PENDING = "pending"
    COMMITTED = "committed"
    WITHDRAWN = "withdrawn"


class PaymentIntentStatus(str, Enum):
    """Payment intent status"""
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED_RETRY_1 = "failed_retry_1"
    FAILED_RETRY_2 = "failed_retry_2"
    FAILED_RETRY_3 = "failed_retry_3"
    SENT_TO_AR = "sent_to_ar"
    COLLECTED_VIA_AR = "collected_via_ar"
    WRITTEN_OFF = "written_off"


class GatewayOutcome(str, Enum):
    """Normalized payment gateway signal"""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"


TERMINAL_INTENT_STATUSES = frozenset({
    PaymentIntentStatus.SUCCEEDED,
    PaymentIntentStatus.COLLECTED_VIA_AR,
    PaymentIntentStatus.WRITTEN_OFF,
})


# ====================
# Status Parsing
# ====================

class UnknownStatus(BaseModel):
    """A status string that does not name any known member"""
    kind: str
    value: str

    def __str__(self) -> str:
        return f"unknown {self.kind} '{self.value}'"


E = TypeVar("E", bound=Enum)


def _parse_status(enum_cls: Type[E], kind: str, value: Optional[str]) -> Union[E, UnknownStatus]:
    if value is None:
        return UnknownStatus(kind=kind, value="")
    normalized = value.strip().lower()
    for member in enum_cls:
        if member.value == normalized:
            return member
    return UnknownStatus(kind=kind, value=value)


def parse_campaign_phase(value: Optional[str]) -> Union[CampaignPhase, UnknownStatus]:
    return _parse_status(CampaignPhase, "campaign phase", value)


def parse_pledge_status(value: Optional[str]) -> Union[PledgeStatus, UnknownStatus]:
    return _parse_status(PledgeStatus, "pledge status", value)


def parse_payment_intent_status(value: Optional[str]) -> Union[PaymentIntentStatus, UnknownStatus]:
    return _parse_status(PaymentIntentStatus, "payment intent status", value)


def parse_gateway_outcome(value: Optional[str]) -> Union[GatewayOutcome, UnknownStatus]:
    return _parse_status(GatewayOutcome, "gateway outcome", value)


# ====================
# Core Data Models
# ====================

class DiscountBracket(BaseModel):
    """Quantity tier mapped to a unit price"""
    bracket_id: Optional[str] = None
    campaign_id: Optional[str] = None
    min_quantity: int = Field(..., ge=0)
    max_quantity: Optional[int] = Field(default=None, ge=0, description="None means unbounded")
    unit_price: Decimal
    bracket_order: int = Field(..., ge=0)

    def contains(self, quantity: int) -> bool:
        if quantity < self.min_quantity:
            return False
        return self.max_quantity is None or quantity <= self.max_quantity


class Campaign(BaseModel):
    """Group-buy campaign"""
    campaign_id: str = Field(..., description="Unique campaign ID")
    supplier_id: str = Field(..., description="Owning supplier organization")
    title: str
    description: Optional[str] = None

    # Schedule
    start_date: datetime
    end_date: datetime
    target_quantity: int = Field(default=0, ge=0)

    # Pricing
    brackets: List[DiscountBracket] = Field(default_factory=list)

    # Lifecycle
    phase: CampaignPhase = CampaignPhase.DRAFT
    grace_period_ends_at: Optional[datetime] = None
    published_at: Optional[datetime] = None
    locked_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    metadata: Dict[str, Any] = Field(default_factory=dict)

    # Timestamps
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Pledge(BaseModel):
    """A buyer organization's commitment to a campaign"""
    pledge_id: str = Field(..., description="Unique pledge ID")
    campaign_id: str
    buyer_org_id: str
    quantity: int = Field(..., gt=0)
    status: PledgeStatus = PledgeStatus.PENDING
    committed_at: Optional[datetime] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PaymentIntent(BaseModel):
    """Obligation to collect payment for one committed pledge"""
    intent_id: str = Field(..., description="Unique payment intent ID")
    campaign_id: str
    pledge_id: str
    buyer_org_id: str

    quantity: int = Field(..., gt=0)
    unit_price: Decimal
    amount: Decimal

    status: PaymentIntentStatus = PaymentIntentStatus.PENDING
    retry_count: int = Field(default=0, ge=0, le=3)
    failure_reason: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_INTENT_STATUSES


class PaymentIntentTransition(BaseModel):
    """One applied payment intent status change"""
    transition_id: str
    intent_id: str
    from_status: PaymentIntentStatus
    to_status: PaymentIntentStatus
    retry_count: int = 0
    reason: Optional[str] = None
    created_at: Optional[datetime] = None


# ====================
# Derived Models
# ====================

class BracketResolution(BaseModel):
    """Tier lookup result for a quantity"""
    quantity: int
    current_bracket: DiscountBracket
    next_bracket: Optional[DiscountBracket] = None
    progress_percentage: Optional[Decimal] = Field(default=None, ge=0, lt=100)


class BracketProgress(BaseModel):
    """Campaign progress toward the next price tier"""
    campaign_id: str
    phase: CampaignPhase
    basis: str = Field(..., description="committed or pledged")
    total_quantity: int = Field(ge=0)
    current_bracket: DiscountBracket
    next_bracket: Optional[DiscountBracket] = None
    progress_percentage: Optional[Decimal] = None
    units_to_next_bracket: Optional[int] = None
    current_discount_percentage: Decimal = Decimal("0")


class SettlementResult(BaseModel):
    """Payment intents produced for a locked campaign"""
    campaign_id: str
    total_committed_quantity: int = 0
    clearing_price: Optional[Decimal] = None
    intents: List[PaymentIntent] = Field(default_factory=list)


class CampaignLockResult(BaseModel):
    """Outcome of a lock attempt"""
    campaign: Campaign
    locked_now: bool = False
    swept_pledges: int = 0
    settlement: Optional[SettlementResult] = None


class PhaseAdvanceSummary(BaseModel):
    """Outcome of one phase-advancement run"""
    grace_period_started: List[str] = Field(default_factory=list)
    locked: List[str] = Field(default_factory=list)
    failures: Dict[str, str] = Field(default_factory=dict)


class ReconciliationSummary(BaseModel):
    """Outcome of one retry reconciliation run"""
    examined: int = 0
    succeeded: int = 0
    failed: int = 0
    failures: Dict[str, str] = Field(default_factory=dict)


class PaymentIntentHistory(BaseModel):
    """Payment intent with its transition log"""
    intent: PaymentIntent
    transitions: List[PaymentIntentTransition] = Field(default_factory=list)


class PaymentHistory(BaseModel):
    """Payment intents for a buyer and/or campaign with totals"""
    buyer_org_id: Optional[str] = None
    campaign_id: Optional[str] = None
    items: List[PaymentIntentHistory] = Field(default_factory=list)
    total_billed: Decimal = Decimal("0")
    total_collected: Decimal = Decimal("0")
    total_written_off: Decimal = Decimal("0")
    total_outstanding: Decimal = Decimal("0")


# ====================
# Request Models
# ====================

class BracketSpec(BaseModel):
    """Bracket as submitted by a supplier"""
    min_quantity: int = Field(..., ge=0)
    max_quantity: Optional[int] = Field(default=None, ge=0)
    unit_price: Decimal = Field(..., gt=0)
    bracket_order: int = Field(..., ge=0)


class CampaignCreateRequest(BaseModel):
    """Create draft campaign request"""
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=5000)
    start_date: datetime
    end_date: datetime
    target_quantity: int = Field(default=0, ge=0)
    brackets: List[BracketSpec] = Field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None


class CampaignUpdateRequest(BaseModel):
    """Update draft campaign request"""
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=5000)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    target_quantity: Optional[int] = Field(default=None, ge=0)
    metadata: Optional[Dict[str, Any]] = None


class BracketSetRequest(BaseModel):
    """Replace a draft campaign's bracket list"""
    brackets: List[BracketSpec] = Field(..., min_length=1)


class CampaignCancelRequest(BaseModel):
    """Cancel campaign request"""
    reason: Optional[str] = Field(default=None, max_length=500)


class PledgeCreateRequest(BaseModel):
    """Create pledge request"""
    campaign_id: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0, le=10_000_000)


class PledgeUpdateRequest(BaseModel):
    """Update pledge quantity request"""
    quantity: int = Field(..., gt=0, le=10_000_000)


class GatewayOutcomeRequest(BaseModel):
    """Normalized gateway callback"""
    outcome: GatewayOutcome
    reason: Optional[str] = Field(default=None, max_length=500)


class ResolveARRequest(BaseModel):
    """Manual collection result"""
    collected: bool
    note: Optional[str] = Field(default=None, max_length=500)


# ====================
# Response Models
# ====================

class CampaignListResponse(BaseModel):
    """Campaign list response"""
    campaigns: List[Campaign] = Field(default_factory=list)
    total: int = 0


class PledgeListResponse(BaseModel):
    """Pledge list response"""
    pledges: List[Pledge] = Field(default_factory=list)
    total: int = 0


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    service: str
    port: int
    version: str
    dependencies: Dict[str, str] = Field(default_factory=dict)


class ReadinessResponse(BaseModel):
    """Readiness check response"""
    ready: bool
    checks: Dict[str, bool] = Field(default_factory=dict)
    details: Dict[str, str] = Field(default_factory=dict)


class LivenessResponse(BaseModel):
    """Liveness check response"""
    alive: bool = True
    uptime_seconds: float = 0.0


class ErrorResponse(BaseModel):
    """Standard error response"""
    detail: str
    error_code: Optional[str] = None
