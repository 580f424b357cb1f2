"""
Group Buy Service Protocols

Defines interfaces for dependency injection and testing.
Each component depends only on the narrow repository slice it uses.
"""

from datetime import datetime
from enum import Enum
from typing import Any, AsyncContextManager, Dict, List, Optional, Protocol, Sequence

from .models import (
    Campaign,
    CampaignPhase,
    DiscountBracket,
    PaymentIntent,
    PaymentIntentStatus,
    PaymentIntentTransition,
    Pledge,
    PledgeStatus,
)


# ====================
# Repository Protocols
# ====================


class TransactionalRepositoryProtocol(Protocol):
    """Unit-of-work scope shared by the repository slices"""

    def transaction(self) -> AsyncContextManager[Any]:
        """Run the enclosed calls atomically; roll back on exception"""
        ...


class CampaignRepositoryProtocol(TransactionalRepositoryProtocol, Protocol):
    """Protocol for campaign and bracket storage"""

    async def get_campaign(self, campaign_id: str, for_share: bool = False) -> Optional[Campaign]:
        """Get campaign with its brackets; for_share holds a row share lock until commit"""
        ...

    async def insert_campaign(self, campaign: Campaign) -> Campaign:
        """Insert a new campaign and its brackets"""
        ...

    async def update_campaign_fields(
        self, campaign_id: str, updates: Dict[str, Any]
    ) -> Optional[Campaign]:
        """Update descriptive fields of a campaign"""
        ...

    async def replace_brackets(
        self, campaign_id: str, brackets: Sequence[DiscountBracket]
    ) -> List[DiscountBracket]:
        """Replace the full bracket list of a campaign"""
        ...

    async def delete_campaign(self, campaign_id: str) -> bool:
        """Hard delete a campaign and its brackets"""
        ...

    async def compare_and_set_phase(
        self,
        campaign_id: str,
        expected: CampaignPhase,
        new_phase: CampaignPhase,
        timestamps: Optional[Dict[str, datetime]] = None,
    ) -> Optional[Campaign]:
        """Set phase only if it still equals expected; None when the race was lost"""
        ...

    async def list_campaigns(
        self,
        supplier_id: Optional[str] = None,
        phases: Optional[Sequence[CampaignPhase]] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Campaign]:
        """List campaigns with filters"""
        ...

    async def find_campaigns_ending_before(
        self, phase: CampaignPhase, cutoff: datetime
    ) -> List[Campaign]:
        """Campaigns in phase whose end date is at or before cutoff"""
        ...


class PledgeRepositoryProtocol(TransactionalRepositoryProtocol, Protocol):
    """Protocol for pledge storage"""

    async def get_pledge(self, pledge_id: str) -> Optional[Pledge]:
        ...

    async def get_pledge_for_buyer(
        self, campaign_id: str, buyer_org_id: str
    ) -> Optional[Pledge]:
        """Pledge row for a (campaign, buyer) pair, whatever its status"""
        ...

    async def insert_pledge(self, pledge: Pledge) -> Pledge:
        """Insert a pledge; raises DuplicateRecordError on (campaign, buyer) conflict"""
        ...

    async def update_pledge_quantity(self, pledge_id: str, quantity: int) -> Optional[Pledge]:
        ...

    async def compare_and_set_pledge_status(
        self,
        pledge_id: str,
        expected: PledgeStatus,
        new_status: PledgeStatus,
        committed_at: Optional[datetime] = None,
        quantity: Optional[int] = None,
    ) -> Optional[Pledge]:
        """Set status (and committed_at, optionally quantity) only if status still equals expected"""
        ...

    async def withdraw_pending_pledges(self, campaign_id: str) -> int:
        """Bulk PENDING -> WITHDRAWN for a campaign; returns affected rows"""
        ...

    async def list_pledges(
        self,
        campaign_id: Optional[str] = None,
        buyer_org_id: Optional[str] = None,
        statuses: Optional[Sequence[PledgeStatus]] = None,
    ) -> List[Pledge]:
        ...

    async def sum_pledge_quantity(
        self, campaign_id: str, statuses: Sequence[PledgeStatus]
    ) -> int:
        ...


class PaymentIntentRepositoryProtocol(TransactionalRepositoryProtocol, Protocol):
    """Protocol for payment intent storage"""

    async def insert_payment_intent(self, intent: PaymentIntent) -> PaymentIntent:
        """Insert an intent; raises DuplicateRecordError when the pledge already has one"""
        ...

    async def get_payment_intent(self, intent_id: str) -> Optional[PaymentIntent]:
        ...

    async def compare_and_set_intent_status(
        self,
        intent_id: str,
        expected: PaymentIntentStatus,
        new_status: PaymentIntentStatus,
        retry_count: int,
        failure_reason: Optional[str] = None,
    ) -> Optional[PaymentIntent]:
        """Set status/retry count only if status still equals expected"""
        ...

    async def add_intent_transition(
        self, transition: PaymentIntentTransition
    ) -> PaymentIntentTransition:
        ...

    async def list_intent_transitions(self, intent_id: str) -> List[PaymentIntentTransition]:
        ...

    async def list_payment_intents(
        self,
        campaign_id: Optional[str] = None,
        buyer_org_id: Optional[str] = None,
        statuses: Optional[Sequence[PaymentIntentStatus]] = None,
        max_retry_count: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[PaymentIntent]:
        ...


# ====================
# Event Bus Protocol
# ====================


class EventBusProtocol(Protocol):
    """Protocol for event bus operations"""

    async def publish_event(self, event: Any) -> bool:
        """Publish an event to the event bus"""
        ...

    async def subscribe_to_events(
        self, pattern: str, handler: Any, durable: Optional[str] = None
    ) -> Optional[str]:
        """Subscribe to events matching a subject"""
        ...

    async def close(self) -> None:
        ...


# ====================
# Service Client Protocols
# ====================


class OrganizationClientProtocol(Protocol):
    """Protocol for organization service client"""

    async def is_organization_active(self, organization_id: str) -> bool:
        """True when the organization exists and is active"""
        ...


# ====================
# Custom Exceptions
# ====================


class DuplicateRecordError(Exception):
    """Raised by repositories on a unique constraint violation"""

    def __init__(self, message: str, constraint: Optional[str] = None):
        super().__init__(message)
        self.constraint = constraint


class GroupBuyServiceError(Exception):
    """Base exception for group buy service errors"""
    error_code = "GROUP_BUY_ERROR"


class PhaseViolationError(GroupBuyServiceError):
    """Operation not valid for the campaign's current phase"""
    error_code = "PHASE_VIOLATION"

    def __init__(self, message: str, current_phase: Optional[CampaignPhase] = None):
        super().__init__(message)
        self.current_phase = current_phase


class DuplicateCommitmentError(GroupBuyServiceError):
    """An active pledge already exists for the buyer and campaign"""
    error_code = "DUPLICATE_COMMITMENT"


class PledgeAccessDeniedError(GroupBuyServiceError):
    """Buyer does not own the pledge"""
    error_code = "PLEDGE_ACCESS_DENIED"


class CampaignAccessDeniedError(GroupBuyServiceError):
    """Supplier does not own the campaign"""
    error_code = "CAMPAIGN_ACCESS_DENIED"


class InvalidTransitionError(GroupBuyServiceError):
    """State machine table rejects the move"""
    error_code = "INVALID_TRANSITION"

    def __init__(self, from_status: Enum, to_status: Enum, entity: str = "payment intent"):
        super().__init__(f"Invalid {entity} transition: {from_status.value} -> {to_status.value}")
        self.from_status = from_status
        self.to_status = to_status


class RetryLimitExceededError(GroupBuyServiceError):
    """Retry count already at the cap"""
    error_code = "RETRY_LIMIT_EXCEEDED"


class NotRetryableError(GroupBuyServiceError):
    """Status does not allow a retry"""
    error_code = "NOT_RETRYABLE"

    def __init__(self, message: str, status: Optional[PaymentIntentStatus] = None):
        super().__init__(message)
        self.status = status


class OrganizationNotActiveError(GroupBuyServiceError):
    """Buyer organization is missing or not active"""
    error_code = "ORGANIZATION_NOT_ACTIVE"


class OrganizationLookupError(GroupBuyServiceError):
    """Organization service could not answer"""
    error_code = "ORGANIZATION_LOOKUP_FAILED"


class BracketConfigurationError(GroupBuyServiceError):
    """Bracket list is empty, malformed, or does not cover the quantity"""
    error_code = "BRACKET_CONFIGURATION_INVALID"


class CampaignValidationError(GroupBuyServiceError):
    """Campaign input invalid"""
    error_code = "CAMPAIGN_VALIDATION_FAILED"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class DuplicateSettlementError(GroupBuyServiceError):
    """A payment intent already exists for the pledge"""
    error_code = "DUPLICATE_SETTLEMENT"


class NotFoundError(GroupBuyServiceError):
    """Entity not found"""
    error_code = "NOT_FOUND"


class CampaignNotFoundError(NotFoundError):
    error_code = "CAMPAIGN_NOT_FOUND"


class PledgeNotFoundError(NotFoundError):
    error_code = "PLEDGE_NOT_FOUND"


class PaymentIntentNotFoundError(NotFoundError):
    error_code = "PAYMENT_INTENT_NOT_FOUND"


__all__ = [
    "TransactionalRepositoryProtocol",
    "CampaignRepositoryProtocol",
    "PledgeRepositoryProtocol",
    "PaymentIntentRepositoryProtocol",
    "EventBusProtocol",
    "OrganizationClientProtocol",
    "DuplicateRecordError",
    "GroupBuyServiceError",
    "PhaseViolationError",
    "DuplicateCommitmentError",
    "PledgeAccessDeniedError",
    "CampaignAccessDeniedError",
    "InvalidTransitionError",
    "RetryLimitExceededError",
    "NotRetryableError",
    "OrganizationNotActiveError",
    "OrganizationLookupError",
    "BracketConfigurationError",
    "CampaignValidationError",
    "DuplicateSettlementError",
    "NotFoundError",
    "CampaignNotFoundError",
    "PledgeNotFoundError",
    "PaymentIntentNotFoundError",
]
