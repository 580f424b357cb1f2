"""
Payment Intent Service

Bounded retry-then-escalate state machine for payment intents. Every status
change passes through PAYMENT_INTENT_TRANSITIONS, is applied with a
compare-and-set update and is recorded in the transition history.
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from .models import (
    GatewayOutcome,
    PaymentHistory,
    PaymentIntent,
    PaymentIntentHistory,
    PaymentIntentStatus,
    PaymentIntentTransition,
)
from .protocols import (
    PaymentIntentRepositoryProtocol,
    InvalidTransitionError,
    NotRetryableError,
    PaymentIntentNotFoundError,
    RetryLimitExceededError,
)
from .events.models import GroupBuyEventType
from .events.publishers import GroupBuyEventPublisher

logger = logging.getLogger(__name__)


MAX_RETRIES = 3

PAYMENT_INTENT_TRANSITIONS = {
    PaymentIntentStatus.PENDING: frozenset({PaymentIntentStatus.PROCESSING}),
    PaymentIntentStatus.PROCESSING: frozenset({
        PaymentIntentStatus.SUCCEEDED,
        PaymentIntentStatus.FAILED_RETRY_1,
        PaymentIntentStatus.FAILED_RETRY_2,
        PaymentIntentStatus.FAILED_RETRY_3,
    }),
    PaymentIntentStatus.FAILED_RETRY_1: frozenset({PaymentIntentStatus.PROCESSING}),
    PaymentIntentStatus.FAILED_RETRY_2: frozenset({PaymentIntentStatus.PROCESSING}),
    PaymentIntentStatus.FAILED_RETRY_3: frozenset({PaymentIntentStatus.SENT_TO_AR}),
    PaymentIntentStatus.SENT_TO_AR: frozenset({
        PaymentIntentStatus.COLLECTED_VIA_AR,
        PaymentIntentStatus.WRITTEN_OFF,
    }),
    PaymentIntentStatus.SUCCEEDED: frozenset(),
    PaymentIntentStatus.COLLECTED_VIA_AR: frozenset(),
    PaymentIntentStatus.WRITTEN_OFF: frozenset(),
}

RETRYABLE_STATUSES = frozenset({
    PaymentIntentStatus.PROCESSING,
    PaymentIntentStatus.FAILED_RETRY_1,
    PaymentIntentStatus.FAILED_RETRY_2,
})

FAILED_RETRY_BY_COUNT = {
    1: PaymentIntentStatus.FAILED_RETRY_1,
    2: PaymentIntentStatus.FAILED_RETRY_2,
    3: PaymentIntentStatus.FAILED_RETRY_3,
}

FAILED_RETRY_STATUSES = frozenset(FAILED_RETRY_BY_COUNT.values())

COLLECTED_STATUSES = frozenset({
    PaymentIntentStatus.SUCCEEDED,
    PaymentIntentStatus.COLLECTED_VIA_AR,
})


def is_valid_transition(current: PaymentIntentStatus, target: PaymentIntentStatus) -> bool:
    return target in PAYMENT_INTENT_TRANSITIONS.get(current, frozenset())


class PaymentIntentService:
    """Payment intent lifecycle: retry, escalation, gateway signals, AR resolution"""

    def __init__(
        self,
        intent_repository: PaymentIntentRepositoryProtocol,
        event_publisher: Optional[GroupBuyEventPublisher] = None,
    ):
        self.intents = intent_repository
        self.event_publisher = event_publisher

    # ====================
    # Retry / Escalation
    # ====================

    async def retry(self, intent_id: str, reason: Optional[str] = None) -> PaymentIntent:
        """
        Record a failed attempt and move to FAILED_RETRY_n for the new count.

        From FAILED_RETRY_1/2 the intent passes through PROCESSING so that both
        hops are table-valid; both are recorded in one transaction.

        Raises:
            RetryLimitExceededError: retry count is already 3
            NotRetryableError: status is not PROCESSING, FAILED_RETRY_1 or FAILED_RETRY_2
        """
        intent = await self._get_intent(intent_id)
        self._validate_retry(intent)
        return await self._record_failure(intent, reason)

    async def escalate_to_ar(self, intent_id: str, reason: Optional[str] = None) -> PaymentIntent:
        """FAILED_RETRY_3 with retry count 3 -> SENT_TO_AR (manual collection)"""
        intent = await self._get_intent(intent_id)
        if (
            intent.status != PaymentIntentStatus.FAILED_RETRY_3
            or intent.retry_count != MAX_RETRIES
        ):
            raise InvalidTransitionError(intent.status, PaymentIntentStatus.SENT_TO_AR)

        async with self.intents.transaction():
            escalated = await self._transition(
                intent, PaymentIntentStatus.SENT_TO_AR, reason=reason or "escalated to accounts receivable"
            )

        if self.event_publisher:
            await self.event_publisher.publish_payment_intent(
                GroupBuyEventType.PAYMENT_INTENT_SENT_TO_AR, escalated
            )
        return escalated

    async def resolve_ar(
        self, intent_id: str, collected: bool, note: Optional[str] = None
    ) -> PaymentIntent:
        """SENT_TO_AR -> COLLECTED_VIA_AR or WRITTEN_OFF"""
        intent = await self._get_intent(intent_id)
        target = (
            PaymentIntentStatus.COLLECTED_VIA_AR if collected else PaymentIntentStatus.WRITTEN_OFF
        )
        async with self.intents.transaction():
            return await self._transition(intent, target, reason=note)

    # ====================
    # Gateway Signals
    # ====================

    async def start_processing(self, intent_id: str) -> PaymentIntent:
        """Checkout created: PENDING/FAILED_RETRY_1/FAILED_RETRY_2 -> PROCESSING"""
        intent = await self._get_intent(intent_id)
        if intent.status == PaymentIntentStatus.PROCESSING:
            logger.debug(f"Payment intent {intent_id} is already processing")
            return intent

        async with self.intents.transaction():
            return await self._transition(
                intent, PaymentIntentStatus.PROCESSING, reason="checkout created"
            )

    async def apply_gateway_outcome(
        self, intent_id: str, outcome: GatewayOutcome, reason: Optional[str] = None
    ) -> PaymentIntent:
        """
        Apply a normalized gateway signal.

        succeeded moves PROCESSING to SUCCEEDED. failed moves PROCESSING to the
        next FAILED_RETRY_n; an intent already in a FAILED_RETRY state has had
        this attempt recorded, so redelivered signals of either kind are no-ops.
        pending leaves the intent unchanged.
        """
        intent = await self._get_intent(intent_id)

        if outcome == GatewayOutcome.PENDING:
            logger.debug(f"Payment intent {intent_id} still pending at gateway")
            return intent

        if outcome == GatewayOutcome.FAILED:
            if intent.status in FAILED_RETRY_STATUSES:
                logger.info(
                    f"Payment intent {intent_id} already recorded as {intent.status.value}, "
                    f"ignoring duplicate failure signal"
                )
                return intent
            self._validate_retry(intent)
            try:
                return await self._record_failure(intent, reason or "payment failed")
            except InvalidTransitionError:
                # A concurrent delivery of the same signal won the compare-and-set
                current = await self._get_intent(intent_id)
                if current.status in FAILED_RETRY_STATUSES:
                    return current
                raise

        if intent.status == PaymentIntentStatus.SUCCEEDED:
            logger.info(f"Payment intent {intent_id} already succeeded, ignoring duplicate signal")
            return intent

        async with self.intents.transaction():
            succeeded = await self._transition(
                intent, PaymentIntentStatus.SUCCEEDED, reason=reason or "payment succeeded"
            )

        if self.event_publisher:
            await self.event_publisher.publish_payment_intent(
                GroupBuyEventType.PAYMENT_INTENT_SUCCEEDED, succeeded
            )
        return succeeded

    # ====================
    # Queries
    # ====================

    async def get_payment_intent(self, intent_id: str) -> PaymentIntent:
        return await self._get_intent(intent_id)

    async def get_intent_history(self, intent_id: str) -> PaymentIntentHistory:
        intent = await self._get_intent(intent_id)
        transitions = await self.intents.list_intent_transitions(intent_id)
        return PaymentIntentHistory(intent=intent, transitions=transitions)

    async def get_payment_history(
        self,
        buyer_org_id: Optional[str] = None,
        campaign_id: Optional[str] = None,
    ) -> PaymentHistory:
        """Intents for a buyer and/or campaign with their transitions and totals"""
        intents = await self.intents.list_payment_intents(
            campaign_id=campaign_id, buyer_org_id=buyer_org_id
        )

        history = PaymentHistory(buyer_org_id=buyer_org_id, campaign_id=campaign_id)
        billed = collected = written_off = Decimal("0")
        for intent in intents:
            transitions = await self.intents.list_intent_transitions(intent.intent_id)
            history.items.append(PaymentIntentHistory(intent=intent, transitions=transitions))

            billed += intent.amount
            if intent.status in COLLECTED_STATUSES:
                collected += intent.amount
            elif intent.status == PaymentIntentStatus.WRITTEN_OFF:
                written_off += intent.amount

        history.total_billed = billed
        history.total_collected = collected
        history.total_written_off = written_off
        history.total_outstanding = billed - collected - written_off
        return history

    async def list_retryable(self, limit: Optional[int] = None) -> List[PaymentIntent]:
        """Intents awaiting another attempt"""
        return await self.intents.list_payment_intents(
            statuses=[PaymentIntentStatus.FAILED_RETRY_1, PaymentIntentStatus.FAILED_RETRY_2],
            max_retry_count=MAX_RETRIES - 1,
            limit=limit,
        )

    # ====================
    # Helpers
    # ====================

    @staticmethod
    def _validate_retry(intent: PaymentIntent) -> None:
        if intent.retry_count >= MAX_RETRIES:
            raise RetryLimitExceededError(
                f"Payment intent {intent.intent_id} has already been retried {intent.retry_count} times"
            )
        if intent.status not in RETRYABLE_STATUSES:
            raise NotRetryableError(
                f"Payment intent {intent.intent_id} cannot be retried from {intent.status.value}",
                intent.status,
            )

    async def _record_failure(self, intent: PaymentIntent, reason: Optional[str]) -> PaymentIntent:
        new_count = intent.retry_count + 1
        target = FAILED_RETRY_BY_COUNT[new_count]

        async with self.intents.transaction():
            if intent.status != PaymentIntentStatus.PROCESSING:
                intent = await self._transition(
                    intent, PaymentIntentStatus.PROCESSING, reason="retry attempt"
                )
            failed = await self._transition(
                intent, target, retry_count=new_count, reason=reason
            )

        if self.event_publisher:
            await self.event_publisher.publish_payment_intent(
                GroupBuyEventType.PAYMENT_INTENT_FAILED, failed
            )
        return failed

    async def _transition(
        self,
        intent: PaymentIntent,
        target: PaymentIntentStatus,
        retry_count: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> PaymentIntent:
        if not is_valid_transition(intent.status, target):
            raise InvalidTransitionError(intent.status, target)

        new_count = intent.retry_count if retry_count is None else retry_count
        updated = await self.intents.compare_and_set_intent_status(
            intent.intent_id,
            intent.status,
            target,
            retry_count=new_count,
            failure_reason=reason if target in FAILED_RETRY_STATUSES else intent.failure_reason,
        )
        if updated is None:
            current = await self._get_intent(intent.intent_id)
            raise InvalidTransitionError(current.status, target)

        await self.intents.add_intent_transition(
            PaymentIntentTransition(
                transition_id=f"pit_{uuid.uuid4().hex[:16]}",
                intent_id=intent.intent_id,
                from_status=intent.status,
                to_status=target,
                retry_count=new_count,
                reason=reason,
                created_at=datetime.now(timezone.utc),
            )
        )
        logger.info(
            f"Payment intent {intent.intent_id}: {intent.status.value} -> {target.value} "
            f"(retry_count={new_count})"
        )
        return updated

    async def _get_intent(self, intent_id: str) -> PaymentIntent:
        intent = await self.intents.get_payment_intent(intent_id)
        if intent is None:
            raise PaymentIntentNotFoundError(f"Payment intent {intent_id} not found")
        return intent
