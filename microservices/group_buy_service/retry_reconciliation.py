"""
Retry Reconciliation Job

Invoked on a schedule by an external trigger. Drives every FAILED_RETRY_1 /
FAILED_RETRY_2 intent one retry forward; items are independent.
"""

import logging
from typing import Optional

from .models import ReconciliationSummary
from .payment_intent_service import PaymentIntentService

logger = logging.getLogger(__name__)


class RetryReconciliationJob:
    """Batch retry of failed payment intents"""

    def __init__(self, payment_intent_service: PaymentIntentService, batch_size: int = 500):
        self.payment_intents = payment_intent_service
        self.batch_size = batch_size

    async def run(self, limit: Optional[int] = None) -> ReconciliationSummary:
        candidates = await self.payment_intents.list_retryable(limit=limit or self.batch_size)
        summary = ReconciliationSummary(examined=len(candidates))
        logger.info(f"Retry reconciliation started: {len(candidates)} intents")

        for intent in candidates:
            try:
                await self.payment_intents.retry(intent.intent_id, reason="scheduled retry")
                summary.succeeded += 1
            except Exception as e:
                logger.error(f"Retry failed for payment intent {intent.intent_id}: {e}", exc_info=True)
                summary.failed += 1
                summary.failures[intent.intent_id] = str(e)

        logger.info(
            f"Retry reconciliation finished: examined={summary.examined}, "
            f"succeeded={summary.succeeded}, failed={summary.failed}"
        )
        return summary
