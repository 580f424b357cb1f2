"""
Group Buy Event Handlers

Handles payment gateway signals delivered over NATS. The gateway supplies a
coarse outcome only; the payment intent state machine decides the target.
"""

import logging
from typing import Any, Dict

from pydantic import ValidationError

from .models import (
    GroupBuySubscribedEventType,
    CheckoutCreatedEventData,
    PaymentOutcomeEventData,
)
from ..models import UnknownStatus, parse_gateway_outcome
from ..protocols import GroupBuyServiceError

logger = logging.getLogger(__name__)


class GroupBuyEventHandler:
    """Handler for group buy service subscribed events"""

    def __init__(self, payment_intent_service=None):
        self.payment_intent_service = payment_intent_service

    async def handle(self, event) -> None:
        """Event bus entry point"""
        await self.handle_event(event.type, event.data or {})

    async def handle_event(self, event_type: str, data: Dict[str, Any]) -> None:
        """
        Route event to appropriate handler.

        Rejections by the state machine and malformed payloads are logged and
        dropped; anything else propagates so the bus redelivers the message.
        """
        handlers = {
            GroupBuySubscribedEventType.CHECKOUT_CREATED.value: self.handle_checkout_created,
            GroupBuySubscribedEventType.PAYMENT_OUTCOME.value: self.handle_payment_outcome,
        }

        handler = handlers.get(event_type)
        if not handler:
            logger.debug(f"No handler for event type: {event_type}")
            return

        try:
            await handler(data)
        except ValidationError as e:
            logger.warning(f"Malformed {event_type} payload: {e}")
        except GroupBuyServiceError as e:
            logger.warning(f"Rejected {event_type}: [{e.error_code}] {e}")

    async def handle_checkout_created(self, data: Dict[str, Any]) -> None:
        """payment_gateway.checkout_created: intent enters PROCESSING"""
        event_data = CheckoutCreatedEventData(**data)
        if not self.payment_intent_service:
            return

        await self.payment_intent_service.start_processing(event_data.intent_id)
        logger.info(f"Checkout {event_data.checkout_id} created for payment intent {event_data.intent_id}")

    async def handle_payment_outcome(self, data: Dict[str, Any]) -> None:
        """payment_gateway.outcome: succeeded / failed / pending"""
        event_data = PaymentOutcomeEventData(**data)
        if not self.payment_intent_service:
            return

        outcome = parse_gateway_outcome(event_data.outcome)
        if isinstance(outcome, UnknownStatus):
            logger.warning(f"Ignoring {outcome} for payment intent {event_data.intent_id}")
            return

        await self.payment_intent_service.apply_gateway_outcome(
            event_data.intent_id, outcome, reason=event_data.reason
        )
