"""
Group Buy Service Factory

Factory for creating group buy service instances with proper dependency injection.
This is the only module that wires concrete implementations together.
"""

import logging
from datetime import timedelta
from typing import Optional

from core.config import PlatformConfig, get_settings
from core.config_manager import ConfigManager
from core.nats_client import NATSEventBus

from .campaign_lifecycle import CampaignLifecycleService
from .clients.organization_client import OrganizationClient
from .events.handlers import GroupBuyEventHandler
from .events.models import GroupBuyStreamConfig
from .events.publishers import GroupBuyEventPublisher
from .group_buy_repository import GroupBuyRepository
from .payment_intent_service import PaymentIntentService
from .pledge_ledger import PledgeLedger
from .retry_reconciliation import RetryReconciliationJob
from .settlement_generator import SettlementGenerator

logger = logging.getLogger(__name__)


class GroupBuyServiceFactory:
    """Factory for creating group buy service components"""

    def __init__(
        self,
        config: Optional[ConfigManager] = None,
        settings: Optional[PlatformConfig] = None,
    ):
        self.settings = settings or get_settings()
        self.config = config or ConfigManager("group_buy_service", self.settings)
        self._repository: Optional[GroupBuyRepository] = None
        self._nats_client: Optional[NATSEventBus] = None
        self._event_publisher: Optional[GroupBuyEventPublisher] = None
        self._event_handler: Optional[GroupBuyEventHandler] = None
        self._organization_client: Optional[OrganizationClient] = None
        self._pledge_ledger: Optional[PledgeLedger] = None
        self._settlement_generator: Optional[SettlementGenerator] = None
        self._lifecycle: Optional[CampaignLifecycleService] = None
        self._payment_intents: Optional[PaymentIntentService] = None
        self._reconciliation_job: Optional[RetryReconciliationJob] = None

    async def initialize(self) -> None:
        """Initialize all components"""
        logger.info("Initializing Group Buy Service components...")
        policy = self.settings.group_buy

        # Initialize repository
        self._repository = GroupBuyRepository()
        await self._repository.initialize()

        # Initialize NATS client
        if self.settings.infrastructure.nats_enabled:
            try:
                self._nats_client = NATSEventBus(
                    service_name="group_buy_service",
                    config=self.config,
                )
                await self._nats_client.connect()
                logger.info("NATS client connected")
            except Exception as e:
                logger.warning(f"NATS client initialization failed: {e}")
                self._nats_client = None
        else:
            logger.info("NATS disabled, events will not be published")
        self._event_publisher = GroupBuyEventPublisher(self._nats_client)

        # Initialize service clients
        self._organization_client = OrganizationClient(
            base_url=self.config.get_service_endpoint(
                "ORGANIZATION_SERVICE_URL", policy.organization_service_url
            ),
            timeout=policy.organization_service_timeout,
        )

        # Initialize domain services
        self._pledge_ledger = PledgeLedger(
            pledge_repository=self._repository,
            campaign_repository=self._repository,
            organization_client=self._organization_client,
            event_publisher=self._event_publisher,
        )
        self._settlement_generator = SettlementGenerator(
            campaign_repository=self._repository,
            pledge_repository=self._repository,
            intent_repository=self._repository,
        )
        self._lifecycle = CampaignLifecycleService(
            campaign_repository=self._repository,
            intent_repository=self._repository,
            pledge_ledger=self._pledge_ledger,
            settlement_generator=self._settlement_generator,
            event_publisher=self._event_publisher,
            grace_period=timedelta(hours=policy.grace_period_hours),
        )
        self._payment_intents = PaymentIntentService(
            intent_repository=self._repository,
            event_publisher=self._event_publisher,
        )
        self._reconciliation_job = RetryReconciliationJob(
            payment_intent_service=self._payment_intents,
            batch_size=policy.retry_batch_size,
        )

        # Initialize event handler
        self._event_handler = GroupBuyEventHandler(payment_intent_service=self._payment_intents)
        if self._nats_client:
            await self._nats_client.subscribe_to_events(
                GroupBuyStreamConfig.GATEWAY_SUBJECTS,
                self._event_handler.handle,
                durable=GroupBuyStreamConfig.CONSUMER_NAME,
            )

        logger.info("Group Buy Service components initialized")

    async def close(self) -> None:
        """Close all components"""
        logger.info("Closing Group Buy Service components...")

        if self._nats_client:
            await self._nats_client.close()

        if self._repository:
            await self._repository.close()

        logger.info("Group Buy Service components closed")

    def _require(self, component):
        if component is None:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return component

    @property
    def repository(self) -> GroupBuyRepository:
        return self._require(self._repository)

    @property
    def pledge_ledger(self) -> PledgeLedger:
        return self._require(self._pledge_ledger)

    @property
    def settlement_generator(self) -> SettlementGenerator:
        return self._require(self._settlement_generator)

    @property
    def lifecycle(self) -> CampaignLifecycleService:
        return self._require(self._lifecycle)

    @property
    def payment_intents(self) -> PaymentIntentService:
        return self._require(self._payment_intents)

    @property
    def reconciliation_job(self) -> RetryReconciliationJob:
        return self._require(self._reconciliation_job)

    @property
    def event_handler(self) -> GroupBuyEventHandler:
        return self._require(self._event_handler)

    @property
    def nats_client(self) -> Optional[NATSEventBus]:
        """Get NATS client"""
        return self._nats_client

    @property
    def event_publisher(self) -> Optional[GroupBuyEventPublisher]:
        """Get event publisher"""
        return self._event_publisher


# Global factory instance
_factory: Optional[GroupBuyServiceFactory] = None


async def get_factory() -> GroupBuyServiceFactory:
    """Get or create factory instance"""
    global _factory
    if _factory is None:
        _factory = GroupBuyServiceFactory()
        await _factory.initialize()
    return _factory


async def close_factory() -> None:
    """Close factory instance"""
    global _factory
    if _factory:
        await _factory.close()
        _factory = None


__all__ = [
    "GroupBuyServiceFactory",
    "get_factory",
    "close_factory",
]
