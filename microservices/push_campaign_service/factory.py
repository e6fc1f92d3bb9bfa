"""
Push Campaign Service Factory

Factory for creating push campaign service instances with proper dependency injection.
"""

import logging
from typing import Optional

from core.config import PushCampaignConfig, get_settings
from core.nats_client import NATSEventBus

from .campaign_repository import PushCampaignRepository
from .campaign_service import CampaignService
from .clients.push_client import PushTransportClient
from .dispatch_engine import DispatchEngine
from .events.models import PushCampaignStreamConfig
from .events.publishers import PushCampaignEventPublisher
from .outcome_aggregator import OutcomeAggregator
from .query_compiler import QueryCompiler
from .rate_limiter import SlidingWindowRateLimiter
from .segment_resolver import SegmentResolver
from .segment_service import SegmentService

logger = logging.getLogger(__name__)


class PushCampaignServiceFactory:
    """Factory for creating push campaign service components"""

    def __init__(self, config: Optional[PushCampaignConfig] = None):
        self.config = config or get_settings()
        self._repository: Optional[PushCampaignRepository] = None
        self._nats_client: Optional[NATSEventBus] = None
        self._event_publisher: Optional[PushCampaignEventPublisher] = None
        self._transport: Optional[PushTransportClient] = None
        self._resolver: Optional[SegmentResolver] = None
        self._segment_service: Optional[SegmentService] = None
        self._campaign_service: Optional[CampaignService] = None
        self._aggregator: Optional[OutcomeAggregator] = None
        self._dispatch_engine: Optional[DispatchEngine] = None
        self._rate_limiter: Optional[SlidingWindowRateLimiter] = None

    async def initialize(self) -> None:
        """Initialize all components"""
        logger.info("Initializing Push Campaign Service components...")
        dispatch = self.config.dispatch

        # Initialize repository
        self._repository = PushCampaignRepository(config=self.config.infrastructure)
        await self._repository.initialize()

        # Initialize NATS client
        if self.config.infrastructure.nats_enabled:
            try:
                self._nats_client = NATSEventBus(
                    service_name=self.config.service_name,
                    config=self.config.infrastructure,
                    stream_name=PushCampaignStreamConfig.STREAM_NAME,
                    subjects=PushCampaignStreamConfig.SUBJECTS,
                )
                await self._nats_client.connect()
                logger.info("NATS client connected")
            except Exception as e:
                logger.warning(f"NATS client initialization failed: {e}")
                self._nats_client = None
        self._event_publisher = PushCampaignEventPublisher(self._nats_client)

        # Initialize push transport
        self._transport = PushTransportClient(self.config.services)

        # Initialize segment and campaign components
        compiler = QueryCompiler(
            max_depth=dispatch.segment_max_depth,
            max_conditions=dispatch.segment_max_conditions,
        )
        self._resolver = SegmentResolver(
            self._repository,
            compiler=compiler,
            estimate_timeout=dispatch.segment_estimate_timeout,
        )
        self._segment_service = SegmentService(self._repository, self._resolver)
        self._campaign_service = CampaignService(self._repository, event_publisher=self._event_publisher)
        self._aggregator = OutcomeAggregator(self._repository, event_publisher=self._event_publisher)
        self._dispatch_engine = DispatchEngine(
            repository=self._repository,
            resolver=self._resolver,
            transport=self._transport,
            aggregator=self._aggregator,
            event_publisher=self._event_publisher,
            config=dispatch,
        )

        # Initialize rate limiter
        self._rate_limiter = SlidingWindowRateLimiter(self.config.rate_limit)
        await self._rate_limiter.start()

        logger.info("Push Campaign Service components initialized")

    async def close(self) -> None:
        """Close all components"""
        logger.info("Closing Push Campaign Service components...")

        if self._rate_limiter:
            await self._rate_limiter.close()

        if self._nats_client:
            await self._nats_client.close()

        if self._repository:
            await self._repository.close()

        logger.info("Push Campaign Service components closed")

    @property
    def repository(self) -> PushCampaignRepository:
        """Get push campaign repository"""
        if not self._repository:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._repository

    @property
    def segment_service(self) -> SegmentService:
        """Get segment service"""
        if not self._segment_service:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._segment_service

    @property
    def campaign_service(self) -> CampaignService:
        """Get campaign service"""
        if not self._campaign_service:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._campaign_service

    @property
    def dispatch_engine(self) -> DispatchEngine:
        """Get dispatch engine"""
        if not self._dispatch_engine:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._dispatch_engine

    @property
    def aggregator(self) -> OutcomeAggregator:
        """Get outcome aggregator"""
        if not self._aggregator:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._aggregator

    @property
    def rate_limiter(self) -> SlidingWindowRateLimiter:
        """Get rate limiter"""
        if not self._rate_limiter:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._rate_limiter

    @property
    def transport(self) -> PushTransportClient:
        """Get push transport client"""
        if not self._transport:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._transport

    @property
    def nats_client(self) -> Optional[NATSEventBus]:
        """Get NATS client"""
        return self._nats_client

    @property
    def event_publisher(self) -> Optional[PushCampaignEventPublisher]:
        """Get event publisher"""
        return self._event_publisher


# Global factory instance
_factory: Optional[PushCampaignServiceFactory] = None


async def get_factory() -> PushCampaignServiceFactory:
    """Get or create factory instance"""
    global _factory
    if _factory is None:
        _factory = PushCampaignServiceFactory()
        await _factory.initialize()
    return _factory


async def close_factory() -> None:
    """Close factory instance"""
    global _factory
    if _factory:
        await _factory.close()
        _factory = None


__all__ = [
    "PushCampaignServiceFactory",
    "get_factory",
    "close_factory",
]
