"""
Push Campaign Event Publishers

Publishes push campaign events to NATS.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ..models import Campaign, CampaignMetrics, CampaignStatus, SendResult
from .models import (
    PushCampaignEventType,
    CampaignScheduledEventData,
    CampaignSendingEventData,
    CampaignSentEventData,
    CampaignCancelledEventData,
    AnalyticsUpdatedEventData,
)

logger = logging.getLogger(__name__)


class PushCampaignEventPublisher:
    """Publisher for push campaign service events"""

    def __init__(self, nats_client=None):
        self.nats_client = nats_client
        self.source = "push_campaign_service"

    async def publish(
        self,
        event_type: PushCampaignEventType,
        data: Dict[str, Any],
    ) -> bool:
        """
        Publish an event to NATS.

        Args:
            event_type: The event type enum
            data: Event data payload

        Returns:
            True if published successfully, False otherwise
        """
        if not self.nats_client:
            logger.debug(f"NATS client not configured, skipping publish: {event_type.value}")
            return False

        try:
            event = {
                "event_type": event_type.value,
                "source": self.source,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "data": data,
            }

            published = await self.nats_client.publish(event_type.value, event)
            logger.debug(f"Published event: {event_type.value}")
            return bool(published)

        except Exception as e:
            logger.error(f"Failed to publish event {event_type.value}: {e}")
            return False

    # ====================
    # Campaign Lifecycle Events
    # ====================

    async def publish_campaign_scheduled(self, campaign: Campaign) -> bool:
        """Publish push_campaign.scheduled event"""
        data = CampaignScheduledEventData(
            campaign_id=campaign.campaign_id,
            merchant_id=campaign.merchant_id,
            scheduled_at=campaign.scheduled_at,
        )
        return await self.publish(PushCampaignEventType.SCHEDULED, data.model_dump(mode="json"))

    async def publish_campaign_sending(self, campaign: Campaign, previous_status: CampaignStatus) -> bool:
        """Publish push_campaign.sending event"""
        data = CampaignSendingEventData(
            campaign_id=campaign.campaign_id,
            merchant_id=campaign.merchant_id,
            previous_status=previous_status.value,
        )
        return await self.publish(PushCampaignEventType.SENDING, data.model_dump(mode="json"))

    async def publish_campaign_finished(self, campaign: Campaign, result: SendResult) -> bool:
        """Publish push_campaign.sent or push_campaign.failed event"""
        data = CampaignSentEventData(
            campaign_id=campaign.campaign_id,
            merchant_id=campaign.merchant_id,
            status=result.status.value,
            audience_size=result.audience_size,
            sent_count=result.sent_count,
            failed_count=result.failed_count,
            skipped_count=result.skipped_count,
            duration_ms=result.duration_ms,
        )
        event_type = (
            PushCampaignEventType.FAILED
            if result.status == CampaignStatus.FAILED
            else PushCampaignEventType.SENT
        )
        return await self.publish(event_type, data.model_dump(mode="json"))

    async def publish_campaign_cancelled(self, campaign: Campaign, reason: Optional[str] = None) -> bool:
        """Publish push_campaign.cancelled event"""
        data = CampaignCancelledEventData(
            campaign_id=campaign.campaign_id,
            merchant_id=campaign.merchant_id,
            reason=reason,
        )
        return await self.publish(PushCampaignEventType.CANCELLED, data.model_dump(mode="json"))

    # ====================
    # Metric Events
    # ====================

    async def publish_analytics_updated(self, campaign_id: str, metrics: CampaignMetrics) -> bool:
        """Publish push_campaign.analytics.updated event"""
        data = AnalyticsUpdatedEventData(
            campaign_id=campaign_id,
            impressions=metrics.impressions,
            clicks=metrics.clicks,
            conversions=metrics.conversions,
            revenue=metrics.revenue,
            ctr=metrics.ctr,
        )
        return await self.publish(PushCampaignEventType.ANALYTICS_UPDATED, data.model_dump(mode="json"))
