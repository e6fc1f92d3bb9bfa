"""
Push Campaign Service Events

Event models and publishers for the push campaign service.
"""

from .models import (
    PushCampaignEventType,
    PushCampaignStreamConfig,
    CampaignScheduledEventData,
    CampaignSendingEventData,
    CampaignSentEventData,
    CampaignCancelledEventData,
    AnalyticsUpdatedEventData,
)
from .publishers import PushCampaignEventPublisher

__all__ = [
    # Event Types
    "PushCampaignEventType",
    "PushCampaignStreamConfig",
    # Event Data Models
    "CampaignScheduledEventData",
    "CampaignSendingEventData",
    "CampaignSentEventData",
    "CampaignCancelledEventData",
    "AnalyticsUpdatedEventData",
    # Publisher
    "PushCampaignEventPublisher",
]
