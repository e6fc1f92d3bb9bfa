"""
Push Campaign Event Data Models

Event type definitions and data structures for push campaign service events.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


# =============================================================================
# Event Type Definitions
# =============================================================================


class PushCampaignEventType(str, Enum):
    """
    Events published by push_campaign_service.

    Other services should reference these when subscribing.
    """
    # Campaign lifecycle events
    SCHEDULED = "push_campaign.scheduled"
    SENDING = "push_campaign.sending"
    SENT = "push_campaign.sent"
    FAILED = "push_campaign.failed"
    CANCELLED = "push_campaign.cancelled"

    # Metric events
    ANALYTICS_UPDATED = "push_campaign.analytics.updated"


class PushCampaignStreamConfig:
    """Stream configuration for push_campaign_service"""
    STREAM_NAME = "push-campaign-stream"
    SUBJECTS = ["push_campaign.>"]


# =============================================================================
# Event Data Models - Published Events
# =============================================================================


class CampaignScheduledEventData(BaseModel):
    """push_campaign.scheduled event data"""
    campaign_id: str = Field(..., description="Campaign ID")
    merchant_id: str = Field(..., description="Merchant ID")
    scheduled_at: datetime = Field(..., description="Scheduled send time")


class CampaignSendingEventData(BaseModel):
    """push_campaign.sending event data"""
    campaign_id: str = Field(..., description="Campaign ID")
    merchant_id: str = Field(..., description="Merchant ID")
    previous_status: str = Field(..., description="Status before the send started")


class CampaignSentEventData(BaseModel):
    """push_campaign.sent / push_campaign.failed event data"""
    campaign_id: str = Field(..., description="Campaign ID")
    merchant_id: str = Field(..., description="Merchant ID")
    status: str = Field(..., description="Final status")
    audience_size: int = Field(..., description="Recipients attempted in this run")
    sent_count: int = Field(..., description="Recipients delivered")
    failed_count: int = Field(..., description="Recipients failed")
    skipped_count: int = Field(0, description="Recipients skipped")
    duration_ms: int = Field(..., description="Run duration in milliseconds")


class CampaignCancelledEventData(BaseModel):
    """push_campaign.cancelled event data"""
    campaign_id: str = Field(..., description="Campaign ID")
    merchant_id: str = Field(..., description="Merchant ID")
    reason: Optional[str] = Field(None, description="Cancellation reason")


class AnalyticsUpdatedEventData(BaseModel):
    """push_campaign.analytics.updated event data"""
    campaign_id: str = Field(..., description="Campaign ID")
    impressions: int
    clicks: int
    conversions: int
    revenue: Decimal
    ctr: Decimal
