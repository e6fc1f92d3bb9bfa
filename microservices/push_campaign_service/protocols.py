"""
Push Campaign Service Protocols

Defines interfaces for dependency injection and testing.
Following the protocol-based architecture pattern.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol, Set, Tuple

from .models import (
    Campaign,
    CampaignAnalytics,
    CampaignStatus,
    CustomAttribute,
    DeliveryRecord,
    PushPayload,
    Recipient,
    Segment,
    SegmentType,
    TransportOutcome,
)

if TYPE_CHECKING:
    from .query_compiler import FilterExpression


# ====================
# Repository Protocol
# ====================


class PushCampaignRepositoryProtocol(Protocol):
    """Protocol for push campaign data repository"""

    async def initialize(self) -> None:
        """Initialize repository connection"""
        ...

    async def close(self) -> None:
        """Close repository connection"""
        ...

    async def health_check(self) -> bool:
        """Check repository health"""
        ...

    # Subscribers
    async def count_subscribers(
        self, expression: "FilterExpression", timeout: Optional[float] = None
    ) -> int:
        """Count subscribers matching a compiled filter"""
        ...

    async def find_subscriber_ids(self, expression: "FilterExpression") -> Set[str]:
        """Exact membership of a compiled filter"""
        ...

    async def find_recipients(self, expression: "FilterExpression") -> List[Recipient]:
        """Members of a compiled filter with their channel targets"""
        ...

    async def filter_subscriber_ids(self, merchant_id: str, subscriber_ids: List[str]) -> List[str]:
        """Keep only ids that belong to the merchant"""
        ...

    async def deactivate_subscribers(self, merchant_id: str, subscriber_ids: List[str]) -> int:
        """Mark subscribers inactive (invalid push tokens)"""
        ...

    # Custom attributes
    async def save_custom_attribute(self, attribute: CustomAttribute) -> CustomAttribute:
        """Create a custom attribute definition"""
        ...

    async def get_custom_attribute(self, merchant_id: str, name: str) -> Optional[CustomAttribute]:
        """Get a live custom attribute by name"""
        ...

    async def list_custom_attributes(self, merchant_id: str) -> List[CustomAttribute]:
        """List live custom attributes of a merchant"""
        ...

    async def delete_custom_attribute(self, merchant_id: str, name: str) -> bool:
        """Soft delete a custom attribute"""
        ...

    # Segments
    async def save_segment(self, segment: Segment) -> Segment:
        """Insert or replace a segment"""
        ...

    async def get_segment(self, merchant_id: str, segment_id: str) -> Optional[Segment]:
        """Get a segment that is not soft-deleted"""
        ...

    async def get_segments_by_ids(self, merchant_id: str, segment_ids: List[str]) -> List[Segment]:
        """Get live segments of a merchant by id"""
        ...

    async def list_segments(
        self,
        merchant_id: str,
        segment_type: Optional[SegmentType] = None,
        search: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Segment], int]:
        """List live segments"""
        ...

    async def update_segment(self, segment_id: str, updates: Dict[str, Any]) -> Optional[Segment]:
        """Update segment fields"""
        ...

    async def update_segment_count(self, segment_id: str, count: int) -> None:
        """Refresh the informational subscriber count cache"""
        ...

    async def delete_segment(self, merchant_id: str, segment_id: str) -> bool:
        """Soft delete a segment"""
        ...

    # Campaigns
    async def save_campaign(self, campaign: Campaign) -> Campaign:
        """Insert or replace a campaign"""
        ...

    async def get_campaign(self, campaign_id: str, merchant_id: Optional[str] = None) -> Optional[Campaign]:
        """Get a campaign that is not soft-deleted"""
        ...

    async def list_campaigns(
        self,
        merchant_id: str,
        statuses: Optional[List[CampaignStatus]] = None,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Campaign], int]:
        """List live campaigns"""
        ...

    async def update_campaign(self, campaign_id: str, updates: Dict[str, Any]) -> Optional[Campaign]:
        """Update campaign fields"""
        ...

    async def conditional_update_status(
        self,
        campaign_id: str,
        expected: List[CampaignStatus],
        new_status: CampaignStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Campaign]:
        """Set status only where the current status is one of expected; None when no row matched"""
        ...

    async def delete_campaign(self, campaign_id: str) -> bool:
        """Soft delete a campaign"""
        ...

    async def count_campaigns_by_status(self, merchant_id: str) -> Dict[str, int]:
        """Live campaign counts per status"""
        ...

    # Delivery records
    async def upsert_delivery_records(self, records: List[DeliveryRecord]) -> None:
        """Idempotent upsert keyed by (campaign_id, subscriber_id)"""
        ...

    async def get_delivered_subscriber_ids(self, campaign_id: str) -> Set[str]:
        """Subscribers with a delivered outcome"""
        ...

    async def get_recorded_subscriber_ids(self, campaign_id: str) -> Set[str]:
        """Subscribers with any delivery record, whatever its status"""
        ...

    async def get_delivery_counts(self, campaign_id: str) -> Dict[str, int]:
        """Counts of delivered/failed/skipped/clicked records"""
        ...

    async def mark_delivery_clicked(self, campaign_id: str, subscriber_id: str, clicked_at: datetime) -> bool:
        """Stamp the first click on a delivery record"""
        ...

    # Analytics
    async def upsert_daily_analytics(self, delta: CampaignAnalytics) -> CampaignAnalytics:
        """Add counters to the (campaign_id, date) row, creating it if needed"""
        ...

    async def list_daily_analytics(
        self,
        campaign_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> List[CampaignAnalytics]:
        """Daily rows ordered by date"""
        ...

    async def sum_daily_analytics(self, campaign_id: str) -> Dict[str, Any]:
        """Sums of all daily counters of a campaign"""
        ...

    async def sum_merchant_analytics(self, merchant_id: str) -> Dict[str, Any]:
        """Sums of campaign rollups across a merchant's live campaigns"""
        ...

    async def update_campaign_rollups(
        self,
        campaign_id: str,
        impressions: int,
        clicks: int,
        conversions: int,
        revenue: Decimal,
        ctr: Decimal,
    ) -> None:
        """Persist recomputed rollup metrics"""
        ...


# ====================
# External Collaborators
# ====================


class PushTransportProtocol(Protocol):
    """Protocol for the push delivery transport"""

    async def send(
        self, recipients: List[Recipient], payload: PushPayload, campaign_id: Optional[str] = None
    ) -> List[TransportOutcome]:
        """Deliver one batch; one outcome per recipient"""
        ...

    async def health_check(self) -> bool:
        """Check transport availability"""
        ...


class EventBusProtocol(Protocol):
    """Protocol for event bus"""

    async def publish(self, subject: str, event: Dict[str, Any]) -> bool:
        """Publish an event"""
        ...


# ====================
# Custom Exceptions
# ====================


class PushCampaignServiceError(Exception):
    """Base exception for push campaign service errors"""
    pass


class ValidationError(PushCampaignServiceError):
    """Raised for malformed condition trees, incompatible operators or incomplete campaigns"""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class UnknownAttributeError(ValidationError):
    """Raised when a condition references an attribute the merchant does not have"""

    def __init__(self, attribute: str, field: Optional[str] = None):
        super().__init__(f"Unknown attribute: {attribute}", field)
        self.attribute = attribute


class NotFoundError(PushCampaignServiceError):
    """Raised when a segment, campaign or attribute is absent or soft-deleted"""

    def __init__(self, message: str, resource: Optional[str] = None):
        super().__init__(message)
        self.resource = resource


class StateConflictError(PushCampaignServiceError):
    """Raised when the campaign is in the wrong state for the operation"""

    def __init__(self, message: str, current_status: Optional[CampaignStatus] = None):
        super().__init__(message)
        self.current_status = current_status


class TransportError(PushCampaignServiceError):
    """Raised when a batch cannot be handed to the push transport"""

    def __init__(self, message: str, reason: str = "transport_error", unreachable: bool = False):
        super().__init__(message)
        self.reason = reason
        self.unreachable = unreachable


class TransientStorageError(PushCampaignServiceError):
    """Raised for storage failures that may succeed on retry"""
    pass


class DispatchFailedError(PushCampaignServiceError):
    """Raised when a send cannot start; the campaign keeps its prior status"""

    def __init__(self, message: str, campaign_id: Optional[str] = None):
        super().__init__(message)
        self.campaign_id = campaign_id


class RateLimitExceededError(PushCampaignServiceError):
    """Raised when an actor exceeds the request limit for an action"""

    def __init__(self, message: str, retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after


__all__ = [
    "PushCampaignRepositoryProtocol",
    "PushTransportProtocol",
    "EventBusProtocol",
    "PushCampaignServiceError",
    "ValidationError",
    "UnknownAttributeError",
    "NotFoundError",
    "StateConflictError",
    "TransportError",
    "TransientStorageError",
    "DispatchFailedError",
    "RateLimitExceededError",
]
