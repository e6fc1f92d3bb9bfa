"""
Push Campaign Service Data Models

Canonical pydantic models for segments, condition trees, subscribers,
campaigns, delivery records and analytics.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================

class ConditionOperator(str, Enum):
    """Operators usable in a segment condition"""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_OR_EQUAL = "greater_or_equal"
    LESS_OR_EQUAL = "less_or_equal"
    IN = "in"
    NOT_IN = "not_in"
    BETWEEN = "between"
    IS_SET = "is_set"
    IS_NOT_SET = "is_not_set"
    IS_TRUE = "is_true"
    IS_FALSE = "is_false"
    WITHIN_DAYS = "within_days"
    MORE_THAN_DAYS_AGO = "more_than_days_ago"
    BEFORE = "before"
    AFTER = "after"


class Combinator(str, Enum):
    """Boolean combinator of a condition group"""
    AND = "and"
    OR = "or"


class AttributeType(str, Enum):
    """Declared type of a subscriber attribute"""
    TEXT = "text"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    CATEGORY = "category"
    MULTIPLE_CHOICE = "multiple_choice"
    EMAIL = "email"
    URL = "url"


class DateUnit(str, Enum):
    """Units accepted by relative date conditions"""
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"
    YEARS = "years"


DATE_UNIT_DAYS = {
    DateUnit.DAYS: 1,
    DateUnit.WEEKS: 7,
    DateUnit.MONTHS: 30,
    DateUnit.YEARS: 365,
}


class SegmentType(str, Enum):
    """Segment kinds"""
    DYNAMIC = "dynamic"
    STATIC = "static"
    BEHAVIOR = "behavior"


class CampaignStatus(str, Enum):
    """Campaign lifecycle status"""
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    SENT = "sent"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    FAILED = "failed"


class CampaignType(str, Enum):
    """Campaign kinds"""
    REGULAR = "regular"
    FLASH_SALE = "flash_sale"


class PushChannel(str, Enum):
    """Push channel of a subscriber"""
    WEB = "web"
    ANDROID = "android"
    IOS = "ios"


class PushUrgency(str, Enum):
    """Web push urgency"""
    NORMAL = "normal"
    HIGH = "high"


class DeliveryStatus(str, Enum):
    """Per-recipient delivery outcome"""
    DELIVERED = "delivered"
    FAILED = "failed"
    SKIPPED = "skipped"


class EngagementEventType(str, Enum):
    """Externally reported engagement events"""
    IMPRESSION = "impression"
    CLICK = "click"
    CONVERSION = "conversion"


# =============================================================================
# BASE MODELS
# =============================================================================

class BaseContract(BaseModel):
    """Base model for all contracts"""

    model_config = ConfigDict(from_attributes=True)


# =============================================================================
# CONDITION MODEL
# =============================================================================

class RelativeDate(BaseContract):
    """Relative date amount, e.g. 2 weeks"""
    amount: int = Field(..., ge=0)
    unit: DateUnit = DateUnit.DAYS

    def to_days(self) -> int:
        return self.amount * DATE_UNIT_DAYS[self.unit]


class Condition(BaseContract):
    """Single attribute predicate (leaf of a condition tree)"""

    model_config = ConfigDict(extra="forbid")

    attribute: str = Field(..., min_length=1, max_length=100)
    operator: ConditionOperator
    value: Any = None


class ConditionGroup(BaseContract):
    """Boolean combination of conditions and nested groups"""

    model_config = ConfigDict(extra="forbid")

    combinator: Combinator = Combinator.AND
    children: List["ConditionNode"] = Field(default_factory=list)
    negate: bool = False


ConditionNode = Union[Condition, ConditionGroup]

ConditionGroup.model_rebuild()


# =============================================================================
# ATTRIBUTE / SUBSCRIBER MODELS
# =============================================================================

class CustomAttribute(BaseContract):
    """Merchant-defined subscriber attribute"""
    attribute_id: str = Field(default_factory=lambda: f"attr_{uuid4().hex[:16]}")
    merchant_id: str
    name: str = Field(..., min_length=1, max_length=64, pattern=r"^[A-Za-z][A-Za-z0-9_]*$")
    display_name: Optional[str] = Field(None, max_length=255)
    attribute_type: AttributeType
    options: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    deleted_at: Optional[datetime] = None


class Subscriber(BaseContract):
    """Push subscriber of a merchant (read model)"""
    subscriber_id: str = Field(default_factory=lambda: f"sub_{uuid4().hex[:16]}")
    merchant_id: str
    email: Optional[str] = None
    push_token: Optional[str] = None
    channel: PushChannel = PushChannel.WEB
    tags: List[str] = Field(default_factory=list)
    last_active_at: Optional[datetime] = None
    total_spend: Decimal = Decimal("0")
    order_count: int = 0
    location_country: Optional[str] = None
    location_region: Optional[str] = None
    location_city: Optional[str] = None
    device_type: Optional[str] = None
    browser: Optional[str] = None
    operating_system: Optional[str] = None
    language: Optional[str] = None
    is_mobile: bool = False
    source: Optional[str] = None
    status: str = "subscribed"
    subscribed_at: datetime = Field(default_factory=_now)
    unsubscribed_at: Optional[datetime] = None
    is_active: bool = True
    custom_attributes: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_push_eligible(self) -> bool:
        return self.is_active and bool(self.push_token) and self.unsubscribed_at is None


class Recipient(BaseContract):
    """Resolved audience member with its channel target"""
    subscriber_id: str
    channel_target: Optional[str] = None
    channel: PushChannel = PushChannel.WEB


# =============================================================================
# SEGMENT MODELS
# =============================================================================

class Segment(BaseContract):
    """Merchant-owned audience definition"""
    segment_id: str = Field(default_factory=lambda: f"seg_{uuid4().hex[:16]}")
    merchant_id: str
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    segment_type: SegmentType = SegmentType.DYNAMIC
    root_condition: Optional[ConditionNode] = None
    member_ids: List[str] = Field(default_factory=list)
    subscriber_count_cache: int = 0
    count_refreshed_at: Optional[datetime] = None
    is_active: bool = True
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    deleted_at: Optional[datetime] = None

    @property
    def is_rule_based(self) -> bool:
        return self.segment_type in (SegmentType.DYNAMIC, SegmentType.BEHAVIOR)


# =============================================================================
# CAMPAIGN MODELS
# =============================================================================

class PushPayload(BaseContract):
    """Notification content delivered to each recipient"""
    title: str = Field(default="", max_length=100)
    message: str = Field(default="", max_length=500)
    destination_url: Optional[str] = Field(None, max_length=2048)
    action_button_text: Optional[str] = Field(None, max_length=50)
    icon: Optional[str] = None
    hero_image: Optional[str] = None
    ttl_seconds: int = Field(default=86400, ge=0, le=2419200)
    enable_sound: bool = True
    enable_vibration: bool = True
    urgency: PushUrgency = PushUrgency.NORMAL


class Campaign(BaseContract):
    """Push campaign"""
    campaign_id: str = Field(default_factory=lambda: f"cmp_{uuid4().hex[:16]}")
    merchant_id: str
    name: str = Field(..., min_length=1, max_length=255)
    campaign_type: CampaignType = CampaignType.REGULAR
    status: CampaignStatus = CampaignStatus.DRAFT
    payload: PushPayload = Field(default_factory=PushPayload)
    target_segment_ids: List[str] = Field(default_factory=list)

    scheduled_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    sent_count: int = 0
    failed_count: int = 0

    # Rollup metrics (recomputed from daily analytics rows)
    impressions: int = 0
    clicks: int = 0
    conversions: int = 0
    revenue: Decimal = Decimal("0")
    ctr: Decimal = Decimal("0")

    cancelled_reason: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    deleted_at: Optional[datetime] = None


class DeliveryRecord(BaseContract):
    """Per-recipient delivery outcome, unique on (campaign_id, subscriber_id)"""
    campaign_id: str
    subscriber_id: str
    status: DeliveryStatus
    reason: Optional[str] = None
    attempt_count: int = 1
    attempted_at: datetime = Field(default_factory=_now)
    delivered_at: Optional[datetime] = None
    clicked_at: Optional[datetime] = None


class TransportOutcome(BaseContract):
    """Result reported by the push transport for one recipient"""
    subscriber_id: str
    status: DeliveryStatus
    reason: Optional[str] = None


# =============================================================================
# ANALYTICS MODELS
# =============================================================================

class CampaignAnalytics(BaseContract):
    """Daily analytics row keyed by (campaign_id, date)"""
    campaign_id: str
    date: date
    impressions: int = Field(default=0, ge=0)
    clicks: int = Field(default=0, ge=0)
    conversions: int = Field(default=0, ge=0)
    revenue: Decimal = Field(default=Decimal("0"), ge=0)
    subscribers_targeted: int = Field(default=0, ge=0)
    subscribers_reached: int = Field(default=0, ge=0)
    device_breakdown: Dict[str, int] = Field(default_factory=dict)
    platform_breakdown: Dict[str, int] = Field(default_factory=dict)
    location_breakdown: Dict[str, int] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class EngagementEvent(BaseContract):
    """Impression, click or conversion reported for a campaign"""
    campaign_id: str = Field(..., min_length=1)
    subscriber_id: Optional[str] = None
    event_type: EngagementEventType
    revenue: Optional[Decimal] = None
    currency: str = Field(default="USD", min_length=3, max_length=3)
    timestamp: datetime = Field(default_factory=_now)
    device_type: Optional[str] = None
    platform: Optional[str] = None
    country: Optional[str] = None


class CampaignMetrics(BaseContract):
    """Summed counters plus derived percentages"""
    impressions: int = 0
    clicks: int = 0
    conversions: int = 0
    revenue: Decimal = Decimal("0")
    subscribers_targeted: int = 0
    subscribers_reached: int = 0
    ctr: Decimal = Decimal("0")
    conversion_rate: Decimal = Decimal("0")
    reach_rate: Decimal = Decimal("0")


# =============================================================================
# DISPATCH RESULT MODELS
# =============================================================================

class CampaignValidationResult(BaseContract):
    """Readiness report for a campaign"""
    campaign_id: str
    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    estimated_subscribers: int = 0


class SendResult(BaseContract):
    """Summary of one dispatch run"""
    campaign_id: str
    status: CampaignStatus
    audience_size: int = 0
    sent_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    errors: List[str] = Field(default_factory=list)
    duration_ms: int = 0


class SendStats(BaseContract):
    """Read-side delivery statistics for a campaign"""
    campaign_id: str
    total_sent: int = 0
    total_delivered: int = 0
    total_clicked: int = 0
    total_failed: int = 0
    total_skipped: int = 0
    delivery_rate: Decimal = Decimal("0")
    click_rate: Decimal = Decimal("0")


class CampaignAnalyticsReport(BaseContract):
    """Campaign summary plus its daily time series"""
    campaign_id: str
    summary: CampaignMetrics
    time_series: List[CampaignAnalytics] = Field(default_factory=list)


class MerchantOverview(BaseContract):
    """Dashboard totals across a merchant's campaigns"""
    merchant_id: str
    total_campaigns: int = 0
    campaigns_by_status: Dict[str, int] = Field(default_factory=dict)
    total_impressions: int = 0
    total_clicks: int = 0
    total_conversions: int = 0
    total_revenue: Decimal = Decimal("0")
    average_ctr: Decimal = Decimal("0")


# =============================================================================
# REQUEST / RESPONSE MODELS
# =============================================================================

class CustomAttributeCreateRequest(BaseContract):
    """Define a custom attribute"""
    name: str = Field(..., min_length=1, max_length=64, pattern=r"^[A-Za-z][A-Za-z0-9_]*$")
    display_name: Optional[str] = Field(None, max_length=255)
    attribute_type: AttributeType
    options: List[str] = Field(default_factory=list)


class SegmentCreateRequest(BaseContract):
    """Create a segment"""
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    segment_type: SegmentType = SegmentType.DYNAMIC
    root_condition: Optional[ConditionNode] = None
    member_ids: List[str] = Field(default_factory=list)


class SegmentUpdateRequest(BaseContract):
    """Update a segment (only provided fields change)"""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    root_condition: Optional[ConditionNode] = None
    is_active: Optional[bool] = None


class SegmentMembersRequest(BaseContract):
    """Replace the member list of a static segment"""
    member_ids: List[str] = Field(default_factory=list)


class SegmentEstimateRequest(BaseContract):
    """Live count estimate for an unsaved condition tree"""
    root_condition: Optional[ConditionNode] = None


class SegmentEstimateResponse(BaseContract):
    """Estimate result"""
    merchant_id: str
    estimated_count: int


class SegmentResponse(BaseContract):
    """Single segment response"""
    segment: Segment
    message: Optional[str] = None


class SegmentListResponse(BaseContract):
    """Segment list response"""
    segments: List[Segment]
    total: int
    limit: int
    offset: int


class CampaignCreateRequest(BaseContract):
    """Create a campaign in draft status"""
    name: str = Field(..., min_length=1, max_length=255)
    campaign_type: CampaignType = CampaignType.REGULAR
    payload: PushPayload = Field(default_factory=PushPayload)
    target_segment_ids: List[str] = Field(default_factory=list)


class CampaignUpdateRequest(BaseContract):
    """Update a draft or scheduled campaign"""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    campaign_type: Optional[CampaignType] = None
    payload: Optional[PushPayload] = None
    target_segment_ids: Optional[List[str]] = None


class ScheduleRequest(BaseContract):
    """Schedule a campaign"""
    scheduled_at: datetime


class CancelRequest(BaseContract):
    """Cancel a campaign"""
    reason: Optional[str] = Field(None, max_length=500)


class CampaignResponse(BaseContract):
    """Single campaign response"""
    campaign: Campaign
    message: Optional[str] = None


class CampaignListResponse(BaseContract):
    """Campaign list response"""
    campaigns: List[Campaign]
    total: int
    limit: int
    offset: int
    has_more: bool = False


class DailyAnalyticsRequest(BaseContract):
    """Counters to add to one day of a campaign's analytics"""
    date: date
    impressions: int = Field(default=0, ge=0)
    clicks: int = Field(default=0, ge=0)
    conversions: int = Field(default=0, ge=0)
    revenue: Decimal = Field(default=Decimal("0"), ge=0)
    subscribers_targeted: int = Field(default=0, ge=0)
    subscribers_reached: int = Field(default=0, ge=0)
    device_breakdown: Dict[str, int] = Field(default_factory=dict)
    platform_breakdown: Dict[str, int] = Field(default_factory=dict)
    location_breakdown: Dict[str, int] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    service: str
    port: int
    version: str
    dependencies: Dict[str, str] = Field(default_factory=dict)


class ReadinessResponse(BaseModel):
    """Readiness check response"""
    ready: bool
    checks: Dict[str, bool] = Field(default_factory=dict)
    details: Dict[str, str] = Field(default_factory=dict)


class LivenessResponse(BaseModel):
    """Liveness check response"""
    alive: bool
    uptime_seconds: float


class ErrorResponse(BaseModel):
    """Error response"""
    detail: str
    field: Optional[str] = None


__all__ = [
    # Enums
    "ConditionOperator",
    "Combinator",
    "AttributeType",
    "DateUnit",
    "DATE_UNIT_DAYS",
    "SegmentType",
    "CampaignStatus",
    "CampaignType",
    "PushChannel",
    "PushUrgency",
    "DeliveryStatus",
    "EngagementEventType",
    # Condition model
    "RelativeDate",
    "Condition",
    "ConditionGroup",
    "ConditionNode",
    # Core models
    "CustomAttribute",
    "Subscriber",
    "Recipient",
    "Segment",
    "PushPayload",
    "Campaign",
    "DeliveryRecord",
    "TransportOutcome",
    "CampaignAnalytics",
    "EngagementEvent",
    "CampaignMetrics",
    # Results
    "CampaignValidationResult",
    "SendResult",
    "SendStats",
    "CampaignAnalyticsReport",
    "MerchantOverview",
    # Requests / responses
    "CustomAttributeCreateRequest",
    "SegmentCreateRequest",
    "SegmentUpdateRequest",
    "SegmentMembersRequest",
    "SegmentEstimateRequest",
    "SegmentEstimateResponse",
    "SegmentResponse",
    "SegmentListResponse",
    "CampaignCreateRequest",
    "CampaignUpdateRequest",
    "ScheduleRequest",
    "CancelRequest",
    "CampaignResponse",
    "CampaignListResponse",
    "DailyAnalyticsRequest",
    "HealthResponse",
    "ReadinessResponse",
    "LivenessResponse",
    "ErrorResponse",
]
