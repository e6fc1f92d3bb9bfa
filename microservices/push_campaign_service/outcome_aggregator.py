"""
Outcome Aggregator

Folds dispatch outcomes and engagement events into daily analytics rows and
recomputes campaign rollups from the sum of those rows.

Daily rows are upserted by incrementing counters keyed by
(campaign_id, date). Campaign-level rollups are never adjusted in place:
they are always recomputed from the stored daily rows.
"""

import logging
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Iterable, Optional

from .models import (
    Campaign,
    CampaignAnalytics,
    CampaignAnalyticsReport,
    CampaignMetrics,
    DailyAnalyticsRequest,
    EngagementEvent,
    EngagementEventType,
    MerchantOverview,
)
from .protocols import NotFoundError, PushCampaignRepositoryProtocol, ValidationError

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")

COUNTER_FIELDS = (
    "impressions",
    "clicks",
    "conversions",
    "subscribers_targeted",
    "subscribers_reached",
)


def percentage(numerator: Any, denominator: Any) -> Decimal:
    """numerator / denominator * 100 rounded to two places; 0 when denominator is 0"""
    denominator = Decimal(str(denominator or 0))
    if denominator == 0:
        return Decimal("0.00")
    value = Decimal(str(numerator or 0)) / denominator * 100
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def summarize(totals: Dict[str, Any]) -> CampaignMetrics:
    """Build campaign metrics from summed counters"""
    impressions = int(totals.get("impressions") or 0)
    clicks = int(totals.get("clicks") or 0)
    conversions = int(totals.get("conversions") or 0)
    targeted = int(totals.get("subscribers_targeted") or 0)
    reached = int(totals.get("subscribers_reached") or 0)
    revenue = Decimal(str(totals.get("revenue") or 0))

    return CampaignMetrics(
        impressions=impressions,
        clicks=clicks,
        conversions=conversions,
        revenue=revenue,
        subscribers_targeted=targeted,
        subscribers_reached=reached,
        ctr=percentage(clicks, impressions),
        conversion_rate=percentage(conversions, clicks),
        reach_rate=percentage(reached, targeted),
    )


def sum_rows(rows: Iterable[CampaignAnalytics]) -> Dict[str, Any]:
    """Sum counters across daily rows"""
    totals: Dict[str, Any] = {name: 0 for name in COUNTER_FIELDS}
    totals["revenue"] = Decimal("0")
    for row in rows:
        for name in COUNTER_FIELDS:
            totals[name] += getattr(row, name)
        totals["revenue"] += row.revenue
    return totals


class OutcomeAggregator:
    """Analytics ingestion and rollup recomputation"""

    def __init__(
        self,
        repository: PushCampaignRepositoryProtocol,
        event_publisher=None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.event_publisher = event_publisher
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ====================
    # Dispatch outcomes
    # ====================

    async def record_dispatch_outcome(
        self,
        campaign_id: str,
        targeted: int,
        reached: int,
        day: Optional[date] = None,
    ) -> CampaignMetrics:
        """Add a send's targeted/reached counts to the day's row and recompute rollups"""
        delta = CampaignAnalytics(
            campaign_id=campaign_id,
            date=day or self._clock().date(),
            subscribers_targeted=targeted,
            subscribers_reached=reached,
        )
        await self.repository.upsert_daily_analytics(delta)
        return await self.recompute_rollups(campaign_id)

    # ====================
    # Engagement ingestion
    # ====================

    async def ingest_event(self, event: EngagementEvent, merchant_id: Optional[str] = None) -> CampaignAnalytics:
        """
        Apply one impression/click/conversion to its campaign.

        The event is fully validated before anything is written.
        """
        self._validate_event(event)
        campaign = await self._get_campaign(event.campaign_id, merchant_id)

        delta = CampaignAnalytics(
            campaign_id=campaign.campaign_id,
            date=event.timestamp.astimezone(timezone.utc).date(),
        )
        if event.event_type == EngagementEventType.IMPRESSION:
            delta.impressions = 1
        elif event.event_type == EngagementEventType.CLICK:
            delta.clicks = 1
        else:
            delta.conversions = 1
            delta.revenue = event.revenue or Decimal("0")

        if event.device_type:
            delta.device_breakdown = {event.device_type.strip().lower(): 1}
        if event.platform:
            delta.platform_breakdown = {event.platform.strip().lower(): 1}
        if event.country:
            delta.location_breakdown = {event.country.strip().upper(): 1}

        row = await self.repository.upsert_daily_analytics(delta)

        if event.event_type == EngagementEventType.CLICK and event.subscriber_id:
            await self.repository.mark_delivery_clicked(
                campaign.campaign_id, event.subscriber_id, event.timestamp
            )

        metrics = await self.recompute_rollups(campaign.campaign_id)
        logger.debug(f"Ingested {event.event_type.value} for campaign {campaign.campaign_id}")
        await self._publish_metrics(campaign.campaign_id, metrics)
        return row

    async def record_daily_analytics(
        self,
        campaign_id: str,
        request: DailyAnalyticsRequest,
        merchant_id: Optional[str] = None,
    ) -> CampaignAnalytics:
        """Add a day's counters in one call (bulk reporting path)"""
        campaign = await self._get_campaign(campaign_id, merchant_id)
        delta = CampaignAnalytics(campaign_id=campaign.campaign_id, **request.model_dump())
        row = await self.repository.upsert_daily_analytics(delta)
        metrics = await self.recompute_rollups(campaign.campaign_id)
        await self._publish_metrics(campaign.campaign_id, metrics)
        return row

    # ====================
    # Rollups and reporting
    # ====================

    async def recompute_rollups(self, campaign_id: str) -> CampaignMetrics:
        """Recompute campaign rollups from the sum of its daily rows"""
        totals = await self.repository.sum_daily_analytics(campaign_id)
        metrics = summarize(totals)
        await self.repository.update_campaign_rollups(
            campaign_id,
            impressions=metrics.impressions,
            clicks=metrics.clicks,
            conversions=metrics.conversions,
            revenue=metrics.revenue,
            ctr=metrics.ctr,
        )
        return metrics

    async def get_campaign_analytics(
        self,
        campaign_id: str,
        merchant_id: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> CampaignAnalyticsReport:
        """Summary and daily time series, optionally limited to a date range"""
        if start_date and end_date and start_date > end_date:
            raise ValidationError("start_date must not be after end_date", "start_date")
        campaign = await self._get_campaign(campaign_id, merchant_id)
        rows = await self.repository.list_daily_analytics(campaign.campaign_id, start_date, end_date)
        return CampaignAnalyticsReport(
            campaign_id=campaign.campaign_id,
            summary=summarize(sum_rows(rows)),
            time_series=rows,
        )

    async def get_merchant_overview(self, merchant_id: str) -> MerchantOverview:
        """Dashboard totals across a merchant's campaigns"""
        by_status = await self.repository.count_campaigns_by_status(merchant_id)
        totals = await self.repository.sum_merchant_analytics(merchant_id)

        impressions = int(totals.get("impressions") or 0)
        clicks = int(totals.get("clicks") or 0)
        return MerchantOverview(
            merchant_id=merchant_id,
            total_campaigns=sum(by_status.values()),
            campaigns_by_status=by_status,
            total_impressions=impressions,
            total_clicks=clicks,
            total_conversions=int(totals.get("conversions") or 0),
            total_revenue=Decimal(str(totals.get("revenue") or 0)),
            average_ctr=percentage(clicks, impressions),
        )

    # ====================
    # Helpers
    # ====================

    def _validate_event(self, event: EngagementEvent) -> None:
        if not event.campaign_id.strip():
            raise ValidationError("campaign_id is required", "campaign_id")
        if event.subscriber_id is not None and not event.subscriber_id.strip():
            raise ValidationError("subscriber_id must not be blank", "subscriber_id")
        if event.revenue is not None:
            if event.event_type != EngagementEventType.CONVERSION:
                raise ValidationError("revenue is only accepted on conversion events", "revenue")
            if not event.revenue.is_finite() or event.revenue < 0:
                raise ValidationError("revenue must be a non-negative amount", "revenue")
        if event.timestamp.tzinfo is None:
            event.timestamp = event.timestamp.replace(tzinfo=timezone.utc)

    async def _get_campaign(self, campaign_id: str, merchant_id: Optional[str]) -> Campaign:
        campaign = await self.repository.get_campaign(campaign_id, merchant_id)
        if campaign is None or campaign.deleted_at is not None:
            raise NotFoundError(f"Campaign not found: {campaign_id}", "campaign")
        return campaign

    async def _publish_metrics(self, campaign_id: str, metrics: CampaignMetrics) -> None:
        if self.event_publisher:
            await self.event_publisher.publish_analytics_updated(campaign_id, metrics)


__all__ = [
    "OutcomeAggregator",
    "percentage",
    "summarize",
    "sum_rows",
]
