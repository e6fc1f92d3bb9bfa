"""
Component Test Fixtures for Push Campaign Service

Provides an in-memory repository, a scripted push transport and a recording
event bus, plus fully wired services built on top of them.
"""

import asyncio
import os
import sys
from collections import defaultdict
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from core.config import DispatchConfig
from microservices.push_campaign_service.campaign_service import CampaignService
from microservices.push_campaign_service.dispatch_engine import DispatchEngine
from microservices.push_campaign_service.events.publishers import PushCampaignEventPublisher
from microservices.push_campaign_service.outcome_aggregator import OutcomeAggregator
from microservices.push_campaign_service.protocols import TransientStorageError, TransportError
from microservices.push_campaign_service.query_compiler import QueryCompiler, matches
from microservices.push_campaign_service.segment_resolver import SegmentResolver
from microservices.push_campaign_service.segment_service import SegmentService
from tests.contracts.push_campaign.data_contract import (
    Campaign,
    CampaignAnalytics,
    CampaignStatus,
    CustomAttribute,
    DeliveryRecord,
    DeliveryStatus,
    PushCampaignTestDataFactory,
    Recipient,
    Segment,
    Subscriber,
    TransportOutcome,
)


_COUNTERS = ("impressions", "clicks", "conversions", "subscribers_targeted", "subscribers_reached")
_BREAKDOWNS = ("device_breakdown", "platform_breakdown", "location_breakdown")


# ====================
# Mock Repository
# ====================


class MockPushCampaignRepository:
    """In-memory repository for component testing

    Status changes are applied without awaiting in between, so a
    conditional update is atomic with respect to other coroutines.
    """

    def __init__(self):
        self.subscribers: Dict[str, Subscriber] = {}
        self.attributes: Dict[Tuple[str, str], CustomAttribute] = {}
        self.segments: Dict[str, Segment] = {}
        self.campaigns: Dict[str, Campaign] = {}
        self.deliveries: Dict[Tuple[str, str], DeliveryRecord] = {}
        self.analytics: Dict[Tuple[str, date], CampaignAnalytics] = {}
        self.calls: Dict[str, int] = defaultdict(int)
        self.failures: Dict[str, int] = {}
        self.failure_errors: Dict[str, Exception] = {}
        self.healthy = True

    # Test helpers

    def add_subscribers(self, subscribers: List[Subscriber]) -> None:
        for subscriber in subscribers:
            self.subscribers[subscriber.subscriber_id] = subscriber

    def fail(self, method: str, times: int = 1, error: Optional[Exception] = None) -> None:
        """Make the next `times` calls of method raise error (TransientStorageError by default)"""
        self.failures[method] = times
        if error is not None:
            self.failure_errors[method] = error

    def _track(self, method: str) -> None:
        self.calls[method] += 1
        remaining = self.failures.get(method, 0)
        if remaining:
            self.failures[method] = remaining - 1
            raise self.failure_errors.get(method) or TransientStorageError(f"{method} unavailable")

    async def initialize(self):
        pass

    async def close(self):
        pass

    async def health_check(self) -> bool:
        return self.healthy

    # Subscribers

    async def count_subscribers(self, expression, timeout: Optional[float] = None) -> int:
        self._track("count_subscribers")
        return sum(1 for s in self.subscribers.values() if matches(expression, s))

    async def find_subscriber_ids(self, expression) -> Set[str]:
        self._track("find_subscriber_ids")
        return {s.subscriber_id for s in self.subscribers.values() if matches(expression, s)}

    async def find_recipients(self, expression) -> List[Recipient]:
        self._track("find_recipients")
        return [
            Recipient(subscriber_id=s.subscriber_id, channel_target=s.push_token, channel=s.channel)
            for s in sorted(self.subscribers.values(), key=lambda s: s.subscriber_id)
            if matches(expression, s)
        ]

    async def filter_subscriber_ids(self, merchant_id: str, subscriber_ids: List[str]) -> List[str]:
        return [
            sid for sid in subscriber_ids
            if sid in self.subscribers and self.subscribers[sid].merchant_id == merchant_id
        ]

    async def deactivate_subscribers(self, merchant_id: str, subscriber_ids: List[str]) -> int:
        count = 0
        for sid in subscriber_ids:
            subscriber = self.subscribers.get(sid)
            if subscriber and subscriber.merchant_id == merchant_id and subscriber.is_active:
                subscriber.is_active = False
                count += 1
        return count

    # Custom attributes

    async def save_custom_attribute(self, attribute: CustomAttribute) -> CustomAttribute:
        self.attributes[(attribute.merchant_id, attribute.name)] = attribute
        return attribute

    async def get_custom_attribute(self, merchant_id: str, name: str) -> Optional[CustomAttribute]:
        attribute = self.attributes.get((merchant_id, name))
        if attribute and attribute.deleted_at is None:
            return attribute
        return None

    async def list_custom_attributes(self, merchant_id: str) -> List[CustomAttribute]:
        return sorted(
            (a for (mid, _), a in self.attributes.items() if mid == merchant_id and a.deleted_at is None),
            key=lambda a: a.name,
        )

    async def delete_custom_attribute(self, merchant_id: str, name: str) -> bool:
        attribute = await self.get_custom_attribute(merchant_id, name)
        if attribute is None:
            return False
        attribute.deleted_at = datetime.now(timezone.utc)
        return True

    # Segments

    async def save_segment(self, segment: Segment) -> Segment:
        self.segments[segment.segment_id] = segment.model_copy()
        return segment

    async def get_segment(self, merchant_id: str, segment_id: str) -> Optional[Segment]:
        segment = self.segments.get(segment_id)
        if segment and segment.merchant_id == merchant_id and segment.deleted_at is None:
            return segment.model_copy()
        return None

    async def get_segments_by_ids(self, merchant_id: str, segment_ids: List[str]) -> List[Segment]:
        self._track("get_segments_by_ids")
        return [
            self.segments[sid].model_copy()
            for sid in segment_ids
            if sid in self.segments
            and self.segments[sid].merchant_id == merchant_id
            and self.segments[sid].deleted_at is None
        ]

    async def list_segments(self, merchant_id: str, segment_type=None, search=None, limit: int = 50, offset: int = 0):
        results = [s for s in self.segments.values() if s.merchant_id == merchant_id and s.deleted_at is None]
        if segment_type:
            results = [s for s in results if s.segment_type == segment_type]
        if search:
            results = [s for s in results if search.lower() in s.name.lower()]
        results.sort(key=lambda s: s.created_at, reverse=True)
        return results[offset:offset + limit], len(results)

    async def update_segment(self, segment_id: str, updates: Dict[str, Any]) -> Optional[Segment]:
        segment = self.segments.get(segment_id)
        if segment is None or segment.deleted_at is not None:
            return None
        updated = segment.model_copy(update={**updates, "updated_at": datetime.now(timezone.utc)})
        self.segments[segment_id] = updated
        return updated.model_copy()

    async def update_segment_count(self, segment_id: str, count: int) -> None:
        segment = self.segments.get(segment_id)
        if segment:
            segment.subscriber_count_cache = count
            segment.count_refreshed_at = datetime.now(timezone.utc)

    async def delete_segment(self, merchant_id: str, segment_id: str) -> bool:
        segment = self.segments.get(segment_id)
        if segment is None or segment.merchant_id != merchant_id or segment.deleted_at is not None:
            return False
        segment.deleted_at = datetime.now(timezone.utc)
        return True

    # Campaigns

    async def save_campaign(self, campaign: Campaign) -> Campaign:
        self.campaigns[campaign.campaign_id] = campaign.model_copy()
        return campaign

    async def get_campaign(self, campaign_id: str, merchant_id: Optional[str] = None) -> Optional[Campaign]:
        self._track("get_campaign")
        campaign = self.campaigns.get(campaign_id)
        if campaign is None or campaign.deleted_at is not None:
            return None
        if merchant_id and campaign.merchant_id != merchant_id:
            return None
        return campaign.model_copy()

    async def list_campaigns(self, merchant_id: str, statuses=None, search=None, limit: int = 20, offset: int = 0):
        results = [c for c in self.campaigns.values() if c.merchant_id == merchant_id and c.deleted_at is None]
        if statuses:
            results = [c for c in results if c.status in statuses]
        if search:
            results = [c for c in results if search.lower() in c.name.lower()]
        results.sort(key=lambda c: c.created_at, reverse=True)
        return results[offset:offset + limit], len(results)

    async def update_campaign(self, campaign_id: str, updates: Dict[str, Any]) -> Optional[Campaign]:
        campaign = self.campaigns.get(campaign_id)
        if campaign is None or campaign.deleted_at is not None:
            return None
        updated = campaign.model_copy(update={**updates, "updated_at": datetime.now(timezone.utc)})
        self.campaigns[campaign_id] = updated
        return updated.model_copy()

    async def conditional_update_status(
        self,
        campaign_id: str,
        expected: List[CampaignStatus],
        new_status: CampaignStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Campaign]:
        self._track("conditional_update_status")
        campaign = self.campaigns.get(campaign_id)
        if campaign is None or campaign.deleted_at is not None or campaign.status not in expected:
            return None
        changes = dict(updates or {})
        changes["status"] = new_status
        changes["updated_at"] = datetime.now(timezone.utc)
        updated = campaign.model_copy(update=changes)
        self.campaigns[campaign_id] = updated
        return updated.model_copy()

    async def delete_campaign(self, campaign_id: str) -> bool:
        campaign = self.campaigns.get(campaign_id)
        if campaign is None or campaign.deleted_at is not None or campaign.status == CampaignStatus.SENDING:
            return False
        campaign.deleted_at = datetime.now(timezone.utc)
        return True

    async def count_campaigns_by_status(self, merchant_id: str) -> Dict[str, int]:
        counts: Dict[str, int] = defaultdict(int)
        for campaign in self.campaigns.values():
            if campaign.merchant_id == merchant_id and campaign.deleted_at is None:
                counts[campaign.status.value] += 1
        return dict(counts)

    # Delivery records

    async def upsert_delivery_records(self, records: List[DeliveryRecord]) -> None:
        self._track("upsert_delivery_records")
        for record in records:
            key = (record.campaign_id, record.subscriber_id)
            existing = self.deliveries.get(key)
            if existing is None:
                self.deliveries[key] = record.model_copy(update={"attempt_count": 1})
                continue
            if existing.status == DeliveryStatus.DELIVERED:
                continue
            self.deliveries[key] = record.model_copy(update={
                "attempt_count": existing.attempt_count + 1,
                "delivered_at": record.delivered_at or existing.delivered_at,
                "clicked_at": existing.clicked_at,
            })

    async def get_delivered_subscriber_ids(self, campaign_id: str) -> Set[str]:
        self._track("get_delivered_subscriber_ids")
        return {
            sid for (cid, sid), record in self.deliveries.items()
            if cid == campaign_id and record.status == DeliveryStatus.DELIVERED
        }

    async def get_recorded_subscriber_ids(self, campaign_id: str) -> Set[str]:
        self._track("get_recorded_subscriber_ids")
        return {sid for (cid, sid) in self.deliveries if cid == campaign_id}

    async def get_delivery_counts(self, campaign_id: str) -> Dict[str, int]:
        self._track("get_delivery_counts")
        counts = {"delivered": 0, "failed": 0, "skipped": 0, "clicked": 0}
        for (cid, _), record in self.deliveries.items():
            if cid != campaign_id:
                continue
            counts[record.status.value] += 1
            if record.clicked_at is not None:
                counts["clicked"] += 1
        return counts

    async def mark_delivery_clicked(self, campaign_id: str, subscriber_id: str, clicked_at: datetime) -> bool:
        record = self.deliveries.get((campaign_id, subscriber_id))
        if record is None or record.clicked_at is not None:
            return False
        record.clicked_at = clicked_at
        return True

    # Analytics

    async def upsert_daily_analytics(self, delta: CampaignAnalytics) -> CampaignAnalytics:
        self._track("upsert_daily_analytics")
        key = (delta.campaign_id, delta.date)
        row = self.analytics.get(key)
        if row is None:
            row = CampaignAnalytics(campaign_id=delta.campaign_id, date=delta.date)
        changes: Dict[str, Any] = {name: getattr(row, name) + getattr(delta, name) for name in _COUNTERS}
        changes["revenue"] = row.revenue + delta.revenue
        for name in _BREAKDOWNS:
            merged = dict(getattr(row, name))
            for bucket, count in getattr(delta, name).items():
                merged[bucket] = merged.get(bucket, 0) + count
            changes[name] = merged
        row = row.model_copy(update=changes)
        self.analytics[key] = row
        return row.model_copy()

    async def list_daily_analytics(self, campaign_id: str, start_date=None, end_date=None) -> List[CampaignAnalytics]:
        rows = [r for (cid, _), r in self.analytics.items() if cid == campaign_id]
        if start_date:
            rows = [r for r in rows if r.date >= start_date]
        if end_date:
            rows = [r for r in rows if r.date <= end_date]
        return sorted(rows, key=lambda r: r.date)

    async def sum_daily_analytics(self, campaign_id: str) -> Dict[str, Any]:
        rows = [r for (cid, _), r in self.analytics.items() if cid == campaign_id]
        totals: Dict[str, Any] = {name: sum(getattr(r, name) for r in rows) for name in _COUNTERS}
        totals["revenue"] = sum((r.revenue for r in rows), Decimal("0"))
        return totals

    async def sum_merchant_analytics(self, merchant_id: str) -> Dict[str, Any]:
        live = [c for c in self.campaigns.values() if c.merchant_id == merchant_id and c.deleted_at is None]
        return {
            "impressions": sum(c.impressions for c in live),
            "clicks": sum(c.clicks for c in live),
            "conversions": sum(c.conversions for c in live),
            "revenue": sum((c.revenue for c in live), Decimal("0")),
        }

    async def update_campaign_rollups(self, campaign_id, impressions, clicks, conversions, revenue, ctr) -> None:
        self._track("update_campaign_rollups")
        campaign = self.campaigns.get(campaign_id)
        if campaign:
            self.campaigns[campaign_id] = campaign.model_copy(update={
                "impressions": impressions,
                "clicks": clicks,
                "conversions": conversions,
                "revenue": revenue,
                "ctr": ctr,
            })


# ====================
# Mock Push Transport
# ====================


class MockPushTransport:
    """Scripted push transport

    Every recipient is delivered unless listed in failed (reason per id),
    omitted (no outcome reported) or the whole batch raises `error`.
    """

    def __init__(self):
        self.batches: List[List[str]] = []
        self.failed: Dict[str, str] = {}
        self.omitted: Set[str] = set()
        self.error: Optional[Exception] = None
        self.errors_remaining: Optional[int] = None
        self.delay: float = 0.0
        self.in_flight = 0
        self.max_in_flight = 0

    @property
    def sent_ids(self) -> List[str]:
        return [sid for batch in self.batches for sid in batch]

    def make_unreachable(self, times: Optional[int] = None) -> None:
        self.error = TransportError("connection refused", reason="transport_unreachable", unreachable=True)
        self.errors_remaining = times

    async def send(self, recipients: List[Recipient], payload, campaign_id: Optional[str] = None) -> List[TransportOutcome]:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            self.batches.append([r.subscriber_id for r in recipients])
            if self.error is not None and self.errors_remaining != 0:
                if self.errors_remaining is not None:
                    self.errors_remaining -= 1
                raise self.error
            outcomes = []
            for recipient in recipients:
                sid = recipient.subscriber_id
                if sid in self.omitted:
                    continue
                if sid in self.failed:
                    outcomes.append(TransportOutcome(subscriber_id=sid, status=DeliveryStatus.FAILED, reason=self.failed[sid]))
                else:
                    outcomes.append(TransportOutcome(subscriber_id=sid, status=DeliveryStatus.DELIVERED))
            return outcomes
        finally:
            self.in_flight -= 1

    async def health_check(self) -> bool:
        return True


# ====================
# Mock Event Bus
# ====================


class MockEventBus:
    """Mock event bus for component testing"""

    def __init__(self):
        self.published_events: List[Dict[str, Any]] = []
        self.is_connected = True

    async def publish(self, subject: str, event: Dict[str, Any]) -> bool:
        self.published_events.append({"subject": subject, **event})
        return True

    async def close(self) -> None:
        self.is_connected = False

    def get_events_by_type(self, event_type: str) -> List[Dict]:
        return [e for e in self.published_events if e["event_type"] == event_type]

    def clear_events(self):
        self.published_events = []


# ====================
# Fixtures
# ====================


@pytest.fixture
def factory():
    return PushCampaignTestDataFactory()


@pytest.fixture
def merchant_id(factory):
    return factory.make_merchant_id()


@pytest.fixture
def mock_repository():
    return MockPushCampaignRepository()


@pytest.fixture
def mock_transport():
    return MockPushTransport()


@pytest.fixture
def mock_event_bus():
    return MockEventBus()


@pytest.fixture
def event_publisher(mock_event_bus):
    return PushCampaignEventPublisher(mock_event_bus)


@pytest.fixture
def dispatch_config():
    return DispatchConfig(
        batch_size=2,
        batch_delay_ms=0,
        batch_timeout_seconds=1.0,
        max_concurrent_batches=1,
        max_retries=3,
        retry_wait_min=0,
        retry_wait_max=0,
        min_reach_threshold=1,
    )


@pytest.fixture
def compiler():
    return QueryCompiler(max_depth=5, max_conditions=50)


@pytest.fixture
def resolver(mock_repository, compiler):
    return SegmentResolver(mock_repository, compiler=compiler)


@pytest.fixture
def segment_service(mock_repository, resolver):
    return SegmentService(mock_repository, resolver)


@pytest.fixture
def campaign_service(mock_repository, event_publisher):
    return CampaignService(mock_repository, event_publisher=event_publisher)


@pytest.fixture
def aggregator(mock_repository, event_publisher):
    return OutcomeAggregator(mock_repository, event_publisher=event_publisher)


@pytest.fixture
def dispatch_engine(mock_repository, resolver, mock_transport, aggregator, event_publisher, dispatch_config):
    return DispatchEngine(
        repository=mock_repository,
        resolver=resolver,
        transport=mock_transport,
        aggregator=aggregator,
        event_publisher=event_publisher,
        config=dispatch_config,
    )


@pytest.fixture
def us_audience(factory, mock_repository, merchant_id):
    """Five US subscribers, a dynamic country=US segment and a draft campaign targeting it"""
    subscribers = factory.make_subscribers(5, merchant_id=merchant_id)
    mock_repository.add_subscribers(subscribers)
    segment = factory.make_segment(merchant_id=merchant_id)
    mock_repository.segments[segment.segment_id] = segment
    campaign = factory.make_campaign(merchant_id=merchant_id, target_segment_ids=[segment.segment_id])
    mock_repository.campaigns[campaign.campaign_id] = campaign
    return {"subscribers": subscribers, "segment": segment, "campaign": campaign}
