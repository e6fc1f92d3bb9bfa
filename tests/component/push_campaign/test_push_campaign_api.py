"""
Component Tests for the Push Campaign HTTP API

Runs the FastAPI app against a factory wired to the in-memory repository,
scripted transport and recording event bus. The lifespan is not entered,
so no database or NATS connection is made.
"""

import os
import sys
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from core.config import RateLimitConfig
from microservices.push_campaign_service import main
from microservices.push_campaign_service.factory import PushCampaignServiceFactory
from microservices.push_campaign_service.rate_limiter import SlidingWindowRateLimiter


def build_factory(mock_repository, mock_transport, resolver, segment_service, campaign_service,
                  aggregator, dispatch_engine, event_publisher, rate_limit=None):
    services = PushCampaignServiceFactory(main.settings)
    services._repository = mock_repository
    services._transport = mock_transport
    services._resolver = resolver
    services._segment_service = segment_service
    services._campaign_service = campaign_service
    services._aggregator = aggregator
    services._dispatch_engine = dispatch_engine
    services._event_publisher = event_publisher
    services._rate_limiter = SlidingWindowRateLimiter(rate_limit or RateLimitConfig(enabled=False))
    return services


@pytest.fixture
def services(mock_repository, mock_transport, resolver, segment_service, campaign_service,
             aggregator, dispatch_engine, event_publisher):
    return build_factory(mock_repository, mock_transport, resolver, segment_service, campaign_service,
                         aggregator, dispatch_engine, event_publisher)


@pytest.fixture
def client(monkeypatch, services):
    monkeypatch.setattr(main, "factory", services)
    return TestClient(main.app)


@pytest.fixture
def headers(merchant_id):
    return {"X-Merchant-ID": merchant_id, "X-User-ID": "usr_test"}


US_TREE = {
    "combinator": "and",
    "children": [{"attribute": "locationCountry", "operator": "equals", "value": "US"}],
}


class TestHealthEndpoints:
    """Health, readiness and liveness"""

    def test_health(self, client, assertions):
        response = client.get("/health")

        assertions.assert_http_success(response)
        data = response.json()
        assert data["status"] == "healthy"
        assert data["port"] == main.SERVICE_PORT
        assert data["dependencies"] == {"postgres": "healthy", "nats": "not_configured"}

    def test_service_prefixed_health(self, client, assertions):
        assertions.assert_http_success(client.get("/api/v1/push/health"))

    def test_ready_reflects_database(self, client, mock_repository):
        assert client.get("/health/ready").json()["ready"] is True

        mock_repository.healthy = False

        assert client.get("/health/ready").json()["ready"] is False

    def test_live(self, client):
        assert client.get("/health/live").json()["alive"] is True

    def test_not_initialized(self, monkeypatch, headers):
        monkeypatch.setattr(main, "factory", None)
        client = TestClient(main.app)

        response = client.get("/api/v1/push/campaigns", headers=headers)

        assert response.status_code == 503
        assert client.get("/health/ready").json()["ready"] is False


class TestMerchantScope:
    """X-Merchant-ID handling"""

    def test_missing_merchant_header(self, client):
        response = client.get("/api/v1/push/segments")

        assert response.status_code == 400

    def test_other_merchant_sees_nothing(self, client, headers, factory):
        created = client.post(
            "/api/v1/push/segments",
            json={"name": "US shoppers", "root_condition": US_TREE},
            headers=headers,
        ).json()["segment"]

        other = {"X-Merchant-ID": factory.make_merchant_id()}
        response = client.get(f"/api/v1/push/segments/{created['segment_id']}", headers=other)

        assert response.status_code == 404


class TestAttributeEndpoints:
    """Custom attribute routes"""

    def test_define_list_delete(self, client, headers, assertions):
        response = client.post(
            "/api/v1/push/attributes",
            json={"name": "loyaltyTier", "attribute_type": "category", "options": ["bronze", "gold"]},
            headers=headers,
        )
        assertions.assert_http_success(response, 201)

        listed = client.get("/api/v1/push/attributes", headers=headers).json()
        assert listed["total"] == 1
        assert listed["attributes"][0]["name"] == "loyaltyTier"

        assert client.delete("/api/v1/push/attributes/loyaltyTier", headers=headers).status_code == 204
        assert client.delete("/api/v1/push/attributes/loyaltyTier", headers=headers).status_code == 404

    def test_builtin_name_rejected(self, client, headers):
        response = client.post(
            "/api/v1/push/attributes",
            json={"name": "email", "attribute_type": "text"},
            headers=headers,
        )

        assert response.status_code == 422
        assert response.json()["field"] == "name"

    def test_duplicate_is_conflict(self, client, headers):
        body = {"name": "plan", "attribute_type": "text"}
        client.post("/api/v1/push/attributes", json=body, headers=headers)

        assert client.post("/api/v1/push/attributes", json=body, headers=headers).status_code == 409


class TestSegmentEndpoints:
    """Segment routes"""

    def test_create_and_get(self, client, headers, mock_repository, factory, merchant_id, assertions):
        mock_repository.add_subscribers(factory.make_subscribers(3, merchant_id=merchant_id))

        response = client.post(
            "/api/v1/push/segments",
            json={"name": "US shoppers", "root_condition": US_TREE},
            headers=headers,
        )

        assertions.assert_http_success(response, 201)
        segment = response.json()["segment"]
        assertions.assert_has_fields(segment, ["segment_id", "root_condition", "subscriber_count_cache"])
        assert segment["subscriber_count_cache"] == 3
        assert segment["created_by"] == "usr_test"

        fetched = client.get(f"/api/v1/push/segments/{segment['segment_id']}", headers=headers)
        assert fetched.json()["segment"]["name"] == "US shoppers"

    def test_unknown_attribute(self, client, headers):
        tree = {"combinator": "or", "children": [{"attribute": "shoeSize", "operator": "equals", "value": "42"}]}

        response = client.post(
            "/api/v1/push/segments",
            json={"name": "Shoes", "root_condition": tree},
            headers=headers,
        )

        assert response.status_code == 422
        assert response.json()["field"] == "root_condition.children[0].attribute"

    def test_malformed_operator(self, client, headers):
        tree = {"attribute": "email", "operator": "sounds_like", "value": "x"}

        response = client.post("/api/v1/push/segments", json={"name": "Bad", "root_condition": tree}, headers=headers)

        assert response.status_code == 422

    def test_estimate(self, client, headers, mock_repository, factory, merchant_id):
        mock_repository.add_subscribers(factory.make_subscribers(2, merchant_id=merchant_id))

        response = client.post("/api/v1/push/segments/estimate", json={"root_condition": US_TREE}, headers=headers)

        assert response.json() == {"merchant_id": merchant_id, "estimated_count": 2}

    def test_list_by_type(self, client, headers):
        client.post("/api/v1/push/segments", json={"name": "Dynamic", "root_condition": US_TREE}, headers=headers)
        client.post("/api/v1/push/segments", json={"name": "Static", "segment_type": "static"}, headers=headers)

        response = client.get("/api/v1/push/segments", params={"type": "static"}, headers=headers)

        data = response.json()
        assert data["total"] == 1
        assert data["segments"][0]["name"] == "Static"

    def test_static_members_and_refresh(self, client, headers, mock_repository, factory, merchant_id):
        subscribers = factory.make_subscribers(2, merchant_id=merchant_id)
        mock_repository.add_subscribers(subscribers)
        segment = client.post(
            "/api/v1/push/segments", json={"name": "VIP", "segment_type": "static"}, headers=headers
        ).json()["segment"]

        response = client.put(
            f"/api/v1/push/segments/{segment['segment_id']}/members",
            json={"member_ids": [s.subscriber_id for s in subscribers]},
            headers=headers,
        )
        assert response.json()["segment"]["subscriber_count_cache"] == 2

        refreshed = client.post(f"/api/v1/push/segments/{segment['segment_id']}/refresh-count", headers=headers)
        assert refreshed.json()["segment"]["subscriber_count_cache"] == 2

    def test_update_and_delete(self, client, headers):
        segment = client.post(
            "/api/v1/push/segments", json={"name": "US", "root_condition": US_TREE}, headers=headers
        ).json()["segment"]
        path = f"/api/v1/push/segments/{segment['segment_id']}"

        updated = client.patch(path, json={"name": "United States"}, headers=headers)
        assert updated.json()["segment"]["name"] == "United States"

        assert client.delete(path, headers=headers).status_code == 204
        assert client.get(path, headers=headers).status_code == 404


class TestCampaignEndpoints:
    """Campaign CRUD and lifecycle routes"""

    def create_campaign(self, client, headers, segment_ids=None):
        response = client.post(
            "/api/v1/push/campaigns",
            json={
                "name": "Weekend sale",
                "payload": {"title": "Weekend sale", "message": "20% off everything"},
                "target_segment_ids": segment_ids or [],
            },
            headers=headers,
        )
        assert response.status_code == 201, response.text
        return response.json()["campaign"]

    def test_create_and_list(self, client, headers):
        campaign = self.create_campaign(client, headers)
        assert campaign["status"] == "draft"

        data = client.get("/api/v1/push/campaigns", params={"status": "draft,scheduled"}, headers=headers).json()
        assert data["total"] == 1
        assert data["has_more"] is False

    def test_unknown_status_filter(self, client, headers):
        response = client.get("/api/v1/push/campaigns", params={"status": "draft,bogus"}, headers=headers)

        assert response.status_code == 422
        assert response.json()["field"] == "status"

    def test_unknown_segment(self, client, headers):
        response = client.post(
            "/api/v1/push/campaigns",
            json={"name": "Sale", "target_segment_ids": ["seg_missing"]},
            headers=headers,
        )

        assert response.status_code == 422
        assert response.json()["field"] == "target_segment_ids"

    def test_schedule_in_past(self, client, headers):
        campaign = self.create_campaign(client, headers)
        past = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()

        response = client.post(
            f"/api/v1/push/campaigns/{campaign['campaign_id']}/schedule",
            json={"scheduled_at": past},
            headers=headers,
        )

        assert response.status_code == 422

    def test_lifecycle(self, client, headers, mock_event_bus, assertions):
        campaign = self.create_campaign(client, headers)
        base = f"/api/v1/push/campaigns/{campaign['campaign_id']}"
        future = (datetime.now(timezone.utc) + timedelta(hours=2)).isoformat()

        scheduled = client.post(f"{base}/schedule", json={"scheduled_at": future}, headers=headers)
        assert scheduled.json()["campaign"]["status"] == "scheduled"
        assertions.assert_event_published(
            mock_event_bus.published_events, "push_campaign.scheduled", campaign_id=campaign["campaign_id"]
        )

        assert client.post(f"{base}/pause", headers=headers).json()["campaign"]["status"] == "paused"
        assert client.post(f"{base}/resume", headers=headers).json()["campaign"]["status"] == "scheduled"
        assert client.post(f"{base}/unschedule", headers=headers).json()["campaign"]["status"] == "draft"

        cancelled = client.post(f"{base}/cancel", json={"reason": "Duplicate"}, headers=headers)
        assert cancelled.json()["campaign"]["cancelled_reason"] == "Duplicate"

        conflict = client.post(f"{base}/schedule", json={"scheduled_at": future}, headers=headers)
        assert conflict.status_code == 409
        assert conflict.json()["current_status"] == "cancelled"

    def test_cancel_without_body(self, client, headers):
        campaign = self.create_campaign(client, headers)

        response = client.post(f"/api/v1/push/campaigns/{campaign['campaign_id']}/cancel", headers=headers)

        assert response.status_code == 200
        assert response.json()["campaign"]["status"] == "cancelled"

    def test_update_and_delete(self, client, headers):
        campaign = self.create_campaign(client, headers)
        path = f"/api/v1/push/campaigns/{campaign['campaign_id']}"

        updated = client.patch(path, json={"campaign_type": "flash_sale"}, headers=headers)
        assert updated.json()["campaign"]["payload"]["urgency"] == "high"

        assert client.delete(path, headers=headers).status_code == 204
        assert client.get(path, headers=headers).status_code == 404


class TestDispatchEndpoints:
    """Validate, send, retry and stats"""

    @pytest.fixture
    def campaign_id(self, client, headers, mock_repository, factory, merchant_id):
        mock_repository.add_subscribers(factory.make_subscribers(3, merchant_id=merchant_id))
        segment = client.post(
            "/api/v1/push/segments", json={"name": "US", "root_condition": US_TREE}, headers=headers
        ).json()["segment"]
        campaign = client.post(
            "/api/v1/push/campaigns",
            json={
                "name": "Sale",
                "payload": {"title": "Sale", "message": "Now on"},
                "target_segment_ids": [segment["segment_id"]],
            },
            headers=headers,
        ).json()["campaign"]
        return campaign["campaign_id"]

    def test_validate(self, client, headers, campaign_id):
        response = client.post(f"/api/v1/push/campaigns/{campaign_id}/validate", headers=headers)

        data = response.json()
        assert data["valid"] is True
        assert data["estimated_subscribers"] == 3

    def test_send_then_send_again(self, client, headers, campaign_id, mock_transport):
        sent = client.post(f"/api/v1/push/campaigns/{campaign_id}/send", headers=headers)

        assert sent.status_code == 200
        assert sent.json()["status"] == "sent"
        assert sent.json()["sent_count"] == 3

        again = client.post(f"/api/v1/push/campaigns/{campaign_id}/send", headers=headers)
        assert again.status_code == 409
        assert again.json()["current_status"] == "sent"
        assert len(mock_transport.sent_ids) == 3

    def test_transport_down_reports_failed(self, client, headers, campaign_id, mock_transport):
        mock_transport.make_unreachable()

        response = client.post(f"/api/v1/push/campaigns/{campaign_id}/send", headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "failed"

    def test_storage_down_is_503(self, client, headers, campaign_id, mock_repository):
        mock_repository.fail("conditional_update_status", times=10)

        response = client.post(f"/api/v1/push/campaigns/{campaign_id}/send", headers=headers)

        assert response.status_code == 503
        assert response.json()["campaign_id"] == campaign_id

    def test_retry_and_stats(self, client, headers, campaign_id, mock_transport, mock_repository):
        first_id = sorted(mock_repository.subscribers)[0]
        mock_transport.failed[first_id] = "provider_error"
        client.post(f"/api/v1/push/campaigns/{campaign_id}/send", headers=headers)

        stats = client.get(f"/api/v1/push/campaigns/{campaign_id}/send-stats", headers=headers).json()
        assert stats["total_failed"] == 1

        mock_transport.failed.clear()
        retried = client.post(f"/api/v1/push/campaigns/{campaign_id}/retry", headers=headers).json()
        assert retried["audience_size"] == 1

        stats = client.get(f"/api/v1/push/campaigns/{campaign_id}/send-stats", headers=headers).json()
        assert stats["total_delivered"] == 3
        assert stats["total_failed"] == 0


class TestAnalyticsEndpoints:
    """Analytics ingestion and reports"""

    @pytest.fixture
    def campaign_id(self, mock_repository, factory, merchant_id):
        campaign = factory.make_campaign(merchant_id=merchant_id)
        mock_repository.campaigns[campaign.campaign_id] = campaign
        return campaign.campaign_id

    def test_ingest_event(self, client, headers, campaign_id):
        response = client.post(
            "/api/v1/push/analytics/events",
            json={"campaign_id": campaign_id, "event_type": "impression", "country": "us"},
            headers=headers,
        )

        assert response.status_code == 202
        assert response.json()["location_breakdown"] == {"US": 1}

    def test_revenue_on_impression(self, client, headers, campaign_id):
        response = client.post(
            "/api/v1/push/analytics/events",
            json={"campaign_id": campaign_id, "event_type": "impression", "revenue": "3.50"},
            headers=headers,
        )

        assert response.status_code == 422
        assert response.json()["field"] == "revenue"

    def test_daily_report_and_overview(self, client, headers, campaign_id):
        client.post(
            f"/api/v1/push/campaigns/{campaign_id}/analytics",
            json={"date": "2026-03-01", "impressions": 200, "clicks": 30},
            headers=headers,
        )

        report = client.get(
            f"/api/v1/push/campaigns/{campaign_id}/analytics",
            params={"start_date": "2026-03-01", "end_date": "2026-03-31"},
            headers=headers,
        ).json()
        assert report["summary"]["impressions"] == 200
        assert report["summary"]["ctr"] == "15.00"

        overview = client.get("/api/v1/push/campaigns/overview", headers=headers).json()
        assert overview["total_campaigns"] == 1
        assert overview["total_clicks"] == 30

    def test_inverted_range(self, client, headers, campaign_id):
        response = client.get(
            f"/api/v1/push/campaigns/{campaign_id}/analytics",
            params={"start_date": "2026-03-10", "end_date": "2026-03-01"},
            headers=headers,
        )

        assert response.status_code == 422


class TestRateLimiting:
    """Per-actor limits"""

    @pytest.fixture
    def limited_client(self, monkeypatch, mock_repository, mock_transport, resolver, segment_service,
                       campaign_service, aggregator, dispatch_engine, event_publisher):
        limits = RateLimitConfig(limits={"get": 2, "create": 1})
        services = build_factory(mock_repository, mock_transport, resolver, segment_service, campaign_service,
                                 aggregator, dispatch_engine, event_publisher, rate_limit=limits)
        monkeypatch.setattr(main, "factory", services)
        return TestClient(main.app)

    def test_limit_exceeded(self, limited_client, headers):
        for _ in range(2):
            assert limited_client.get("/api/v1/push/segments", headers=headers).status_code == 200

        response = limited_client.get("/api/v1/push/segments", headers=headers)

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) >= 1

    def test_actors_are_limited_separately(self, limited_client, merchant_id):
        first = {"X-Merchant-ID": merchant_id, "X-User-ID": "usr_a"}
        second = {"X-Merchant-ID": merchant_id, "X-User-ID": "usr_b"}

        assert limited_client.post("/api/v1/push/campaigns", json={"name": "A"}, headers=first).status_code == 201
        assert limited_client.post("/api/v1/push/campaigns", json={"name": "B"}, headers=first).status_code == 429
        assert limited_client.post("/api/v1/push/campaigns", json={"name": "C"}, headers=second).status_code == 201

    def test_actions_without_limit(self, limited_client, headers):
        for _ in range(5):
            assert limited_client.get("/health", headers=headers).status_code == 200
