"""
Push Campaign Service Main Application

FastAPI application for merchant push segments, campaigns, dispatch and
campaign analytics.
Port: 8260
"""

import logging
import math
import time
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from core.config import get_settings

from .factory import PushCampaignServiceFactory
from .models import (
    CampaignAnalytics,
    CampaignAnalyticsReport,
    CampaignCreateRequest,
    CampaignListResponse,
    CampaignResponse,
    CampaignStatus,
    CampaignUpdateRequest,
    CampaignValidationResult,
    CancelRequest,
    CustomAttribute,
    CustomAttributeCreateRequest,
    DailyAnalyticsRequest,
    EngagementEvent,
    HealthResponse,
    LivenessResponse,
    MerchantOverview,
    ReadinessResponse,
    ScheduleRequest,
    SegmentCreateRequest,
    SegmentEstimateRequest,
    SegmentEstimateResponse,
    SegmentListResponse,
    SegmentMembersRequest,
    SegmentResponse,
    SegmentType,
    SegmentUpdateRequest,
    SendResult,
    SendStats,
)
from .protocols import (
    DispatchFailedError,
    NotFoundError,
    RateLimitExceededError,
    StateConflictError,
    TransientStorageError,
    ValidationError,
)

settings = get_settings()
settings.logging.configure()
logger = logging.getLogger(__name__)

# Service configuration
SERVICE_NAME = settings.service_name
SERVICE_PORT = settings.port
SERVICE_VERSION = "1.0.0"

# Track startup time for uptime calculation
startup_time = time.time()

# Global factory instance
factory: Optional[PushCampaignServiceFactory] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    global factory

    logger.info(f"Starting {SERVICE_NAME} on port {SERVICE_PORT}")

    factory = PushCampaignServiceFactory(settings)
    await factory.initialize()

    yield

    logger.info(f"Shutting down {SERVICE_NAME}")
    await factory.close()
    factory = None


# Create FastAPI application
app = FastAPI(
    title="Push Campaign Service",
    description="Merchant push notification segments, campaigns and delivery analytics",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)


# ====================
# Exception Handlers
# ====================


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc), "field": exc.field},
    )


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"detail": str(exc)},
    )


@app.exception_handler(StateConflictError)
async def state_conflict_handler(request: Request, exc: StateConflictError):
    content = {"detail": str(exc)}
    if exc.current_status is not None:
        content["current_status"] = exc.current_status.value
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=content)


@app.exception_handler(DispatchFailedError)
async def dispatch_failed_handler(request: Request, exc: DispatchFailedError):
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": str(exc), "campaign_id": exc.campaign_id},
    )


@app.exception_handler(TransientStorageError)
async def storage_error_handler(request: Request, exc: TransientStorageError):
    logger.error(f"Storage unavailable: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Storage temporarily unavailable"},
    )


@app.exception_handler(RateLimitExceededError)
async def rate_limit_handler(request: Request, exc: RateLimitExceededError):
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"detail": str(exc)},
        headers={"Retry-After": str(max(1, math.ceil(exc.retry_after)))},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled exception on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error", "type": type(exc).__name__},
    )


# ====================
# Dependencies
# ====================


def get_service_factory() -> PushCampaignServiceFactory:
    """Get the initialized factory"""
    if not factory:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return factory


def get_auth_context(request: Request) -> dict:
    """Extract auth context from request headers; every call is scoped to a merchant"""
    merchant_id = request.headers.get("X-Merchant-ID")
    if not merchant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Merchant-ID header is required",
        )
    return {
        "merchant_id": merchant_id,
        "user_id": request.headers.get("X-User-ID"),
    }


def rate_limited(action: str):
    """Dependency that counts the call against the actor's limit for action"""

    def check(
        auth: dict = Depends(get_auth_context),
        services: PushCampaignServiceFactory = Depends(get_service_factory),
    ) -> dict:
        actor = auth["user_id"] or auth["merchant_id"]
        services.rate_limiter.check(actor, action)
        return auth

    return check


# ====================
# Health Endpoints
# ====================


@app.get("/api/v1/push/health")
@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Health check endpoint"""
    dependencies = {}

    if factory:
        try:
            db_healthy = await factory.repository.health_check()
            dependencies["postgres"] = "healthy" if db_healthy else "unhealthy"
        except Exception:
            dependencies["postgres"] = "unhealthy"

        if factory.nats_client:
            dependencies["nats"] = "healthy" if factory.nats_client.is_connected else "unhealthy"
        else:
            dependencies["nats"] = "not_configured"

    return HealthResponse(
        status="healthy",
        service=SERVICE_NAME,
        port=SERVICE_PORT,
        version=SERVICE_VERSION,
        dependencies=dependencies,
    )


@app.get("/health/ready", response_model=ReadinessResponse, tags=["Health"])
async def readiness_check():
    """Readiness check endpoint"""
    checks = {}
    details = {}

    if factory:
        try:
            db_healthy = await factory.repository.health_check()
            checks["database"] = db_healthy
            details["database"] = "Connected" if db_healthy else "Connection failed"
        except Exception as e:
            checks["database"] = False
            details["database"] = str(e)

        if factory.nats_client:
            checks["nats"] = factory.nats_client.is_connected
            details["nats"] = "Connected" if factory.nats_client.is_connected else "Disconnected"
        else:
            checks["nats"] = True  # Optional
            details["nats"] = "Not configured (optional)"
    else:
        checks["factory"] = False
        details["factory"] = "Factory not initialized"

    ready = all(checks.get(k, False) for k in ["database"])

    return ReadinessResponse(ready=ready, checks=checks, details=details)


@app.get("/health/live", response_model=LivenessResponse, tags=["Health"])
async def liveness_check():
    """Liveness check endpoint"""
    return LivenessResponse(alive=True, uptime_seconds=time.time() - startup_time)


# ====================
# Custom Attribute Endpoints
# ====================


@app.post(
    "/api/v1/push/attributes",
    response_model=CustomAttribute,
    status_code=status.HTTP_201_CREATED,
    tags=["Attributes"],
)
async def define_attribute(
    request: CustomAttributeCreateRequest,
    services: PushCampaignServiceFactory = Depends(get_service_factory),
    auth: dict = Depends(rate_limited("create")),
):
    """Define a merchant custom attribute usable in segment conditions"""
    return await services.segment_service.define_attribute(request, auth["merchant_id"])


@app.get("/api/v1/push/attributes", tags=["Attributes"])
async def list_attributes(
    services: PushCampaignServiceFactory = Depends(get_service_factory),
    auth: dict = Depends(rate_limited("get")),
):
    """List the merchant's custom attributes"""
    attributes = await services.segment_service.list_attributes(auth["merchant_id"])
    return {"attributes": [a.model_dump(mode="json") for a in attributes], "total": len(attributes)}


@app.delete(
    "/api/v1/push/attributes/{name}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Attributes"],
)
async def delete_attribute(
    name: str,
    services: PushCampaignServiceFactory = Depends(get_service_factory),
    auth: dict = Depends(rate_limited("delete")),
):
    """Delete a custom attribute; segments referencing it stop compiling"""
    await services.segment_service.delete_attribute(auth["merchant_id"], name)


# ====================
# Segment Endpoints
# ====================


@app.post(
    "/api/v1/push/segments",
    response_model=SegmentResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Segments"],
)
async def create_segment(
    request: SegmentCreateRequest,
    services: PushCampaignServiceFactory = Depends(get_service_factory),
    auth: dict = Depends(rate_limited("create")),
):
    """
    Create a segment

    Dynamic and behavior segments are compiled before they are stored;
    unknown attributes or incompatible operators are rejected.
    """
    segment = await services.segment_service.create_segment(
        request,
        merchant_id=auth["merchant_id"],
        created_by=auth["user_id"],
    )
    return SegmentResponse(segment=segment, message="Segment created successfully")


@app.get("/api/v1/push/segments", response_model=SegmentListResponse, tags=["Segments"])
async def list_segments(
    type_filter: Optional[SegmentType] = Query(None, alias="type", description="Filter by segment type"),
    search: Optional[str] = Query(None, description="Search by name"),
    limit: int = Query(50, ge=1, le=100, description="Page size"),
    offset: int = Query(0, ge=0, description="Page offset"),
    services: PushCampaignServiceFactory = Depends(get_service_factory),
    auth: dict = Depends(rate_limited("get")),
):
    """List segments with filters"""
    segments, total = await services.segment_service.list_segments(
        merchant_id=auth["merchant_id"],
        segment_type=type_filter,
        search=search,
        limit=limit,
        offset=offset,
    )
    return SegmentListResponse(segments=segments, total=total, limit=limit, offset=offset)


@app.post(
    "/api/v1/push/segments/estimate",
    response_model=SegmentEstimateResponse,
    tags=["Segments"],
)
async def estimate_segment(
    request: SegmentEstimateRequest,
    services: PushCampaignServiceFactory = Depends(get_service_factory),
    auth: dict = Depends(rate_limited("estimate")),
):
    """Live subscriber count for an unsaved condition tree"""
    count = await services.segment_service.estimate_segment(request.root_condition, auth["merchant_id"])
    return SegmentEstimateResponse(merchant_id=auth["merchant_id"], estimated_count=count)


@app.get("/api/v1/push/segments/{segment_id}", response_model=SegmentResponse, tags=["Segments"])
async def get_segment(
    segment_id: str,
    services: PushCampaignServiceFactory = Depends(get_service_factory),
    auth: dict = Depends(rate_limited("get")),
):
    """Get segment by ID"""
    segment = await services.segment_service.get_segment(segment_id, auth["merchant_id"])
    return SegmentResponse(segment=segment)


@app.patch("/api/v1/push/segments/{segment_id}", response_model=SegmentResponse, tags=["Segments"])
async def update_segment(
    segment_id: str,
    request: SegmentUpdateRequest,
    services: PushCampaignServiceFactory = Depends(get_service_factory),
    auth: dict = Depends(rate_limited("update")),
):
    """Update segment"""
    segment = await services.segment_service.update_segment(segment_id, request, auth["merchant_id"])
    return SegmentResponse(segment=segment, message="Segment updated successfully")


@app.delete(
    "/api/v1/push/segments/{segment_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Segments"],
)
async def delete_segment(
    segment_id: str,
    services: PushCampaignServiceFactory = Depends(get_service_factory),
    auth: dict = Depends(rate_limited("delete")),
):
    """Delete segment (soft delete)"""
    await services.segment_service.delete_segment(segment_id, auth["merchant_id"])


@app.put("/api/v1/push/segments/{segment_id}/members", response_model=SegmentResponse, tags=["Segments"])
async def set_segment_members(
    segment_id: str,
    request: SegmentMembersRequest,
    services: PushCampaignServiceFactory = Depends(get_service_factory),
    auth: dict = Depends(rate_limited("update")),
):
    """Replace the member list of a static segment"""
    segment = await services.segment_service.set_static_members(
        segment_id, request.member_ids, auth["merchant_id"]
    )
    return SegmentResponse(segment=segment, message="Segment members updated")


@app.post(
    "/api/v1/push/segments/{segment_id}/refresh-count",
    response_model=SegmentResponse,
    tags=["Segments"],
)
async def refresh_segment_count(
    segment_id: str,
    services: PushCampaignServiceFactory = Depends(get_service_factory),
    auth: dict = Depends(rate_limited("estimate")),
):
    """Recount eligible members of a segment"""
    segment = await services.segment_service.refresh_segment_count(segment_id, auth["merchant_id"])
    return SegmentResponse(segment=segment)


# ====================
# Campaign CRUD Endpoints
# ====================


@app.post(
    "/api/v1/push/campaigns",
    response_model=CampaignResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Campaigns"],
)
async def create_campaign(
    request: CampaignCreateRequest,
    services: PushCampaignServiceFactory = Depends(get_service_factory),
    auth: dict = Depends(rate_limited("create")),
):
    """Create a new campaign in draft status"""
    campaign = await services.campaign_service.create_campaign(
        request,
        merchant_id=auth["merchant_id"],
        created_by=auth["user_id"],
    )
    return CampaignResponse(campaign=campaign, message="Campaign created successfully")


@app.get("/api/v1/push/campaigns", response_model=CampaignListResponse, tags=["Campaigns"])
async def list_campaigns(
    status_filter: Optional[str] = Query(None, alias="status", description="Filter by status (comma-separated)"),
    search: Optional[str] = Query(None, description="Search by name"),
    limit: int = Query(20, ge=1, le=100, description="Page size"),
    offset: int = Query(0, ge=0, description="Page offset"),
    services: PushCampaignServiceFactory = Depends(get_service_factory),
    auth: dict = Depends(rate_limited("get")),
):
    """List campaigns with filters"""
    statuses = None
    if status_filter:
        try:
            statuses = [CampaignStatus(s.strip()) for s in status_filter.split(",") if s.strip()]
        except ValueError:
            raise ValidationError(f"Unknown campaign status in '{status_filter}'", "status")

    campaigns, total = await services.campaign_service.list_campaigns(
        merchant_id=auth["merchant_id"],
        statuses=statuses,
        search=search,
        limit=limit,
        offset=offset,
    )

    return CampaignListResponse(
        campaigns=campaigns,
        total=total,
        limit=limit,
        offset=offset,
        has_more=(offset + len(campaigns)) < total,
    )


@app.get("/api/v1/push/campaigns/overview", response_model=MerchantOverview, tags=["Analytics"])
async def get_merchant_overview(
    services: PushCampaignServiceFactory = Depends(get_service_factory),
    auth: dict = Depends(rate_limited("get")),
):
    """Dashboard totals across the merchant's campaigns"""
    return await services.aggregator.get_merchant_overview(auth["merchant_id"])


@app.get("/api/v1/push/campaigns/{campaign_id}", response_model=CampaignResponse, tags=["Campaigns"])
async def get_campaign(
    campaign_id: str,
    services: PushCampaignServiceFactory = Depends(get_service_factory),
    auth: dict = Depends(rate_limited("get")),
):
    """Get campaign by ID"""
    campaign = await services.campaign_service.get_campaign(campaign_id, auth["merchant_id"])
    return CampaignResponse(campaign=campaign)


@app.patch("/api/v1/push/campaigns/{campaign_id}", response_model=CampaignResponse, tags=["Campaigns"])
async def update_campaign(
    campaign_id: str,
    request: CampaignUpdateRequest,
    services: PushCampaignServiceFactory = Depends(get_service_factory),
    auth: dict = Depends(rate_limited("update")),
):
    """
    Update campaign

    Only draft or scheduled campaigns can be updated.
    """
    campaign = await services.campaign_service.update_campaign(campaign_id, request, auth["merchant_id"])
    return CampaignResponse(campaign=campaign, message="Campaign updated successfully")


@app.delete(
    "/api/v1/push/campaigns/{campaign_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Campaigns"],
)
async def delete_campaign(
    campaign_id: str,
    services: PushCampaignServiceFactory = Depends(get_service_factory),
    auth: dict = Depends(rate_limited("delete")),
):
    """
    Delete campaign (soft delete)

    Cannot delete a campaign while it is sending.
    """
    await services.campaign_service.delete_campaign(campaign_id, auth["merchant_id"])


# ====================
# Campaign Lifecycle Endpoints
# ====================


@app.post(
    "/api/v1/push/campaigns/{campaign_id}/schedule",
    response_model=CampaignResponse,
    tags=["Campaign Lifecycle"],
)
async def schedule_campaign(
    campaign_id: str,
    request: ScheduleRequest,
    services: PushCampaignServiceFactory = Depends(get_service_factory),
    auth: dict = Depends(rate_limited("update")),
):
    """Schedule a draft campaign for a future send"""
    campaign = await services.campaign_service.schedule_campaign(
        campaign_id, request.scheduled_at, auth["merchant_id"]
    )
    return CampaignResponse(campaign=campaign, message="Campaign scheduled successfully")


@app.post(
    "/api/v1/push/campaigns/{campaign_id}/unschedule",
    response_model=CampaignResponse,
    tags=["Campaign Lifecycle"],
)
async def unschedule_campaign(
    campaign_id: str,
    services: PushCampaignServiceFactory = Depends(get_service_factory),
    auth: dict = Depends(rate_limited("update")),
):
    """Return a scheduled campaign to draft"""
    campaign = await services.campaign_service.unschedule_campaign(campaign_id, auth["merchant_id"])
    return CampaignResponse(campaign=campaign, message="Campaign unscheduled")


@app.post(
    "/api/v1/push/campaigns/{campaign_id}/pause",
    response_model=CampaignResponse,
    tags=["Campaign Lifecycle"],
)
async def pause_campaign(
    campaign_id: str,
    services: PushCampaignServiceFactory = Depends(get_service_factory),
    auth: dict = Depends(rate_limited("update")),
):
    """Pause a scheduled campaign"""
    campaign = await services.campaign_service.pause_campaign(campaign_id, auth["merchant_id"])
    return CampaignResponse(campaign=campaign, message="Campaign paused")


@app.post(
    "/api/v1/push/campaigns/{campaign_id}/resume",
    response_model=CampaignResponse,
    tags=["Campaign Lifecycle"],
)
async def resume_campaign(
    campaign_id: str,
    services: PushCampaignServiceFactory = Depends(get_service_factory),
    auth: dict = Depends(rate_limited("update")),
):
    """Resume a paused campaign"""
    campaign = await services.campaign_service.resume_campaign(campaign_id, auth["merchant_id"])
    return CampaignResponse(campaign=campaign, message="Campaign resumed")


@app.post(
    "/api/v1/push/campaigns/{campaign_id}/cancel",
    response_model=CampaignResponse,
    tags=["Campaign Lifecycle"],
)
async def cancel_campaign(
    campaign_id: str,
    request: Optional[CancelRequest] = None,
    services: PushCampaignServiceFactory = Depends(get_service_factory),
    auth: dict = Depends(rate_limited("update")),
):
    """Cancel a draft, scheduled or paused campaign"""
    campaign = await services.campaign_service.cancel_campaign(
        campaign_id,
        reason=request.reason if request else None,
        merchant_id=auth["merchant_id"],
    )
    return CampaignResponse(campaign=campaign, message="Campaign cancelled")


# ====================
# Dispatch Endpoints
# ====================


@app.post(
    "/api/v1/push/campaigns/{campaign_id}/validate",
    response_model=CampaignValidationResult,
    tags=["Dispatch"],
)
async def validate_campaign(
    campaign_id: str,
    services: PushCampaignServiceFactory = Depends(get_service_factory),
    auth: dict = Depends(rate_limited("estimate")),
):
    """Readiness report: errors block sending, warnings do not"""
    return await services.dispatch_engine.validate_campaign(campaign_id, auth["merchant_id"])


@app.post(
    "/api/v1/push/campaigns/{campaign_id}/send",
    response_model=SendResult,
    tags=["Dispatch"],
)
async def send_campaign(
    campaign_id: str,
    services: PushCampaignServiceFactory = Depends(get_service_factory),
    auth: dict = Depends(rate_limited("send")),
):
    """
    Send a campaign now

    Runs the whole dispatch and returns its summary. Sending a campaign
    that is already sending or sent is rejected with 409.
    """
    return await services.dispatch_engine.send_campaign(campaign_id, auth["merchant_id"])


@app.post(
    "/api/v1/push/campaigns/{campaign_id}/retry",
    response_model=SendResult,
    tags=["Dispatch"],
)
async def retry_campaign(
    campaign_id: str,
    services: PushCampaignServiceFactory = Depends(get_service_factory),
    auth: dict = Depends(rate_limited("send")),
):
    """Re-send a sent campaign to recipients without a delivered outcome"""
    return await services.dispatch_engine.retry_failed_deliveries(campaign_id, auth["merchant_id"])


@app.get(
    "/api/v1/push/campaigns/{campaign_id}/send-stats",
    response_model=SendStats,
    tags=["Dispatch"],
)
async def get_send_stats(
    campaign_id: str,
    services: PushCampaignServiceFactory = Depends(get_service_factory),
    auth: dict = Depends(rate_limited("get")),
):
    """Delivery statistics of a campaign"""
    return await services.dispatch_engine.get_campaign_send_stats(campaign_id, auth["merchant_id"])


# ====================
# Analytics Endpoints
# ====================


@app.get(
    "/api/v1/push/campaigns/{campaign_id}/analytics",
    response_model=CampaignAnalyticsReport,
    tags=["Analytics"],
)
async def get_campaign_analytics(
    campaign_id: str,
    start_date: Optional[date] = Query(None, description="First day (inclusive)"),
    end_date: Optional[date] = Query(None, description="Last day (inclusive)"),
    services: PushCampaignServiceFactory = Depends(get_service_factory),
    auth: dict = Depends(rate_limited("get")),
):
    """Campaign summary metrics and daily time series"""
    return await services.aggregator.get_campaign_analytics(
        campaign_id,
        merchant_id=auth["merchant_id"],
        start_date=start_date,
        end_date=end_date,
    )


@app.post(
    "/api/v1/push/campaigns/{campaign_id}/analytics",
    response_model=CampaignAnalytics,
    tags=["Analytics"],
)
async def record_daily_analytics(
    campaign_id: str,
    request: DailyAnalyticsRequest,
    services: PushCampaignServiceFactory = Depends(get_service_factory),
    auth: dict = Depends(rate_limited("update")),
):
    """Add one day's counters to a campaign"""
    return await services.aggregator.record_daily_analytics(campaign_id, request, auth["merchant_id"])


@app.post(
    "/api/v1/push/analytics/events",
    response_model=CampaignAnalytics,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Analytics"],
)
async def ingest_engagement_event(
    event: EngagementEvent,
    services: PushCampaignServiceFactory = Depends(get_service_factory),
    auth: dict = Depends(get_auth_context),
):
    """Record an impression, click or conversion reported by a client"""
    return await services.aggregator.ingest_event(event, auth["merchant_id"])


def main():
    """Run the service"""
    import uvicorn

    uvicorn.run(
        "microservices.push_campaign_service.main:app",
        host=settings.host,
        port=SERVICE_PORT,
        log_level=settings.logging.log_level.lower(),
    )


if __name__ == "__main__":
    main()
