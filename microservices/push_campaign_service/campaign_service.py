"""
Push Campaign Service Business Logic

Campaign management: creation, editing and the merchant-driven part of the
campaign lifecycle (schedule, unschedule, pause, resume, cancel, delete).
Sending is handled by the dispatch engine.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from .models import (
    Campaign,
    CampaignCreateRequest,
    CampaignStatus,
    CampaignType,
    CampaignUpdateRequest,
    PushPayload,
    PushUrgency,
)
from .protocols import (
    NotFoundError,
    PushCampaignRepositoryProtocol,
    StateConflictError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# Valid state transitions
VALID_TRANSITIONS: Dict[CampaignStatus, List[CampaignStatus]] = {
    CampaignStatus.DRAFT: [CampaignStatus.SCHEDULED, CampaignStatus.SENDING, CampaignStatus.CANCELLED],
    CampaignStatus.SCHEDULED: [
        CampaignStatus.DRAFT,
        CampaignStatus.SENDING,
        CampaignStatus.PAUSED,
        CampaignStatus.CANCELLED,
    ],
    CampaignStatus.SENDING: [CampaignStatus.SENT, CampaignStatus.FAILED],
    CampaignStatus.SENT: [CampaignStatus.SENDING],  # retry of failed deliveries
    CampaignStatus.PAUSED: [CampaignStatus.SCHEDULED, CampaignStatus.CANCELLED],
    CampaignStatus.FAILED: [CampaignStatus.SENDING],
    CampaignStatus.CANCELLED: [],  # Terminal state
}

EDITABLE_STATUSES = (CampaignStatus.DRAFT, CampaignStatus.SCHEDULED)


def can_transition(current: CampaignStatus, target: CampaignStatus) -> bool:
    """Validate state transition is allowed"""
    return target in VALID_TRANSITIONS.get(current, [])


def sources_of(target: CampaignStatus) -> List[CampaignStatus]:
    """Statuses from which target can be reached"""
    return [status for status, targets in VALID_TRANSITIONS.items() if target in targets]


class CampaignService:
    """Campaign management business logic layer"""

    MAX_SEGMENTS_PER_CAMPAIGN = 10

    VALID_TRANSITIONS = VALID_TRANSITIONS

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
    # Campaign CRUD
    # ====================

    async def create_campaign(
        self,
        request: CampaignCreateRequest,
        merchant_id: str,
        created_by: Optional[str] = None,
    ) -> Campaign:
        """
        Create a new campaign in draft status.

        Target segments must exist and belong to the merchant. Flash sale
        campaigns are delivered with high urgency.
        """
        name = request.name.strip()
        if not name:
            raise ValidationError("Campaign name is required", "name")
        segment_ids = await self._validate_segments(merchant_id, request.target_segment_ids)

        campaign = Campaign(
            merchant_id=merchant_id,
            name=name,
            campaign_type=request.campaign_type,
            status=CampaignStatus.DRAFT,
            payload=self._apply_type_defaults(request.campaign_type, request.payload),
            target_segment_ids=segment_ids,
            created_by=created_by,
        )
        campaign = await self.repository.save_campaign(campaign)
        logger.info(f"Campaign created: {campaign.campaign_id} for merchant {merchant_id}")
        return campaign

    async def get_campaign(self, campaign_id: str, merchant_id: Optional[str] = None) -> Campaign:
        """Get campaign by ID"""
        campaign = await self.repository.get_campaign(campaign_id, merchant_id)
        if not campaign or campaign.deleted_at is not None:
            raise NotFoundError(f"Campaign not found: {campaign_id}", "campaign")
        return campaign

    async def list_campaigns(
        self,
        merchant_id: str,
        statuses: Optional[List[CampaignStatus]] = None,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Campaign], int]:
        """List campaigns with filters"""
        return await self.repository.list_campaigns(
            merchant_id=merchant_id,
            statuses=statuses,
            search=search,
            limit=limit,
            offset=offset,
        )

    async def update_campaign(
        self,
        campaign_id: str,
        request: CampaignUpdateRequest,
        merchant_id: Optional[str] = None,
    ) -> Campaign:
        """
        Update campaign

        Only draft or scheduled campaigns can be edited. The write is
        conditional on the status read here, so a send that starts in
        between wins and the edit is rejected.
        """
        campaign = await self.get_campaign(campaign_id, merchant_id)
        if campaign.status not in EDITABLE_STATUSES:
            raise StateConflictError(
                f"Campaign in status {campaign.status.value} cannot be edited",
                campaign.status,
            )

        updates = {}
        if request.name is not None:
            name = request.name.strip()
            if not name:
                raise ValidationError("Campaign name is required", "name")
            updates["name"] = name
        if request.target_segment_ids is not None:
            updates["target_segment_ids"] = await self._validate_segments(
                campaign.merchant_id, request.target_segment_ids
            )
        campaign_type = request.campaign_type or campaign.campaign_type
        if request.campaign_type is not None:
            updates["campaign_type"] = request.campaign_type
        if request.payload is not None or request.campaign_type is not None:
            payload = request.payload or campaign.payload
            updates["payload"] = self._apply_type_defaults(campaign_type, payload)

        if not updates:
            return campaign

        updated = await self.repository.conditional_update_status(
            campaign_id, [campaign.status], campaign.status, updates
        )
        if updated is None:
            raise await self._conflict(campaign_id, "edited")

        logger.info(f"Campaign updated: {campaign_id}")
        return updated

    async def delete_campaign(self, campaign_id: str, merchant_id: Optional[str] = None) -> bool:
        """
        Delete campaign (soft delete)

        A campaign that is sending cannot be deleted.
        """
        campaign = await self.get_campaign(campaign_id, merchant_id)
        if campaign.status == CampaignStatus.SENDING:
            raise StateConflictError("Cannot delete a campaign while it is sending", campaign.status)

        deleted = await self.repository.delete_campaign(campaign_id)
        if not deleted:
            raise await self._conflict(campaign_id, "deleted")

        logger.info(f"Campaign deleted: {campaign_id}")
        return True

    # ====================
    # Campaign Lifecycle
    # ====================

    async def schedule_campaign(
        self,
        campaign_id: str,
        scheduled_at: datetime,
        merchant_id: Optional[str] = None,
    ) -> Campaign:
        """
        Schedule a draft campaign for a future send.

        An external scheduler later calls send on it.
        """
        if scheduled_at.tzinfo is None:
            scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)
        if scheduled_at <= self._clock():
            raise ValidationError("Scheduled time must be in the future", "scheduled_at")

        campaign = await self._transition(
            campaign_id,
            merchant_id,
            CampaignStatus.SCHEDULED,
            expected=[CampaignStatus.DRAFT],
            updates={"scheduled_at": scheduled_at},
        )

        if self.event_publisher:
            await self.event_publisher.publish_campaign_scheduled(campaign)

        logger.info(f"Campaign scheduled: {campaign_id} at {scheduled_at}")
        return campaign

    async def unschedule_campaign(self, campaign_id: str, merchant_id: Optional[str] = None) -> Campaign:
        """Return a scheduled campaign to draft"""
        campaign = await self._transition(
            campaign_id,
            merchant_id,
            CampaignStatus.DRAFT,
            expected=[CampaignStatus.SCHEDULED],
            updates={"scheduled_at": None},
        )
        logger.info(f"Campaign unscheduled: {campaign_id}")
        return campaign

    async def pause_campaign(self, campaign_id: str, merchant_id: Optional[str] = None) -> Campaign:
        """
        Pause a scheduled campaign

        A campaign that is already sending is never paused; in-flight
        sends run to completion.
        """
        campaign = await self._transition(campaign_id, merchant_id, CampaignStatus.PAUSED)
        logger.info(f"Campaign paused: {campaign_id}")
        return campaign

    async def resume_campaign(self, campaign_id: str, merchant_id: Optional[str] = None) -> Campaign:
        """Resume a paused campaign back to scheduled"""
        campaign = await self._transition(campaign_id, merchant_id, CampaignStatus.SCHEDULED,
                                          expected=[CampaignStatus.PAUSED])
        logger.info(f"Campaign resumed: {campaign_id}")
        return campaign

    async def cancel_campaign(
        self,
        campaign_id: str,
        reason: Optional[str] = None,
        merchant_id: Optional[str] = None,
    ) -> Campaign:
        """Cancel a draft, scheduled or paused campaign"""
        campaign = await self._transition(
            campaign_id,
            merchant_id,
            CampaignStatus.CANCELLED,
            updates={"cancelled_reason": reason},
        )

        if self.event_publisher:
            await self.event_publisher.publish_campaign_cancelled(campaign, reason)

        logger.info(f"Campaign cancelled: {campaign_id}")
        return campaign

    # ====================
    # Helpers
    # ====================

    async def _transition(
        self,
        campaign_id: str,
        merchant_id: Optional[str],
        target: CampaignStatus,
        expected: Optional[List[CampaignStatus]] = None,
        updates: Optional[Dict] = None,
    ) -> Campaign:
        """Atomic conditional status change; StateConflictError when the campaign is elsewhere"""
        campaign = await self.get_campaign(campaign_id, merchant_id)
        expected = expected or sources_of(target)
        if campaign.status not in expected:
            raise StateConflictError(
                f"Cannot move campaign from {campaign.status.value} to {target.value}",
                campaign.status,
            )

        updated = await self.repository.conditional_update_status(campaign_id, expected, target, updates)
        if updated is None:
            raise await self._conflict(campaign_id, f"moved to {target.value}")
        return updated

    async def _conflict(self, campaign_id: str, action: str) -> StateConflictError:
        current = await self.repository.get_campaign(campaign_id)
        if current is None:
            return StateConflictError(f"Campaign {campaign_id} was deleted concurrently")
        return StateConflictError(
            f"Campaign {campaign_id} in status {current.status.value} cannot be {action}",
            current.status,
        )

    async def _validate_segments(self, merchant_id: str, segment_ids: List[str]) -> List[str]:
        """Deduplicate target segment ids and check they belong to the merchant"""
        unique_ids = list(dict.fromkeys(sid for sid in segment_ids if sid))
        if len(unique_ids) > self.MAX_SEGMENTS_PER_CAMPAIGN:
            raise ValidationError(
                f"Maximum {self.MAX_SEGMENTS_PER_CAMPAIGN} segments per campaign",
                "target_segment_ids",
            )
        if not unique_ids:
            return []

        found = await self.repository.get_segments_by_ids(merchant_id, unique_ids)
        missing = set(unique_ids) - {segment.segment_id for segment in found}
        if missing:
            raise ValidationError(
                f"Unknown segments: {', '.join(sorted(missing))}",
                "target_segment_ids",
            )
        return unique_ids

    @staticmethod
    def _apply_type_defaults(campaign_type: CampaignType, payload: PushPayload) -> PushPayload:
        if campaign_type == CampaignType.FLASH_SALE and payload.urgency != PushUrgency.HIGH:
            return payload.model_copy(update={"urgency": PushUrgency.HIGH})
        return payload


__all__ = [
    "CampaignService",
    "VALID_TRANSITIONS",
    "EDITABLE_STATUSES",
    "can_transition",
    "sources_of",
]
