"""
Segment Service Business Logic

Custom attribute definitions and segment management. Condition trees are
compiled at create/update time with the same compiler the dispatch engine
uses, so a segment that saves is a segment that sends.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from .attribute_registry import is_builtin_name
from .models import (
    CustomAttribute,
    CustomAttributeCreateRequest,
    Segment,
    SegmentCreateRequest,
    SegmentType,
    SegmentUpdateRequest,
)
from .protocols import (
    NotFoundError,
    PushCampaignRepositoryProtocol,
    StateConflictError,
    ValidationError,
)
from .segment_resolver import SegmentResolver

logger = logging.getLogger(__name__)


class SegmentService:
    """Segment and custom attribute business logic layer"""

    MAX_STATIC_MEMBERS = 100000

    def __init__(
        self,
        repository: PushCampaignRepositoryProtocol,
        resolver: SegmentResolver,
    ):
        self.repository = repository
        self.resolver = resolver

    # ====================
    # Custom Attributes
    # ====================

    async def define_attribute(
        self,
        request: CustomAttributeCreateRequest,
        merchant_id: str,
    ) -> CustomAttribute:
        """Define a merchant custom attribute"""
        if is_builtin_name(request.name):
            raise ValidationError(f"'{request.name}' is a built-in attribute", "name")

        existing = await self.repository.get_custom_attribute(merchant_id, request.name)
        if existing:
            raise StateConflictError(f"Attribute already exists: {request.name}")

        options = [option.strip() for option in request.options if option and option.strip()]
        attribute = CustomAttribute(
            merchant_id=merchant_id,
            name=request.name,
            display_name=request.display_name,
            attribute_type=request.attribute_type,
            options=list(dict.fromkeys(options)),
        )
        attribute = await self.repository.save_custom_attribute(attribute)
        logger.info(f"Custom attribute defined: {merchant_id}/{attribute.name}")
        return attribute

    async def list_attributes(self, merchant_id: str) -> List[CustomAttribute]:
        return await self.repository.list_custom_attributes(merchant_id)

    async def delete_attribute(self, merchant_id: str, name: str) -> bool:
        """Soft delete a custom attribute; segments using it stop compiling"""
        deleted = await self.repository.delete_custom_attribute(merchant_id, name)
        if not deleted:
            raise NotFoundError(f"Attribute not found: {name}", "attribute")
        logger.info(f"Custom attribute deleted: {merchant_id}/{name}")
        return True

    # ====================
    # Segment CRUD
    # ====================

    async def create_segment(
        self,
        request: SegmentCreateRequest,
        merchant_id: str,
        created_by: Optional[str] = None,
    ) -> Segment:
        """
        Create a segment.

        Dynamic and behavior segments need a condition tree that compiles
        for the merchant; static segments keep only member ids that belong
        to the merchant.
        """
        name = request.name.strip()
        if not name:
            raise ValidationError("Segment name is required", "name")

        segment = Segment(
            merchant_id=merchant_id,
            name=name,
            description=request.description,
            segment_type=request.segment_type,
            created_by=created_by,
        )

        if segment.is_rule_based:
            if request.member_ids:
                raise ValidationError("member_ids is only valid for static segments", "member_ids")
            await self.resolver.compile_condition(request.root_condition, merchant_id)
            segment.root_condition = request.root_condition
        else:
            if request.root_condition is not None:
                raise ValidationError("Static segments do not take conditions", "root_condition")
            segment.member_ids = await self._owned_members(merchant_id, request.member_ids)

        segment.subscriber_count_cache = await self.resolver.estimate_segment(segment)
        segment.count_refreshed_at = datetime.now(timezone.utc)

        segment = await self.repository.save_segment(segment)
        logger.info(f"Segment created: {segment.segment_id} ({segment.segment_type.value}) for {merchant_id}")
        return segment

    async def get_segment(self, segment_id: str, merchant_id: str) -> Segment:
        """Get segment by ID"""
        segment = await self.repository.get_segment(merchant_id, segment_id)
        if not segment or segment.deleted_at is not None:
            raise NotFoundError(f"Segment not found: {segment_id}", "segment")
        return segment

    async def list_segments(
        self,
        merchant_id: str,
        segment_type: Optional[SegmentType] = None,
        search: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Segment], int]:
        """List segments with filters"""
        return await self.repository.list_segments(
            merchant_id=merchant_id,
            segment_type=segment_type,
            search=search,
            limit=limit,
            offset=offset,
        )

    async def update_segment(
        self,
        segment_id: str,
        request: SegmentUpdateRequest,
        merchant_id: str,
    ) -> Segment:
        """Update a segment; a new condition tree is compiled before it is stored"""
        segment = await self.get_segment(segment_id, merchant_id)
        provided = request.model_fields_set

        updates = {}
        if "name" in provided and request.name is not None:
            name = request.name.strip()
            if not name:
                raise ValidationError("Segment name is required", "name")
            updates["name"] = name
        if "description" in provided:
            updates["description"] = request.description
        if "is_active" in provided and request.is_active is not None:
            updates["is_active"] = request.is_active
        if "root_condition" in provided:
            if not segment.is_rule_based:
                raise ValidationError("Static segments do not take conditions", "root_condition")
            await self.resolver.compile_condition(request.root_condition, merchant_id)
            updates["root_condition"] = request.root_condition

        if not updates:
            return segment

        updated = await self.repository.update_segment(segment_id, updates)
        if updated is None:
            raise NotFoundError(f"Segment not found: {segment_id}", "segment")

        logger.info(f"Segment updated: {segment_id}")
        return updated

    async def delete_segment(self, segment_id: str, merchant_id: str) -> bool:
        """Delete segment (soft delete)"""
        deleted = await self.repository.delete_segment(merchant_id, segment_id)
        if not deleted:
            raise NotFoundError(f"Segment not found: {segment_id}", "segment")
        logger.info(f"Segment deleted: {segment_id}")
        return True

    async def set_static_members(
        self,
        segment_id: str,
        member_ids: List[str],
        merchant_id: str,
    ) -> Segment:
        """Replace the member list of a static segment; foreign ids are dropped"""
        segment = await self.get_segment(segment_id, merchant_id)
        if segment.segment_type != SegmentType.STATIC:
            raise ValidationError("Only static segments have an explicit member list", "member_ids")

        members = await self._owned_members(merchant_id, member_ids)
        updated = await self.repository.update_segment(segment_id, {"member_ids": members})
        if updated is None:
            raise NotFoundError(f"Segment not found: {segment_id}", "segment")

        await self._store_count(updated)
        logger.info(f"Static segment {segment_id} now has {len(members)} members")
        return updated

    # ====================
    # Counts and estimates
    # ====================

    async def refresh_segment_count(self, segment_id: str, merchant_id: str) -> Segment:
        """Recount eligible members and store the informational cache"""
        segment = await self.get_segment(segment_id, merchant_id)
        return await self._store_count(segment)

    async def estimate_segment(self, root_condition, merchant_id: str) -> int:
        """Live eligible count for an unsaved condition tree"""
        return await self.resolver.estimate_count(root_condition, merchant_id)

    async def _store_count(self, segment: Segment) -> Segment:
        count = await self.resolver.estimate_segment(segment)
        await self.repository.update_segment_count(segment.segment_id, count)
        return segment.model_copy(update={
            "subscriber_count_cache": count,
            "count_refreshed_at": datetime.now(timezone.utc),
        })

    async def _owned_members(self, merchant_id: str, member_ids: List[str]) -> List[str]:
        unique_ids = list(dict.fromkeys(sid.strip() for sid in member_ids if sid and sid.strip()))
        if len(unique_ids) > self.MAX_STATIC_MEMBERS:
            raise ValidationError(
                f"Static segments hold at most {self.MAX_STATIC_MEMBERS} members",
                "member_ids",
            )
        owned = await self.repository.filter_subscriber_ids(merchant_id, unique_ids)
        dropped = len(unique_ids) - len(owned)
        if dropped:
            logger.warning(f"Dropped {dropped} member ids that do not belong to {merchant_id}")
        return owned


__all__ = ["SegmentService"]
