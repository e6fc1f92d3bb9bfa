"""
Segment Resolver

Turns segments and raw condition trees into compiled filters and evaluates
them through the repository: counts for estimates, exact membership for
dispatch. Dynamic and behavior segments are compiled from their conditions
on every call; static segments resolve to their materialized member list.
"""

import logging
from typing import List, Optional, Set

from .attribute_registry import AttributeRegistry
from .models import ConditionNode, Recipient, Segment, SegmentType
from .protocols import PushCampaignRepositoryProtocol, ValidationError
from .query_compiler import (
    FilterExpression,
    MatchNone,
    MemberOf,
    Node,
    QueryCompiler,
    any_of,
)

logger = logging.getLogger(__name__)


class SegmentResolver:
    """Compiles and evaluates segment membership"""

    def __init__(
        self,
        repository: PushCampaignRepositoryProtocol,
        compiler: Optional[QueryCompiler] = None,
        estimate_timeout: Optional[float] = None,
    ):
        self.repository = repository
        self.compiler = compiler or QueryCompiler()
        self.estimate_timeout = estimate_timeout

    async def load_registry(self, merchant_id: str) -> AttributeRegistry:
        """Attribute registry with the merchant's live custom attributes"""
        custom_attributes = await self.repository.list_custom_attributes(merchant_id)
        return AttributeRegistry(merchant_id, custom_attributes)

    async def compile_condition(
        self,
        root: Optional[ConditionNode],
        merchant_id: str,
        registry: Optional[AttributeRegistry] = None,
    ) -> FilterExpression:
        """Check limits and compile a raw condition tree for a merchant"""
        self.compiler.check_limits(root)
        registry = registry or await self.load_registry(merchant_id)
        return self.compiler.compile(root, merchant_id, registry)

    # ====================
    # Raw condition trees
    # ====================

    async def estimate_count(self, root: Optional[ConditionNode], merchant_id: str) -> int:
        """Live count for a condition tree (UI estimates)"""
        expression = await self.compile_condition(root, merchant_id)
        return await self.repository.count_subscribers(expression, timeout=self.estimate_timeout)

    async def resolve_members(self, root: Optional[ConditionNode], merchant_id: str) -> Set[str]:
        """Exact membership for a condition tree (dispatch only)"""
        expression = await self.compile_condition(root, merchant_id)
        return set(await self.repository.find_subscriber_ids(expression))

    # ====================
    # Segments
    # ====================

    def segment_node(self, segment: Segment, registry: AttributeRegistry) -> Node:
        """Filter node for one segment; inactive or deleted segments match nothing"""
        if segment.deleted_at is not None or not segment.is_active:
            return MatchNone()
        if segment.merchant_id != registry.merchant_id:
            raise ValidationError(f"Segment {segment.segment_id} belongs to another merchant", "target_segment_ids")
        if segment.segment_type == SegmentType.STATIC:
            return MemberOf(frozenset(segment.member_ids)) if segment.member_ids else MatchNone()
        self.compiler.check_limits(segment.root_condition, f"segments[{segment.segment_id}].root_condition")
        return self.compiler.lower(segment.root_condition, registry, f"segments[{segment.segment_id}].root_condition")

    async def segment_expression(self, segment: Segment) -> FilterExpression:
        registry = await self.load_registry(segment.merchant_id)
        return FilterExpression(merchant_id=segment.merchant_id, condition=self.segment_node(segment, registry))

    async def estimate_segment(self, segment: Segment) -> int:
        """Live eligible member count of a saved segment"""
        expression = await self.segment_expression(segment)
        return await self.repository.count_subscribers(expression, timeout=self.estimate_timeout)

    async def resolve_segment(self, segment: Segment) -> Set[str]:
        """Exact eligible membership of a saved segment"""
        expression = await self.segment_expression(segment)
        return set(await self.repository.find_subscriber_ids(expression))

    # ====================
    # Campaign audiences (union of segments)
    # ====================

    async def load_target_segments(self, merchant_id: str, segment_ids: List[str]) -> List[Segment]:
        """Live, active target segments of a campaign"""
        if not segment_ids:
            return []
        segments = await self.repository.get_segments_by_ids(merchant_id, list(dict.fromkeys(segment_ids)))
        return [s for s in segments if s.is_active and s.deleted_at is None]

    async def audience_expression(self, merchant_id: str, segments: List[Segment]) -> FilterExpression:
        """Union of the segments' filters, scoped to the merchant's eligible subscribers"""
        registry = await self.load_registry(merchant_id)
        condition = any_of(self.segment_node(segment, registry) for segment in segments)
        return FilterExpression(merchant_id=merchant_id, condition=condition)

    async def estimate_audience(self, merchant_id: str, segments: List[Segment]) -> int:
        """Size of the deduplicated union audience"""
        if not segments:
            return 0
        expression = await self.audience_expression(merchant_id, segments)
        return await self.repository.count_subscribers(expression, timeout=self.estimate_timeout)

    async def resolve_audience(self, merchant_id: str, segments: List[Segment]) -> List[Recipient]:
        """Deduplicated union audience with channel targets, ordered by subscriber id"""
        if not segments:
            return []
        expression = await self.audience_expression(merchant_id, segments)
        recipients = await self.repository.find_recipients(expression)

        unique = {}
        for recipient in recipients:
            unique.setdefault(recipient.subscriber_id, recipient)
        audience = [unique[key] for key in sorted(unique)]
        logger.debug(f"Resolved {len(audience)} recipients across {len(segments)} segments for {merchant_id}")
        return audience


__all__ = ["SegmentResolver"]
