"""
Component Tests for SegmentService

Custom attribute definitions and segment CRUD with the in-memory repository.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from microservices.push_campaign_service.protocols import (
    NotFoundError,
    StateConflictError,
    UnknownAttributeError,
    ValidationError,
)
from tests.contracts.push_campaign.data_contract import (
    AttributeType,
    ConditionOperator,
    CustomAttributeCreateRequest,
    SegmentType,
    SegmentUpdateRequest,
)


class TestCustomAttributes:
    """Defining and removing merchant attributes"""

    @pytest.mark.asyncio
    async def test_define_attribute(self, segment_service, merchant_id):
        # Given: A category attribute with a duplicated option
        request = CustomAttributeCreateRequest(
            name="loyaltyTier",
            display_name="Loyalty tier",
            attribute_type=AttributeType.CATEGORY,
            options=["bronze", "silver", " gold ", "silver"],
        )

        # When: Defining it
        attribute = await segment_service.define_attribute(request, merchant_id)

        # Then: Options are trimmed and deduplicated
        assert attribute.merchant_id == merchant_id
        assert attribute.options == ["bronze", "silver", "gold"]
        assert [a.name for a in await segment_service.list_attributes(merchant_id)] == ["loyaltyTier"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["email", "lastActiveAt", "last_active_at", "LOCATIONCOUNTRY"])
    async def test_builtin_names_are_reserved(self, segment_service, merchant_id, name):
        request = CustomAttributeCreateRequest(name=name, attribute_type=AttributeType.TEXT)

        with pytest.raises(ValidationError) as exc_info:
            await segment_service.define_attribute(request, merchant_id)
        assert exc_info.value.field == "name"

    @pytest.mark.asyncio
    async def test_duplicate_attribute(self, segment_service, merchant_id):
        request = CustomAttributeCreateRequest(name="plan", attribute_type=AttributeType.TEXT)
        await segment_service.define_attribute(request, merchant_id)

        with pytest.raises(StateConflictError):
            await segment_service.define_attribute(request, merchant_id)

    @pytest.mark.asyncio
    async def test_same_name_for_another_merchant(self, segment_service, factory, merchant_id):
        request = CustomAttributeCreateRequest(name="plan", attribute_type=AttributeType.TEXT)
        await segment_service.define_attribute(request, merchant_id)

        attribute = await segment_service.define_attribute(request, factory.make_merchant_id())

        assert attribute.name == "plan"

    @pytest.mark.asyncio
    async def test_delete_attribute(self, segment_service, merchant_id):
        request = CustomAttributeCreateRequest(name="plan", attribute_type=AttributeType.TEXT)
        await segment_service.define_attribute(request, merchant_id)

        assert await segment_service.delete_attribute(merchant_id, "plan") is True
        assert await segment_service.list_attributes(merchant_id) == []

        with pytest.raises(NotFoundError):
            await segment_service.delete_attribute(merchant_id, "plan")


class TestCreateSegment:
    """Segment creation"""

    @pytest.mark.asyncio
    async def test_create_dynamic_segment_caches_count(self, segment_service, mock_repository, factory, merchant_id):
        # Given: Three US subscribers and one German one
        mock_repository.add_subscribers(factory.make_subscribers(3, merchant_id=merchant_id))
        mock_repository.add_subscribers([factory.make_subscriber(merchant_id=merchant_id, location_country="DE")])

        # When: Creating country = US
        segment = await segment_service.create_segment(
            factory.make_segment_create_request(), merchant_id, created_by="usr_1"
        )

        # Then: The segment is stored with its count
        assert segment.merchant_id == merchant_id
        assert segment.subscriber_count_cache == 3
        assert segment.count_refreshed_at is not None
        assert segment.created_by == "usr_1"
        assert segment.segment_id in mock_repository.segments

    @pytest.mark.asyncio
    async def test_unknown_attribute_is_not_saved(self, segment_service, mock_repository, factory, merchant_id):
        request = factory.make_segment_create_request(
            root_condition=factory.make_condition("shoeSize", ConditionOperator.EQUALS, "42")
        )

        with pytest.raises(UnknownAttributeError):
            await segment_service.create_segment(request, merchant_id)
        assert mock_repository.segments == {}

    @pytest.mark.asyncio
    async def test_invalid_value_is_rejected(self, segment_service, factory, merchant_id):
        request = factory.make_segment_create_request(
            root_condition=factory.make_condition("channel", ConditionOperator.EQUALS, "pager")
        )

        with pytest.raises(ValidationError):
            await segment_service.create_segment(request, merchant_id)

    @pytest.mark.asyncio
    async def test_static_segment_keeps_only_own_members(self, segment_service, mock_repository, factory, merchant_id):
        # Given: Two own subscribers and one belonging to another merchant
        own = factory.make_subscribers(2, merchant_id=merchant_id)
        foreign = factory.make_subscriber(merchant_id=factory.make_merchant_id())
        mock_repository.add_subscribers(own + [foreign])

        # When: Creating a static segment with all three ids plus a duplicate
        member_ids = [own[0].subscriber_id, own[1].subscriber_id, foreign.subscriber_id, own[0].subscriber_id]
        request = factory.make_segment_create_request(segment_type=SegmentType.STATIC, member_ids=member_ids)
        segment = await segment_service.create_segment(request, merchant_id)

        # Then: Only own members are kept
        assert segment.member_ids == [own[0].subscriber_id, own[1].subscriber_id]
        assert segment.subscriber_count_cache == 2

    @pytest.mark.asyncio
    async def test_static_segment_rejects_conditions(self, segment_service, factory, merchant_id):
        request = factory.make_segment_create_request(segment_type=SegmentType.STATIC)
        request.root_condition = factory.make_condition()

        with pytest.raises(ValidationError) as exc_info:
            await segment_service.create_segment(request, merchant_id)
        assert exc_info.value.field == "root_condition"

    @pytest.mark.asyncio
    async def test_dynamic_segment_rejects_member_ids(self, segment_service, factory, merchant_id):
        request = factory.make_segment_create_request(member_ids=["sub_1"])

        with pytest.raises(ValidationError) as exc_info:
            await segment_service.create_segment(request, merchant_id)
        assert exc_info.value.field == "member_ids"


class TestSegmentUpdates:
    """Editing, membership and counts"""

    @pytest.mark.asyncio
    async def test_update_condition_recompiles(self, segment_service, mock_repository, factory, merchant_id):
        # Given: A saved US segment
        segment = await segment_service.create_segment(factory.make_segment_create_request(), merchant_id)

        # When: Switching to an unknown attribute
        request = SegmentUpdateRequest(root_condition=factory.make_condition("shoeSize", ConditionOperator.EQUALS, "42"))

        # Then: The update is rejected and the stored tree is unchanged
        with pytest.raises(UnknownAttributeError):
            await segment_service.update_segment(segment.segment_id, request, merchant_id)
        assert mock_repository.segments[segment.segment_id].root_condition == segment.root_condition

    @pytest.mark.asyncio
    async def test_update_name_and_condition(self, segment_service, factory, merchant_id):
        segment = await segment_service.create_segment(factory.make_segment_create_request(), merchant_id)
        condition = factory.make_condition("locationCountry", ConditionOperator.EQUALS, "CA")

        updated = await segment_service.update_segment(
            segment.segment_id,
            SegmentUpdateRequest(name="Canada", root_condition=condition),
            merchant_id,
        )

        assert updated.name == "Canada"
        assert updated.root_condition == condition

    @pytest.mark.asyncio
    async def test_static_segment_cannot_take_condition(self, segment_service, factory, merchant_id):
        segment = await segment_service.create_segment(
            factory.make_segment_create_request(segment_type=SegmentType.STATIC), merchant_id
        )

        with pytest.raises(ValidationError):
            await segment_service.update_segment(
                segment.segment_id, SegmentUpdateRequest(root_condition=factory.make_condition()), merchant_id
            )

    @pytest.mark.asyncio
    async def test_set_static_members(self, segment_service, mock_repository, factory, merchant_id):
        subscribers = factory.make_subscribers(3, merchant_id=merchant_id)
        mock_repository.add_subscribers(subscribers)
        segment = await segment_service.create_segment(
            factory.make_segment_create_request(segment_type=SegmentType.STATIC), merchant_id
        )
        assert segment.subscriber_count_cache == 0

        updated = await segment_service.set_static_members(
            segment.segment_id, [s.subscriber_id for s in subscribers], merchant_id
        )

        assert updated.member_ids == [s.subscriber_id for s in subscribers]
        assert updated.subscriber_count_cache == 3
        assert mock_repository.segments[segment.segment_id].subscriber_count_cache == 3

    @pytest.mark.asyncio
    async def test_set_members_on_dynamic_segment(self, segment_service, factory, merchant_id):
        segment = await segment_service.create_segment(factory.make_segment_create_request(), merchant_id)

        with pytest.raises(ValidationError):
            await segment_service.set_static_members(segment.segment_id, ["sub_1"], merchant_id)

    @pytest.mark.asyncio
    async def test_refresh_count(self, segment_service, mock_repository, factory, merchant_id):
        # Given: A segment created before any subscriber existed
        segment = await segment_service.create_segment(factory.make_segment_create_request(), merchant_id)
        assert segment.subscriber_count_cache == 0

        # When: Subscribers arrive and the count is refreshed
        mock_repository.add_subscribers(factory.make_subscribers(4, merchant_id=merchant_id))
        refreshed = await segment_service.refresh_segment_count(segment.segment_id, merchant_id)

        # Then: The cache reflects the live count
        assert refreshed.subscriber_count_cache == 4

    @pytest.mark.asyncio
    async def test_estimate_unsaved_tree(self, segment_service, mock_repository, factory, merchant_id):
        mock_repository.add_subscribers(factory.make_subscribers(2, merchant_id=merchant_id))

        assert await segment_service.estimate_segment(factory.make_condition(), merchant_id) == 2


class TestSegmentQueries:
    """Get, list and delete"""

    @pytest.mark.asyncio
    async def test_get_other_merchants_segment(self, segment_service, factory, merchant_id):
        segment = await segment_service.create_segment(factory.make_segment_create_request(), merchant_id)

        with pytest.raises(NotFoundError):
            await segment_service.get_segment(segment.segment_id, factory.make_merchant_id())

    @pytest.mark.asyncio
    async def test_delete_segment(self, segment_service, factory, merchant_id):
        segment = await segment_service.create_segment(factory.make_segment_create_request(), merchant_id)

        assert await segment_service.delete_segment(segment.segment_id, merchant_id) is True

        with pytest.raises(NotFoundError):
            await segment_service.get_segment(segment.segment_id, merchant_id)
        with pytest.raises(NotFoundError):
            await segment_service.delete_segment(segment.segment_id, merchant_id)

    @pytest.mark.asyncio
    async def test_list_segments_by_type(self, segment_service, factory, merchant_id):
        await segment_service.create_segment(factory.make_segment_create_request(), merchant_id)
        await segment_service.create_segment(
            factory.make_segment_create_request(segment_type=SegmentType.STATIC), merchant_id
        )

        segments, total = await segment_service.list_segments(merchant_id, segment_type=SegmentType.STATIC)

        assert total == 1
        assert segments[0].segment_type == SegmentType.STATIC
