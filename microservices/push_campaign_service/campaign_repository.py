"""
Push Campaign Service Data Repository

Data access layer - PostgreSQL (asyncpg)
"""

import functools
import json
import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel, TypeAdapter

from core.config import InfraConfig
from core.postgres_client import PostgresClientWrapper, PostgresTransientError

from .models import (
    Campaign,
    CampaignAnalytics,
    CampaignStatus,
    CampaignType,
    ConditionNode,
    CustomAttribute,
    AttributeType,
    DeliveryRecord,
    PushChannel,
    PushPayload,
    Recipient,
    Segment,
    SegmentType,
)
from .protocols import TransientStorageError
from .query_compiler import FilterExpression, render_sql


class ExtendedJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal, date and datetime types"""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        return super().default(obj)


def json_dumps(obj):
    """JSON dumps with Decimal and datetime support"""
    return json.dumps(obj, cls=ExtendedJSONEncoder)


def _json_column(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


logger = logging.getLogger(__name__)

_CONDITION_ADAPTER = TypeAdapter(Optional[ConditionNode])

_CAMPAIGN_COLUMNS = frozenset({
    "name", "campaign_type", "status", "payload", "target_segment_ids",
    "scheduled_at", "sent_at", "sent_count", "failed_count",
    "cancelled_reason", "deleted_at",
})

_SEGMENT_COLUMNS = frozenset({
    "name", "description", "root_condition", "member_ids", "is_active",
})

_BREAKDOWNS = ("device_breakdown", "platform_breakdown", "location_breakdown")


def translate_storage_errors(func):
    """Surface transient driver failures as TransientStorageError"""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except PostgresTransientError as e:
            raise TransientStorageError(f"{func.__name__}: {e}") from e
    return wrapper


def _db_value(value: Any) -> Any:
    """Convert a python value into a parameter asyncpg accepts for our columns"""
    if isinstance(value, BaseModel):
        return json_dumps(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return json_dumps(value)
    if isinstance(value, Enum):
        return value.value
    return value


class PushCampaignRepository:
    """Push campaign service data repository - PostgreSQL (asyncpg)"""

    def __init__(
        self,
        db: Optional[PostgresClientWrapper] = None,
        config: Optional[InfraConfig] = None,
    ):
        self.db = db or PostgresClientWrapper("push_campaign_service", config=config)
        self.schema = "push_campaign"

        # Table names
        self.subscribers_table = "subscribers"
        self.attributes_table = "custom_attributes"
        self.segments_table = "segments"
        self.campaigns_table = "campaigns"
        self.deliveries_table = "deliveries"
        self.analytics_table = "campaign_analytics"

    async def initialize(self):
        """Initialize database connection"""
        await self.db.connect()
        logger.info("Push campaign repository initialized with PostgreSQL")

    async def close(self):
        """Close database connection"""
        await self.db.close()
        logger.info("Push campaign repository database connection closed")

    async def health_check(self) -> bool:
        """Check repository health"""
        try:
            async with self.db:
                result = await self.db.query_row("SELECT 1 as healthy")
                return result is not None
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return False

    # ====================
    # Subscribers
    # ====================

    @translate_storage_errors
    async def count_subscribers(
        self, expression: FilterExpression, timeout: Optional[float] = None
    ) -> int:
        """Count subscribers matching a compiled filter"""
        try:
            where_clause, params = render_sql(expression, functions_schema=self.schema)
            query = f'''
                SELECT COUNT(*) as total FROM {self.schema}.{self.subscribers_table}
                WHERE {where_clause}
            '''

            async with self.db:
                result = await self.db.query_row(query, params=params, timeout=timeout)

            return int(result.get("total", 0)) if result else 0

        except Exception as e:
            logger.error(f"Error counting subscribers for {expression.merchant_id}: {e}")
            raise

    @translate_storage_errors
    async def find_subscriber_ids(self, expression: FilterExpression) -> Set[str]:
        """Exact membership of a compiled filter"""
        try:
            where_clause, params = render_sql(expression, functions_schema=self.schema)
            query = f'''
                SELECT subscriber_id FROM {self.schema}.{self.subscribers_table}
                WHERE {where_clause}
            '''

            async with self.db:
                results = await self.db.query(query, params=params)

            return {row["subscriber_id"] for row in results or []}

        except Exception as e:
            logger.error(f"Error resolving subscribers for {expression.merchant_id}: {e}")
            raise

    @translate_storage_errors
    async def find_recipients(self, expression: FilterExpression) -> List[Recipient]:
        """Members of a compiled filter with their channel targets"""
        try:
            where_clause, params = render_sql(expression, functions_schema=self.schema)
            query = f'''
                SELECT subscriber_id, push_token, channel
                FROM {self.schema}.{self.subscribers_table}
                WHERE {where_clause}
                ORDER BY subscriber_id
            '''

            async with self.db:
                results = await self.db.query(query, params=params)

            return [
                Recipient.model_construct(
                    subscriber_id=row["subscriber_id"],
                    channel_target=row.get("push_token") or None,
                    channel=PushChannel(row.get("channel") or "web"),
                )
                for row in results or []
            ]

        except Exception as e:
            logger.error(f"Error resolving recipients for {expression.merchant_id}: {e}")
            raise

    @translate_storage_errors
    async def filter_subscriber_ids(self, merchant_id: str, subscriber_ids: List[str]) -> List[str]:
        """Keep only ids that belong to the merchant"""
        if not subscriber_ids:
            return []
        try:
            query = f'''
                SELECT subscriber_id FROM {self.schema}.{self.subscribers_table}
                WHERE merchant_id = $1 AND subscriber_id = ANY($2::text[])
            '''

            async with self.db:
                results = await self.db.query(query, params=[merchant_id, list(subscriber_ids)])

            owned = {row["subscriber_id"] for row in results or []}
            return [sid for sid in dict.fromkeys(subscriber_ids) if sid in owned]

        except Exception as e:
            logger.error(f"Error filtering subscribers for {merchant_id}: {e}")
            raise

    @translate_storage_errors
    async def deactivate_subscribers(self, merchant_id: str, subscriber_ids: List[str]) -> int:
        """Mark subscribers inactive (invalid push tokens)"""
        if not subscriber_ids:
            return 0
        try:
            query = f'''
                UPDATE {self.schema}.{self.subscribers_table}
                SET is_active = FALSE, updated_at = $3
                WHERE merchant_id = $1 AND subscriber_id = ANY($2::text[]) AND is_active = TRUE
                RETURNING subscriber_id
            '''

            now = datetime.now(timezone.utc)
            async with self.db:
                results = await self.db.query(query, params=[merchant_id, list(subscriber_ids), now])

            return len(results or [])

        except Exception as e:
            logger.error(f"Error deactivating subscribers for {merchant_id}: {e}")
            raise

    # ====================
    # Custom Attributes
    # ====================

    @translate_storage_errors
    async def save_custom_attribute(self, attribute: CustomAttribute) -> CustomAttribute:
        """Create a custom attribute definition"""
        try:
            query = f'''
                INSERT INTO {self.schema}.{self.attributes_table} (
                    attribute_id, merchant_id, name, display_name,
                    attribute_type, options, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                RETURNING *
            '''

            params = [
                attribute.attribute_id,
                attribute.merchant_id,
                attribute.name,
                attribute.display_name,
                attribute.attribute_type.value,
                json_dumps(attribute.options),
                attribute.created_at,
                attribute.updated_at,
            ]

            async with self.db:
                result = await self.db.query_row(query, params=params)

            return self._row_to_attribute(result) if result else attribute

        except Exception as e:
            logger.error(f"Error saving custom attribute {attribute.name}: {e}")
            raise

    @translate_storage_errors
    async def get_custom_attribute(self, merchant_id: str, name: str) -> Optional[CustomAttribute]:
        """Get a live custom attribute by name"""
        try:
            query = f'''
                SELECT * FROM {self.schema}.{self.attributes_table}
                WHERE merchant_id = $1 AND name = $2 AND deleted_at IS NULL
            '''

            async with self.db:
                result = await self.db.query_row(query, params=[merchant_id, name])

            return self._row_to_attribute(result) if result else None

        except Exception as e:
            logger.error(f"Error getting custom attribute {name}: {e}")
            raise

    @translate_storage_errors
    async def list_custom_attributes(self, merchant_id: str) -> List[CustomAttribute]:
        """List live custom attributes of a merchant"""
        try:
            query = f'''
                SELECT * FROM {self.schema}.{self.attributes_table}
                WHERE merchant_id = $1 AND deleted_at IS NULL
                ORDER BY name
            '''

            async with self.db:
                results = await self.db.query(query, params=[merchant_id])

            return [self._row_to_attribute(row) for row in results or []]

        except Exception as e:
            logger.error(f"Error listing custom attributes for {merchant_id}: {e}")
            raise

    @translate_storage_errors
    async def delete_custom_attribute(self, merchant_id: str, name: str) -> bool:
        """Soft delete a custom attribute"""
        try:
            query = f'''
                UPDATE {self.schema}.{self.attributes_table}
                SET deleted_at = $1, updated_at = $1
                WHERE merchant_id = $2 AND name = $3 AND deleted_at IS NULL
                RETURNING attribute_id
            '''

            now = datetime.now(timezone.utc)
            async with self.db:
                results = await self.db.query(query, params=[now, merchant_id, name])

            return bool(results)

        except Exception as e:
            logger.error(f"Error deleting custom attribute {name}: {e}")
            raise

    # ====================
    # Segments
    # ====================

    @translate_storage_errors
    async def save_segment(self, segment: Segment) -> Segment:
        """Insert or replace a segment"""
        try:
            now = datetime.now(timezone.utc)

            query = f'''
                INSERT INTO {self.schema}.{self.segments_table} (
                    segment_id, merchant_id, name, description, segment_type,
                    root_condition, member_ids, subscriber_count_cache,
                    count_refreshed_at, is_active, created_by, created_at, updated_at
                ) VALUES (
                    $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13
                )
                ON CONFLICT (segment_id) DO UPDATE SET
                    name = EXCLUDED.name,
                    description = EXCLUDED.description,
                    root_condition = EXCLUDED.root_condition,
                    member_ids = EXCLUDED.member_ids,
                    subscriber_count_cache = EXCLUDED.subscriber_count_cache,
                    count_refreshed_at = EXCLUDED.count_refreshed_at,
                    is_active = EXCLUDED.is_active,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
            '''

            params = [
                segment.segment_id,
                segment.merchant_id,
                segment.name,
                segment.description,
                segment.segment_type.value,
                _db_value(segment.root_condition),
                list(segment.member_ids),
                segment.subscriber_count_cache,
                segment.count_refreshed_at,
                segment.is_active,
                segment.created_by,
                segment.created_at or now,
                now,
            ]

            async with self.db:
                result = await self.db.query_row(query, params=params)

            return self._row_to_segment(result) if result else segment

        except Exception as e:
            logger.error(f"Error saving segment: {e}", exc_info=True)
            raise

    @translate_storage_errors
    async def get_segment(self, merchant_id: str, segment_id: str) -> Optional[Segment]:
        """Get a segment that is not soft-deleted"""
        try:
            query = f'''
                SELECT * FROM {self.schema}.{self.segments_table}
                WHERE segment_id = $1 AND merchant_id = $2 AND deleted_at IS NULL
            '''

            async with self.db:
                result = await self.db.query_row(query, params=[segment_id, merchant_id])

            return self._row_to_segment(result) if result else None

        except Exception as e:
            logger.error(f"Error getting segment {segment_id}: {e}")
            raise

    @translate_storage_errors
    async def get_segments_by_ids(self, merchant_id: str, segment_ids: List[str]) -> List[Segment]:
        """Get live segments of a merchant by id"""
        if not segment_ids:
            return []
        try:
            query = f'''
                SELECT * FROM {self.schema}.{self.segments_table}
                WHERE merchant_id = $1 AND segment_id = ANY($2::text[]) AND deleted_at IS NULL
                ORDER BY segment_id
            '''

            async with self.db:
                results = await self.db.query(query, params=[merchant_id, list(segment_ids)])

            return [self._row_to_segment(row) for row in results or []]

        except Exception as e:
            logger.error(f"Error getting segments for {merchant_id}: {e}")
            raise

    @translate_storage_errors
    async def list_segments(
        self,
        merchant_id: str,
        segment_type: Optional[SegmentType] = None,
        search: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Segment], int]:
        """List live segments with filters"""
        try:
            conditions = ["merchant_id = $1", "deleted_at IS NULL"]
            params: List[Any] = [merchant_id]
            param_count = 1

            if segment_type:
                param_count += 1
                conditions.append(f"segment_type = ${param_count}")
                params.append(segment_type.value)

            if search:
                param_count += 1
                conditions.append(f"LOWER(name) LIKE LOWER(${param_count})")
                params.append(f"%{search}%")

            where_clause = " AND ".join(conditions)

            count_query = f'''
                SELECT COUNT(*) as total FROM {self.schema}.{self.segments_table}
                WHERE {where_clause}
            '''

            async with self.db:
                count_result = await self.db.query_row(count_query, params=params)
                total = count_result.get("total", 0) if count_result else 0

            list_query = f'''
                SELECT * FROM {self.schema}.{self.segments_table}
                WHERE {where_clause}
                ORDER BY created_at DESC
                LIMIT ${param_count + 1} OFFSET ${param_count + 2}
            '''
            params.extend([limit, offset])

            async with self.db:
                results = await self.db.query(list_query, params=params)

            return [self._row_to_segment(row) for row in results or []], total

        except Exception as e:
            logger.error(f"Error listing segments: {e}")
            raise

    @translate_storage_errors
    async def update_segment(self, segment_id: str, updates: Dict[str, Any]) -> Optional[Segment]:
        """Update segment fields"""
        try:
            set_clauses = []
            params = []
            param_count = 0

            for key, value in updates.items():
                if key not in _SEGMENT_COLUMNS:
                    raise ValueError(f"Unknown segment column: {key}")
                param_count += 1
                set_clauses.append(f"{key} = ${param_count}")
                params.append(_db_value(value))

            param_count += 1
            set_clauses.append(f"updated_at = ${param_count}")
            params.append(datetime.now(timezone.utc))

            param_count += 1
            params.append(segment_id)

            query = f'''
                UPDATE {self.schema}.{self.segments_table}
                SET {", ".join(set_clauses)}
                WHERE segment_id = ${param_count} AND deleted_at IS NULL
                RETURNING *
            '''

            async with self.db:
                result = await self.db.query_row(query, params=params)

            return self._row_to_segment(result) if result else None

        except Exception as e:
            logger.error(f"Error updating segment {segment_id}: {e}")
            raise

    @translate_storage_errors
    async def update_segment_count(self, segment_id: str, count: int) -> None:
        """Refresh the informational subscriber count cache"""
        try:
            query = f'''
                UPDATE {self.schema}.{self.segments_table}
                SET subscriber_count_cache = $1, count_refreshed_at = $2
                WHERE segment_id = $3
            '''

            now = datetime.now(timezone.utc)
            async with self.db:
                await self.db.execute(query, params=[count, now, segment_id])

        except Exception as e:
            logger.error(f"Error updating count of segment {segment_id}: {e}")
            raise

    @translate_storage_errors
    async def delete_segment(self, merchant_id: str, segment_id: str) -> bool:
        """Soft delete a segment"""
        try:
            query = f'''
                UPDATE {self.schema}.{self.segments_table}
                SET deleted_at = $1, updated_at = $1, is_active = FALSE
                WHERE segment_id = $2 AND merchant_id = $3 AND deleted_at IS NULL
                RETURNING segment_id
            '''

            now = datetime.now(timezone.utc)
            async with self.db:
                results = await self.db.query(query, params=[now, segment_id, merchant_id])

            return bool(results)

        except Exception as e:
            logger.error(f"Error deleting segment {segment_id}: {e}")
            raise

    # ====================
    # Campaigns
    # ====================

    @translate_storage_errors
    async def save_campaign(self, campaign: Campaign) -> Campaign:
        """Insert or replace a campaign"""
        try:
            now = datetime.now(timezone.utc)

            query = f'''
                INSERT INTO {self.schema}.{self.campaigns_table} (
                    campaign_id, merchant_id, name, campaign_type, status,
                    payload, target_segment_ids, scheduled_at, sent_at,
                    sent_count, failed_count, cancelled_reason, created_by,
                    created_at, updated_at
                ) VALUES (
                    $1, $2, $3, $4, $5, $6, $7, $8, $9, $10,
                    $11, $12, $13, $14, $15
                )
                ON CONFLICT (campaign_id) DO UPDATE SET
                    name = EXCLUDED.name,
                    campaign_type = EXCLUDED.campaign_type,
                    status = EXCLUDED.status,
                    payload = EXCLUDED.payload,
                    target_segment_ids = EXCLUDED.target_segment_ids,
                    scheduled_at = EXCLUDED.scheduled_at,
                    cancelled_reason = EXCLUDED.cancelled_reason,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
            '''

            params = [
                campaign.campaign_id,
                campaign.merchant_id,
                campaign.name,
                campaign.campaign_type.value,
                campaign.status.value,
                _db_value(campaign.payload),
                list(campaign.target_segment_ids),
                campaign.scheduled_at,
                campaign.sent_at,
                campaign.sent_count,
                campaign.failed_count,
                campaign.cancelled_reason,
                campaign.created_by,
                campaign.created_at or now,
                now,
            ]

            async with self.db:
                result = await self.db.query_row(query, params=params)

            return self._row_to_campaign(result) if result else campaign

        except Exception as e:
            logger.error(f"Error saving campaign: {e}", exc_info=True)
            raise

    @translate_storage_errors
    async def get_campaign(self, campaign_id: str, merchant_id: Optional[str] = None) -> Optional[Campaign]:
        """Get a campaign that is not soft-deleted"""
        try:
            query = f'''
                SELECT * FROM {self.schema}.{self.campaigns_table}
                WHERE campaign_id = $1 AND deleted_at IS NULL
            '''
            params = [campaign_id]
            if merchant_id:
                query += " AND merchant_id = $2"
                params.append(merchant_id)

            async with self.db:
                result = await self.db.query_row(query, params=params)

            return self._row_to_campaign(result) if result else None

        except Exception as e:
            logger.error(f"Error getting campaign {campaign_id}: {e}")
            raise

    @translate_storage_errors
    async def list_campaigns(
        self,
        merchant_id: str,
        statuses: Optional[List[CampaignStatus]] = None,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Campaign], int]:
        """List live campaigns with filters"""
        try:
            conditions = ["merchant_id = $1", "deleted_at IS NULL"]
            params: List[Any] = [merchant_id]
            param_count = 1

            if statuses:
                param_count += 1
                conditions.append(f"status = ANY(${param_count})")
                params.append([s.value for s in statuses])

            if search:
                param_count += 1
                conditions.append(f"LOWER(name) LIKE LOWER(${param_count})")
                params.append(f"%{search}%")

            where_clause = " AND ".join(conditions)

            count_query = f'''
                SELECT COUNT(*) as total FROM {self.schema}.{self.campaigns_table}
                WHERE {where_clause}
            '''

            async with self.db:
                count_result = await self.db.query_row(count_query, params=params)
                total = count_result.get("total", 0) if count_result else 0

            list_query = f'''
                SELECT * FROM {self.schema}.{self.campaigns_table}
                WHERE {where_clause}
                ORDER BY created_at DESC
                LIMIT ${param_count + 1} OFFSET ${param_count + 2}
            '''
            params.extend([limit, offset])

            async with self.db:
                results = await self.db.query(list_query, params=params)

            return [self._row_to_campaign(row) for row in results or []], total

        except Exception as e:
            logger.error(f"Error listing campaigns: {e}")
            raise

    def _set_clauses(self, updates: Dict[str, Any], start: int) -> Tuple[List[str], List[Any]]:
        set_clauses = []
        params = []
        param_count = start
        for key, value in updates.items():
            if key not in _CAMPAIGN_COLUMNS:
                raise ValueError(f"Unknown campaign column: {key}")
            param_count += 1
            set_clauses.append(f"{key} = ${param_count}")
            params.append(_db_value(value))
        return set_clauses, params

    @translate_storage_errors
    async def update_campaign(self, campaign_id: str, updates: Dict[str, Any]) -> Optional[Campaign]:
        """Update campaign fields"""
        try:
            if not updates:
                return await self.get_campaign(campaign_id)

            set_clauses, params = self._set_clauses(updates, 0)
            param_count = len(params)

            param_count += 1
            set_clauses.append(f"updated_at = ${param_count}")
            params.append(datetime.now(timezone.utc))

            param_count += 1
            params.append(campaign_id)

            query = f'''
                UPDATE {self.schema}.{self.campaigns_table}
                SET {", ".join(set_clauses)}
                WHERE campaign_id = ${param_count} AND deleted_at IS NULL
                RETURNING *
            '''

            async with self.db:
                result = await self.db.query_row(query, params=params)

            return self._row_to_campaign(result) if result else None

        except Exception as e:
            logger.error(f"Error updating campaign {campaign_id}: {e}")
            raise

    @translate_storage_errors
    async def conditional_update_status(
        self,
        campaign_id: str,
        expected: List[CampaignStatus],
        new_status: CampaignStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Campaign]:
        """
        Set status only where the current status is one of expected.

        Single UPDATE ... WHERE status = ANY(...) RETURNING statement; returns
        None when no row matched (another caller won, or wrong status).
        """
        try:
            fields = dict(updates or {})
            fields["status"] = new_status
            set_clauses, params = self._set_clauses(fields, 0)
            param_count = len(params)

            param_count += 1
            set_clauses.append(f"updated_at = ${param_count}")
            params.append(datetime.now(timezone.utc))

            params.extend([campaign_id, [s.value for s in expected]])

            query = f'''
                UPDATE {self.schema}.{self.campaigns_table}
                SET {", ".join(set_clauses)}
                WHERE campaign_id = ${param_count + 1}
                  AND status = ANY(${param_count + 2}::text[])
                  AND deleted_at IS NULL
                RETURNING *
            '''

            async with self.db:
                result = await self.db.query_row(query, params=params)

            return self._row_to_campaign(result) if result else None

        except Exception as e:
            logger.error(f"Error updating status of campaign {campaign_id}: {e}")
            raise

    @translate_storage_errors
    async def delete_campaign(self, campaign_id: str) -> bool:
        """Soft delete campaign"""
        try:
            query = f'''
                UPDATE {self.schema}.{self.campaigns_table}
                SET deleted_at = $1, updated_at = $1
                WHERE campaign_id = $2 AND deleted_at IS NULL AND status <> 'sending'
                RETURNING campaign_id
            '''

            now = datetime.now(timezone.utc)
            async with self.db:
                results = await self.db.query(query, params=[now, campaign_id])

            return bool(results)

        except Exception as e:
            logger.error(f"Error deleting campaign {campaign_id}: {e}")
            raise

    @translate_storage_errors
    async def count_campaigns_by_status(self, merchant_id: str) -> Dict[str, int]:
        """Live campaign counts per status"""
        try:
            query = f'''
                SELECT status, COUNT(*) as total FROM {self.schema}.{self.campaigns_table}
                WHERE merchant_id = $1 AND deleted_at IS NULL
                GROUP BY status
            '''

            async with self.db:
                results = await self.db.query(query, params=[merchant_id])

            return {row["status"]: int(row["total"]) for row in results or []}

        except Exception as e:
            logger.error(f"Error counting campaigns for {merchant_id}: {e}")
            raise

    # ====================
    # Delivery Records
    # ====================

    @translate_storage_errors
    async def upsert_delivery_records(self, records: List[DeliveryRecord]) -> None:
        """
        Idempotent upsert keyed by (campaign_id, subscriber_id).

        A delivered record never regresses, and the first click is kept.
        """
        if not records:
            return
        try:
            query = f'''
                INSERT INTO {self.schema}.{self.deliveries_table} AS d (
                    campaign_id, subscriber_id, status, reason,
                    attempt_count, attempted_at, delivered_at, clicked_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                ON CONFLICT (campaign_id, subscriber_id) DO UPDATE SET
                    status = CASE WHEN d.status = 'delivered' THEN d.status ELSE EXCLUDED.status END,
                    reason = CASE WHEN d.status = 'delivered' THEN d.reason ELSE EXCLUDED.reason END,
                    attempt_count = d.attempt_count + 1,
                    attempted_at = EXCLUDED.attempted_at,
                    delivered_at = COALESCE(d.delivered_at, EXCLUDED.delivered_at),
                    clicked_at = COALESCE(d.clicked_at, EXCLUDED.clicked_at)
            '''

            params_list = [
                [
                    record.campaign_id,
                    record.subscriber_id,
                    record.status.value,
                    record.reason,
                    record.attempt_count,
                    record.attempted_at,
                    record.delivered_at,
                    record.clicked_at,
                ]
                for record in records
            ]

            async with self.db:
                await self.db.execute_many(query, params_list)

        except Exception as e:
            logger.error(f"Error upserting {len(records)} delivery records: {e}")
            raise

    @translate_storage_errors
    async def get_delivered_subscriber_ids(self, campaign_id: str) -> Set[str]:
        """Subscribers with a delivered outcome"""
        try:
            query = f'''
                SELECT subscriber_id FROM {self.schema}.{self.deliveries_table}
                WHERE campaign_id = $1 AND status = 'delivered'
            '''

            async with self.db:
                results = await self.db.query(query, params=[campaign_id])

            return {row["subscriber_id"] for row in results or []}

        except Exception as e:
            logger.error(f"Error getting delivered subscribers of {campaign_id}: {e}")
            raise

    @translate_storage_errors
    async def get_recorded_subscriber_ids(self, campaign_id: str) -> Set[str]:
        """Subscribers with any delivery record, whatever its status"""
        try:
            query = f'''
                SELECT subscriber_id FROM {self.schema}.{self.deliveries_table}
                WHERE campaign_id = $1
            '''

            async with self.db:
                results = await self.db.query(query, params=[campaign_id])

            return {row["subscriber_id"] for row in results or []}

        except Exception as e:
            logger.error(f"Error getting recorded subscribers of {campaign_id}: {e}")
            raise

    @translate_storage_errors
    async def get_delivery_counts(self, campaign_id: str) -> Dict[str, int]:
        """Counts of delivered/failed/skipped/clicked records"""
        try:
            query = f'''
                SELECT
                    COUNT(*) FILTER (WHERE status = 'delivered') as delivered,
                    COUNT(*) FILTER (WHERE status = 'failed') as failed,
                    COUNT(*) FILTER (WHERE status = 'skipped') as skipped,
                    COUNT(*) FILTER (WHERE clicked_at IS NOT NULL) as clicked
                FROM {self.schema}.{self.deliveries_table}
                WHERE campaign_id = $1
            '''

            async with self.db:
                result = await self.db.query_row(query, params=[campaign_id])

            result = result or {}
            return {key: int(result.get(key) or 0) for key in ("delivered", "failed", "skipped", "clicked")}

        except Exception as e:
            logger.error(f"Error counting deliveries of {campaign_id}: {e}")
            raise

    @translate_storage_errors
    async def mark_delivery_clicked(self, campaign_id: str, subscriber_id: str, clicked_at: datetime) -> bool:
        """Stamp the first click on a delivery record"""
        try:
            query = f'''
                UPDATE {self.schema}.{self.deliveries_table}
                SET clicked_at = $3
                WHERE campaign_id = $1 AND subscriber_id = $2 AND clicked_at IS NULL
                RETURNING subscriber_id
            '''

            async with self.db:
                results = await self.db.query(query, params=[campaign_id, subscriber_id, clicked_at])

            return bool(results)

        except Exception as e:
            logger.error(f"Error marking click for {campaign_id}/{subscriber_id}: {e}")
            raise

    # ====================
    # Analytics
    # ====================

    @staticmethod
    def _merge_counts(column: str) -> str:
        """SQL expression adding two {key: count} JSONB maps key by key"""
        return f'''(
            SELECT COALESCE(jsonb_object_agg(key, total), '{{}}'::jsonb)
            FROM (
                SELECT key, SUM(value::bigint) as total
                FROM (
                    SELECT * FROM jsonb_each_text(COALESCE(a.{column}, '{{}}'::jsonb))
                    UNION ALL
                    SELECT * FROM jsonb_each_text(COALESCE(EXCLUDED.{column}, '{{}}'::jsonb))
                ) merged
                GROUP BY key
            ) summed
        )'''

    @translate_storage_errors
    async def upsert_daily_analytics(self, delta: CampaignAnalytics) -> CampaignAnalytics:
        """Add counters to the (campaign_id, date) row, creating it if needed"""
        try:
            now = datetime.now(timezone.utc)
            merges = ",\n                    ".join(
                f"{column} = {self._merge_counts(column)}" for column in _BREAKDOWNS
            )

            query = f'''
                INSERT INTO {self.schema}.{self.analytics_table} AS a (
                    campaign_id, date, impressions, clicks, conversions, revenue,
                    subscribers_targeted, subscribers_reached,
                    device_breakdown, platform_breakdown, location_breakdown,
                    created_at, updated_at
                ) VALUES (
                    $1, $2, $3, $4, $5, $6, $7, $8,
                    $9::jsonb, $10::jsonb, $11::jsonb, $12, $12
                )
                ON CONFLICT (campaign_id, date) DO UPDATE SET
                    impressions = a.impressions + EXCLUDED.impressions,
                    clicks = a.clicks + EXCLUDED.clicks,
                    conversions = a.conversions + EXCLUDED.conversions,
                    revenue = a.revenue + EXCLUDED.revenue,
                    subscribers_targeted = a.subscribers_targeted + EXCLUDED.subscribers_targeted,
                    subscribers_reached = a.subscribers_reached + EXCLUDED.subscribers_reached,
                    {merges},
                    updated_at = EXCLUDED.updated_at
                RETURNING *
            '''

            params = [
                delta.campaign_id,
                delta.date,
                delta.impressions,
                delta.clicks,
                delta.conversions,
                delta.revenue,
                delta.subscribers_targeted,
                delta.subscribers_reached,
                json_dumps(delta.device_breakdown),
                json_dumps(delta.platform_breakdown),
                json_dumps(delta.location_breakdown),
                now,
            ]

            async with self.db:
                result = await self.db.query_row(query, params=params)

            return self._row_to_analytics(result) if result else delta

        except Exception as e:
            logger.error(f"Error upserting analytics for {delta.campaign_id} on {delta.date}: {e}")
            raise

    @translate_storage_errors
    async def list_daily_analytics(
        self,
        campaign_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> List[CampaignAnalytics]:
        """Daily rows ordered by date"""
        try:
            conditions = ["campaign_id = $1"]
            params: List[Any] = [campaign_id]
            param_count = 1

            if start_date:
                param_count += 1
                conditions.append(f"date >= ${param_count}")
                params.append(start_date)

            if end_date:
                param_count += 1
                conditions.append(f"date <= ${param_count}")
                params.append(end_date)

            query = f'''
                SELECT * FROM {self.schema}.{self.analytics_table}
                WHERE {" AND ".join(conditions)}
                ORDER BY date
            '''

            async with self.db:
                results = await self.db.query(query, params=params)

            return [self._row_to_analytics(row) for row in results or []]

        except Exception as e:
            logger.error(f"Error listing analytics for {campaign_id}: {e}")
            raise

    @translate_storage_errors
    async def sum_daily_analytics(self, campaign_id: str) -> Dict[str, Any]:
        """Sums of all daily counters of a campaign"""
        try:
            query = f'''
                SELECT
                    COALESCE(SUM(impressions), 0) as impressions,
                    COALESCE(SUM(clicks), 0) as clicks,
                    COALESCE(SUM(conversions), 0) as conversions,
                    COALESCE(SUM(revenue), 0) as revenue,
                    COALESCE(SUM(subscribers_targeted), 0) as subscribers_targeted,
                    COALESCE(SUM(subscribers_reached), 0) as subscribers_reached
                FROM {self.schema}.{self.analytics_table}
                WHERE campaign_id = $1
            '''

            async with self.db:
                result = await self.db.query_row(query, params=[campaign_id])

            return dict(result) if result else {}

        except Exception as e:
            logger.error(f"Error summing analytics for {campaign_id}: {e}")
            raise

    @translate_storage_errors
    async def sum_merchant_analytics(self, merchant_id: str) -> Dict[str, Any]:
        """Sums of campaign rollups across a merchant's live campaigns"""
        try:
            query = f'''
                SELECT
                    COALESCE(SUM(impressions), 0) as impressions,
                    COALESCE(SUM(clicks), 0) as clicks,
                    COALESCE(SUM(conversions), 0) as conversions,
                    COALESCE(SUM(revenue), 0) as revenue
                FROM {self.schema}.{self.campaigns_table}
                WHERE merchant_id = $1 AND deleted_at IS NULL
            '''

            async with self.db:
                result = await self.db.query_row(query, params=[merchant_id])

            return dict(result) if result else {}

        except Exception as e:
            logger.error(f"Error summing analytics for merchant {merchant_id}: {e}")
            raise

    @translate_storage_errors
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
        try:
            query = f'''
                UPDATE {self.schema}.{self.campaigns_table}
                SET impressions = $1, clicks = $2, conversions = $3,
                    revenue = $4, ctr = $5, updated_at = $6
                WHERE campaign_id = $7
            '''

            now = datetime.now(timezone.utc)
            async with self.db:
                await self.db.execute(
                    query,
                    params=[impressions, clicks, conversions, revenue, ctr, now, campaign_id],
                )

        except Exception as e:
            logger.error(f"Error updating rollups of {campaign_id}: {e}")
            raise

    # ====================
    # Row Converters
    # ====================

    def _row_to_attribute(self, row: Dict[str, Any]) -> CustomAttribute:
        """Convert database row to CustomAttribute model"""
        return CustomAttribute.model_construct(
            attribute_id=row.get("attribute_id"),
            merchant_id=row.get("merchant_id"),
            name=row.get("name"),
            display_name=row.get("display_name"),
            attribute_type=AttributeType(row.get("attribute_type")),
            options=_json_column(row.get("options"), []),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
            deleted_at=row.get("deleted_at"),
        )

    def _row_to_segment(self, row: Dict[str, Any]) -> Segment:
        """Convert database row to Segment model"""
        root_condition = _json_column(row.get("root_condition"), None)
        return Segment.model_construct(
            segment_id=row.get("segment_id"),
            merchant_id=row.get("merchant_id"),
            name=row.get("name"),
            description=row.get("description"),
            segment_type=SegmentType(row.get("segment_type")),
            root_condition=_CONDITION_ADAPTER.validate_python(root_condition),
            member_ids=list(row.get("member_ids") or []),
            subscriber_count_cache=row.get("subscriber_count_cache") or 0,
            count_refreshed_at=row.get("count_refreshed_at"),
            is_active=row.get("is_active", True),
            created_by=row.get("created_by"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
            deleted_at=row.get("deleted_at"),
        )

    def _row_to_campaign(self, row: Dict[str, Any]) -> Campaign:
        """Convert database row to Campaign model"""
        payload = _json_column(row.get("payload"), {})
        return Campaign.model_construct(
            campaign_id=row.get("campaign_id"),
            merchant_id=row.get("merchant_id"),
            name=row.get("name"),
            campaign_type=CampaignType(row.get("campaign_type")),
            status=CampaignStatus(row.get("status")),
            payload=PushPayload.model_validate(payload),
            target_segment_ids=list(row.get("target_segment_ids") or []),
            scheduled_at=row.get("scheduled_at"),
            sent_at=row.get("sent_at"),
            sent_count=row.get("sent_count") or 0,
            failed_count=row.get("failed_count") or 0,
            impressions=row.get("impressions") or 0,
            clicks=row.get("clicks") or 0,
            conversions=row.get("conversions") or 0,
            revenue=Decimal(str(row.get("revenue") or 0)),
            ctr=Decimal(str(row.get("ctr") or 0)),
            cancelled_reason=row.get("cancelled_reason"),
            created_by=row.get("created_by"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
            deleted_at=row.get("deleted_at"),
        )

    def _row_to_analytics(self, row: Dict[str, Any]) -> CampaignAnalytics:
        """Convert database row to CampaignAnalytics model"""
        return CampaignAnalytics.model_construct(
            campaign_id=row.get("campaign_id"),
            date=row.get("date"),
            impressions=row.get("impressions") or 0,
            clicks=row.get("clicks") or 0,
            conversions=row.get("conversions") or 0,
            revenue=Decimal(str(row.get("revenue") or 0)),
            subscribers_targeted=row.get("subscribers_targeted") or 0,
            subscribers_reached=row.get("subscribers_reached") or 0,
            device_breakdown=_json_column(row.get("device_breakdown"), {}),
            platform_breakdown=_json_column(row.get("platform_breakdown"), {}),
            location_breakdown=_json_column(row.get("location_breakdown"), {}),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


__all__ = ["PushCampaignRepository"]
