"""
Campaign Dispatch Engine

Validates campaigns, moves them into SENDING with an atomic conditional
update, resolves the union audience of their target segments and hands it
to the push transport in batches. Per-recipient outcomes are upserted on
(campaign_id, subscriber_id), so a retried send only reaches recipients
that have no delivered outcome yet.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from core.config import DispatchConfig

from .models import (
    Campaign,
    CampaignStatus,
    CampaignValidationResult,
    DeliveryRecord,
    DeliveryStatus,
    Recipient,
    SendResult,
    SendStats,
    TransportOutcome,
)
from .outcome_aggregator import OutcomeAggregator, percentage
from .protocols import (
    DispatchFailedError,
    NotFoundError,
    PushCampaignRepositoryProtocol,
    PushTransportProtocol,
    StateConflictError,
    TransientStorageError,
    TransportError,
    ValidationError,
)
from .segment_resolver import SegmentResolver

logger = logging.getLogger(__name__)

SEND_FROM = [CampaignStatus.DRAFT, CampaignStatus.SCHEDULED, CampaignStatus.FAILED]
RETRY_FROM = [CampaignStatus.SENT]

INVALID_TOKEN_REASONS = frozenset({
    "invalid_token",
    "unregistered",
    "not_registered",
    "expired_token",
    "token_expired",
})


@dataclass
class BatchOutcome:
    """Counts for one transport batch"""
    delivered: int = 0
    failed: int = 0
    skipped: int = 0
    transport_called: bool = False
    unreachable: bool = False
    errors: List[str] = field(default_factory=list)


class DispatchEngine:
    """Campaign validation and batched delivery"""

    def __init__(
        self,
        repository: PushCampaignRepositoryProtocol,
        resolver: SegmentResolver,
        transport: PushTransportProtocol,
        aggregator: OutcomeAggregator,
        event_publisher=None,
        config: Optional[DispatchConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.repository = repository
        self.resolver = resolver
        self.transport = transport
        self.aggregator = aggregator
        self.event_publisher = event_publisher
        self.config = config or DispatchConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep

    # ====================
    # Validation
    # ====================

    async def validate_campaign(
        self, campaign_id: str, merchant_id: Optional[str] = None
    ) -> CampaignValidationResult:
        """Readiness report for a campaign; never changes state"""
        campaign = await self._get_campaign(campaign_id, merchant_id)
        return await self._validate(campaign)

    async def _validate(self, campaign: Campaign) -> CampaignValidationResult:
        errors: List[str] = []
        warnings: List[str] = []

        if campaign.deleted_at is not None:
            errors.append("Campaign has been deleted")
        if campaign.status == CampaignStatus.CANCELLED:
            errors.append("Campaign has been cancelled")
        if not campaign.payload.title.strip():
            errors.append("Notification title is required")
        if not campaign.payload.message.strip():
            errors.append("Notification message is required")

        segments = await self.resolver.load_target_segments(campaign.merchant_id, campaign.target_segment_ids)
        estimated = 0
        if not segments:
            errors.append("Campaign has no active target segment")
        else:
            estimated = await self.resolver.estimate_audience(campaign.merchant_id, segments)
            if estimated == 0:
                errors.append("Target audience has no eligible subscribers")

        if 0 < estimated < self.config.min_reach_threshold:
            warnings.append(
                f"Audience of {estimated} is below the recommended minimum of {self.config.min_reach_threshold}"
            )
        if campaign.status == CampaignStatus.FAILED:
            warnings.append("Previous send attempt failed; retrying skips already delivered recipients")
        if estimated > self.config.large_audience_threshold:
            warnings.append(f"Audience of {estimated} may take several minutes to send")
        if estimated > self.config.split_audience_threshold:
            warnings.append("Audience is very large; consider splitting into several campaigns")

        return CampaignValidationResult(
            campaign_id=campaign.campaign_id,
            valid=not errors,
            errors=errors,
            warnings=warnings,
            estimated_subscribers=estimated,
        )

    # ====================
    # Sending
    # ====================

    async def send_campaign(self, campaign_id: str, merchant_id: Optional[str] = None) -> SendResult:
        """
        Send a draft, scheduled or failed campaign.

        Raises:
            ValidationError: campaign is not ready to send
            StateConflictError: campaign is not in a sendable status, or
                another caller moved it to SENDING first
            DispatchFailedError: the send could not start (status unchanged),
                or was interrupted (status moved to SENT or FAILED)
        """
        campaign = await self._get_campaign(campaign_id, merchant_id)
        if campaign.status not in SEND_FROM:
            raise StateConflictError(
                f"Campaign in status {campaign.status.value} cannot be sent",
                campaign.status,
            )

        validation = await self._validate(campaign)
        if not validation.valid:
            raise ValidationError(
                f"Campaign is not ready to send: {'; '.join(validation.errors)}",
                "campaign",
            )

        return await self._dispatch(campaign, SEND_FROM)

    async def retry_failed_deliveries(self, campaign_id: str, merchant_id: Optional[str] = None) -> SendResult:
        """Re-send a sent campaign to audience members without a delivered outcome"""
        campaign = await self._get_campaign(campaign_id, merchant_id)
        if campaign.status not in RETRY_FROM:
            raise StateConflictError(
                f"Only sent campaigns can retry failed deliveries (status {campaign.status.value})",
                campaign.status,
            )
        return await self._dispatch(campaign, RETRY_FROM)

    async def _dispatch(self, campaign: Campaign, expected: List[CampaignStatus]) -> SendResult:
        started = time.monotonic()
        campaign_id = campaign.campaign_id
        prior_status = campaign.status

        try:
            sending = await self._with_storage_retries(
                self.repository.conditional_update_status, campaign_id, expected, CampaignStatus.SENDING
            )
        except TransientStorageError as e:
            logger.error(f"Could not move campaign {campaign_id} to sending: {e}")
            raise DispatchFailedError(f"Storage unavailable, campaign {campaign_id} was not sent", campaign_id) from e

        if sending is None:
            current = await self.repository.get_campaign(campaign_id)
            raise StateConflictError(
                f"Campaign {campaign_id} is no longer in a sendable status",
                current.status if current else None,
            )

        logger.info(f"Campaign {campaign_id}: {prior_status.value} -> sending")
        if self.event_publisher:
            await self.event_publisher.publish_campaign_sending(sending, prior_status)

        try:
            pending, already_delivered, first_attempts = await self._with_storage_retries(
                self._pending_recipients, sending
            )
        except Exception as e:
            logger.error(f"Audience resolution failed for campaign {campaign_id}: {e}")
            await self._revert(campaign_id, prior_status)
            raise DispatchFailedError(
                f"Audience resolution failed, campaign {campaign_id} reverted to {prior_status.value}",
                campaign_id,
            ) from e

        logger.info(
            f"Campaign {campaign_id}: {len(pending)} recipients to send, "
            f"{already_delivered} already delivered"
        )

        delivered = failed = skipped = 0
        try:
            outcomes = await self._send_batches(sending, pending)
            delivered = sum(o.delivered for o in outcomes)
            failed = sum(o.failed for o in outcomes)
            skipped = sum(o.skipped for o in outcomes)
            errors = [error for o in outcomes for error in o.errors]

            called = [o for o in outcomes if o.transport_called]
            unreachable = bool(called) and all(o.unreachable for o in called)
            final_status = CampaignStatus.FAILED if unreachable and delivered == 0 else CampaignStatus.SENT

            finished = await self._finish(sending, final_status, first_attempts, delivered)
        except StateConflictError:
            raise
        except Exception as e:
            logger.error(f"Dispatch of campaign {campaign_id} aborted: {e}")
            await self._abandon(campaign_id, already_delivered + delivered, failed)
            raise DispatchFailedError(
                f"Dispatch of campaign {campaign_id} was interrupted; re-send to reach remaining recipients",
                campaign_id,
            ) from e

        result = SendResult(
            campaign_id=campaign_id,
            status=final_status,
            audience_size=len(pending),
            sent_count=delivered,
            failed_count=failed,
            skipped_count=skipped,
            errors=errors,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

        if self.event_publisher:
            await self.event_publisher.publish_campaign_finished(finished, result)

        logger.info(
            f"Campaign {campaign_id} finished as {final_status.value}: "
            f"{delivered} delivered, {failed} failed, {skipped} skipped in {result.duration_ms}ms"
        )
        return result

    async def _pending_recipients(self, campaign: Campaign) -> Tuple[List[Recipient], int, int]:
        """
        Union audience minus recipients that already have a delivered outcome.

        Also returns how many were already delivered and how many pending
        recipients have never been attempted; only those count as newly
        targeted in analytics.
        """
        segments = await self.resolver.load_target_segments(campaign.merchant_id, campaign.target_segment_ids)
        audience = await self.resolver.resolve_audience(campaign.merchant_id, segments)
        delivered = await self.repository.get_delivered_subscriber_ids(campaign.campaign_id)
        pending = [r for r in audience if r.subscriber_id not in delivered]
        recorded = await self.repository.get_recorded_subscriber_ids(campaign.campaign_id)
        first_attempts = sum(1 for r in pending if r.subscriber_id not in recorded)
        return pending, len(audience) - len(pending), first_attempts

    async def _send_batches(self, campaign: Campaign, recipients: List[Recipient]) -> List[BatchOutcome]:
        size = self.config.batch_size
        batches = [recipients[i:i + size] for i in range(0, len(recipients), size)]
        semaphore = asyncio.Semaphore(self.config.max_concurrent_batches)
        delay = self.config.batch_delay_ms / 1000

        async def run(index: int, batch: List[Recipient]) -> BatchOutcome:
            async with semaphore:
                if index and delay > 0:
                    await self._sleep(delay)
                return await self._send_batch(campaign, index, batch)

        results = await asyncio.gather(
            *(run(i, batch) for i, batch in enumerate(batches)), return_exceptions=True
        )
        # Every batch settles before an unexpected error is raised
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return list(results)

    async def _send_batch(self, campaign: Campaign, index: int, batch: List[Recipient]) -> BatchOutcome:
        """Deliver one batch; transport failures become per-recipient failures"""
        outcome = BatchOutcome()
        now = self._clock()
        records: List[DeliveryRecord] = []

        targets = [r for r in batch if r.channel_target]
        for recipient in batch:
            if not recipient.channel_target:
                records.append(DeliveryRecord(
                    campaign_id=campaign.campaign_id,
                    subscriber_id=recipient.subscriber_id,
                    status=DeliveryStatus.SKIPPED,
                    reason="no_channel_target",
                    attempted_at=now,
                ))

        reported: Dict[str, TransportOutcome] = {}
        batch_failure: Optional[str] = None
        if targets:
            outcome.transport_called = True
            try:
                results = await asyncio.wait_for(
                    self.transport.send(targets, campaign.payload, campaign.campaign_id),
                    timeout=self.config.batch_timeout_seconds,
                )
                reported = {r.subscriber_id: r for r in results}
            except asyncio.TimeoutError:
                batch_failure = "batch_timeout"
                outcome.unreachable = True
            except TransportError as e:
                batch_failure = e.reason
                outcome.unreachable = e.unreachable
            except Exception:
                logger.exception(f"Unexpected transport error in batch {index} of {campaign.campaign_id}")
                batch_failure = "transport_error"

            if batch_failure:
                logger.warning(f"Campaign {campaign.campaign_id} batch {index} failed: {batch_failure}")
                outcome.errors.append(f"batch {index}: {batch_failure}")

        invalid_tokens: List[str] = []
        for recipient in targets:
            if batch_failure:
                status, reason = DeliveryStatus.FAILED, batch_failure
            elif recipient.subscriber_id in reported:
                result = reported[recipient.subscriber_id]
                status, reason = result.status, result.reason
            else:
                status, reason = DeliveryStatus.FAILED, "missing_outcome"

            if status == DeliveryStatus.FAILED and reason and reason.lower() in INVALID_TOKEN_REASONS:
                invalid_tokens.append(recipient.subscriber_id)

            records.append(DeliveryRecord(
                campaign_id=campaign.campaign_id,
                subscriber_id=recipient.subscriber_id,
                status=status,
                reason=reason,
                attempted_at=now,
                delivered_at=now if status == DeliveryStatus.DELIVERED else None,
            ))

        for record in records:
            if record.status == DeliveryStatus.DELIVERED:
                outcome.delivered += 1
            elif record.status == DeliveryStatus.SKIPPED:
                outcome.skipped += 1
            else:
                outcome.failed += 1

        try:
            await self._with_storage_retries(self.repository.upsert_delivery_records, records)
            if invalid_tokens:
                deactivated = await self._with_storage_retries(
                    self.repository.deactivate_subscribers, campaign.merchant_id, invalid_tokens
                )
                logger.info(f"Deactivated {deactivated} subscribers with invalid push tokens")
        except TransientStorageError as e:
            logger.error(f"Could not record outcomes of batch {index} for {campaign.campaign_id}: {e}")
            outcome.errors.append(f"batch {index}: outcomes not recorded")

        logger.debug(
            f"Campaign {campaign.campaign_id} batch {index}: "
            f"{outcome.delivered} delivered, {outcome.failed} failed, {outcome.skipped} skipped"
        )
        return outcome

    async def _finish(
        self,
        campaign: Campaign,
        final_status: CampaignStatus,
        targeted: int,
        reached: int,
    ) -> Campaign:
        campaign_id = campaign.campaign_id
        counts = await self._with_storage_retries(self.repository.get_delivery_counts, campaign_id)
        updates = {
            "sent_count": counts.get("delivered", 0),
            "failed_count": counts.get("failed", 0),
        }
        if final_status == CampaignStatus.SENT:
            updates["sent_at"] = self._clock()
        finished = await self._with_storage_retries(
            self.repository.conditional_update_status,
            campaign_id,
            [CampaignStatus.SENDING],
            final_status,
            updates,
        )

        if finished is None:
            raise StateConflictError(f"Campaign {campaign_id} left sending during dispatch")

        try:
            await self.aggregator.record_dispatch_outcome(campaign_id, targeted=targeted, reached=reached)
        except Exception as e:
            logger.error(f"Analytics for campaign {campaign_id} were not updated: {e}")

        return finished

    async def _abandon(self, campaign_id: str, delivered: int, failed: int) -> None:
        """Move an interrupted campaign out of SENDING: SENT if anyone was reached, else FAILED"""
        updates = {"sent_count": delivered, "failed_count": failed}
        try:
            counts = await self._with_storage_retries(self.repository.get_delivery_counts, campaign_id)
            updates = {
                "sent_count": counts.get("delivered", 0),
                "failed_count": counts.get("failed", 0),
            }
        except Exception as e:
            logger.warning(f"Using in-flight counts for campaign {campaign_id}: {e}")

        final_status = CampaignStatus.SENT if updates["sent_count"] else CampaignStatus.FAILED
        if final_status == CampaignStatus.SENT:
            updates["sent_at"] = self._clock()
        try:
            moved = await self._with_storage_retries(
                self.repository.conditional_update_status,
                campaign_id,
                [CampaignStatus.SENDING],
                final_status,
                updates,
            )
        except Exception as e:
            logger.error(f"Campaign {campaign_id} is still sending after an interrupted dispatch: {e}")
            return
        if moved is not None:
            logger.info(f"Campaign {campaign_id}: sending -> {final_status.value} (interrupted)")

    async def _revert(self, campaign_id: str, prior_status: CampaignStatus) -> None:
        try:
            reverted = await self._with_storage_retries(
                self.repository.conditional_update_status,
                campaign_id,
                [CampaignStatus.SENDING],
                prior_status,
            )
        except TransientStorageError as e:
            logger.error(f"Campaign {campaign_id} could not be reverted to {prior_status.value}: {e}")
            return
        if reverted is not None:
            logger.info(f"Campaign {campaign_id}: sending -> {prior_status.value} (reverted)")

    # ====================
    # Statistics
    # ====================

    async def get_campaign_send_stats(self, campaign_id: str, merchant_id: Optional[str] = None) -> SendStats:
        """Delivery statistics from the stored outcomes"""
        campaign = await self._get_campaign(campaign_id, merchant_id)
        counts = await self.repository.get_delivery_counts(campaign.campaign_id)

        delivered = counts.get("delivered", 0)
        failed = counts.get("failed", 0)
        clicked = counts.get("clicked", 0)
        total_sent = delivered + failed

        return SendStats(
            campaign_id=campaign.campaign_id,
            total_sent=total_sent,
            total_delivered=delivered,
            total_clicked=clicked,
            total_failed=failed,
            total_skipped=counts.get("skipped", 0),
            delivery_rate=percentage(delivered, total_sent),
            click_rate=percentage(clicked, total_sent),
        )

    # ====================
    # Helpers
    # ====================

    async def _get_campaign(self, campaign_id: str, merchant_id: Optional[str]) -> Campaign:
        campaign = await self.repository.get_campaign(campaign_id, merchant_id)
        if campaign is None:
            raise NotFoundError(f"Campaign not found: {campaign_id}", "campaign")
        return campaign

    async def _with_storage_retries(self, operation, *args):
        """Run a storage call, retrying TransientStorageError with exponential backoff"""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.max_retries + 1),
            wait=wait_exponential(
                multiplier=self.config.retry_wait_min,
                min=self.config.retry_wait_min,
                max=self.config.retry_wait_max,
            ),
            retry=retry_if_exception_type(TransientStorageError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return await retrying(operation, *args)


__all__ = [
    "DispatchEngine",
    "BatchOutcome",
    "SEND_FROM",
    "RETRY_FROM",
    "INVALID_TOKEN_REASONS",
]
