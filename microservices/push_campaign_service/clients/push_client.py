"""
Push Transport Client

Client for handing notification batches to the push delivery gateway
(web push / FCM). The gateway reports one outcome per message.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from core.config import ServiceConfig

from ..models import DeliveryStatus, PushPayload, Recipient, TransportOutcome
from ..protocols import TransportError

logger = logging.getLogger(__name__)


class PushTransportClient:
    """Client for the push delivery gateway"""

    def __init__(self, config: Optional[ServiceConfig] = None):
        if config is None:
            config = ServiceConfig.from_env()

        self.base_url = config.push_transport_url.rstrip("/")
        self.timeout = config.push_transport_timeout

    async def send(
        self,
        recipients: List[Recipient],
        payload: PushPayload,
        campaign_id: Optional[str] = None,
    ) -> List[TransportOutcome]:
        """
        Deliver one batch of notifications.

        Args:
            recipients: Batch members with their channel targets
            payload: Notification content
            campaign_id: Campaign the batch belongs to

        Returns:
            One outcome per recipient, in recipient order

        Raises:
            TransportError: unreachable=True when the gateway could not be reached
        """
        if not recipients:
            return []

        request_data = {
            "campaign_id": campaign_id,
            "payload": payload.model_dump(mode="json"),
            "messages": [
                {
                    "subscriber_id": r.subscriber_id,
                    "target": r.channel_target,
                    "channel": r.channel.value,
                }
                for r in recipients
            ],
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/api/v1/push/batch",
                    json=request_data,
                )
                response.raise_for_status()
                data = response.json()

        except (httpx.ConnectError, httpx.TimeoutException) as e:
            logger.error(f"Push transport unreachable: {e}")
            raise TransportError(f"Push transport unreachable: {e}", reason="transport_unreachable", unreachable=True)

        except httpx.HTTPStatusError as e:
            logger.error(f"Error sending push batch: {e.response.text}")
            raise TransportError(
                f"Push transport returned {e.response.status_code}",
                reason=f"transport_http_{e.response.status_code}",
            )

        except httpx.HTTPError as e:
            logger.error(f"Error sending push batch: {e}")
            raise TransportError(f"Push transport error: {e}")

        return self._parse_outcomes(recipients, data)

    @staticmethod
    def _parse_outcomes(recipients: List[Recipient], data: Dict[str, Any]) -> List[TransportOutcome]:
        reported: Dict[str, Dict[str, Any]] = {}
        for item in (data or {}).get("results", []):
            if isinstance(item, dict) and item.get("subscriber_id"):
                reported[item["subscriber_id"]] = item

        outcomes = []
        for recipient in recipients:
            item = reported.get(recipient.subscriber_id)
            if item is None:
                outcomes.append(TransportOutcome(
                    subscriber_id=recipient.subscriber_id,
                    status=DeliveryStatus.FAILED,
                    reason="missing_outcome",
                ))
                continue
            try:
                status = DeliveryStatus(item.get("status"))
            except ValueError:
                status = DeliveryStatus.FAILED
            outcomes.append(TransportOutcome(
                subscriber_id=recipient.subscriber_id,
                status=status,
                reason=item.get("reason"),
            ))
        return outcomes

    async def health_check(self) -> bool:
        """Check push transport health"""
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                response = await client.get(f"{self.base_url}/health")
                return response.status_code == 200
        except Exception:
            return False
