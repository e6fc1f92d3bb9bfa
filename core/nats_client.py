"""
NATS Event Bus

Thin async wrapper over nats-py used by service event publishers.
Events go to JetStream when the service stream can be ensured, otherwise
to core NATS subjects.
"""

import asyncio
import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import nats
from nats.aio.client import Client as NATS
from nats.js import JetStreamContext

from core.config import InfraConfig

logger = logging.getLogger(__name__)


class DecimalEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal and datetime types"""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


class NATSEventBus:
    """
    NATS event bus for a single service.

    Subjects are the event type values (e.g. "push_campaign.sent").
    """

    def __init__(
        self,
        service_name: str,
        config: Optional[InfraConfig] = None,
        stream_name: Optional[str] = None,
        subjects: Optional[List[str]] = None,
    ):
        """
        Initialize NATS Event Bus.

        Args:
            service_name: Name of the service (used as the connection name)
            config: Infrastructure config (defaults to environment)
            stream_name: JetStream stream to publish into
            subjects: Subject patterns captured by the stream
        """
        self.service_name = service_name
        self.config = config or InfraConfig.from_env()
        self.servers = self.config.nats_servers
        self.stream_name = stream_name
        self.subjects = subjects or []

        self._nc: Optional[NATS] = None
        self._js: Optional[JetStreamContext] = None
        self._stream_ready = False

        logger.info(f"NATS EventBus initialized: {self.servers}")

    async def connect(self, timeout: float = 5.0):
        """Connect to NATS and ensure the service stream"""
        try:
            self._nc = await asyncio.wait_for(
                nats.connect(
                    servers=[self.servers],
                    name=self.service_name,
                    max_reconnect_attempts=-1,
                ),
                timeout=timeout,
            )
        except Exception as e:
            logger.error(f"Failed to connect to NATS at {self.servers}: {e}")
            raise

        self._js = self._nc.jetstream()
        if self.stream_name and self.subjects:
            try:
                await self._js.add_stream(name=self.stream_name, subjects=self.subjects)
                self._stream_ready = True
            except Exception as e:
                logger.debug(f"Stream setup note for {self.stream_name}: {e}")
                self._stream_ready = False

        logger.info(f"Connected to NATS as {self.service_name} (jetstream={self._stream_ready})")

    async def publish(self, subject: str, event: Dict[str, Any]) -> bool:
        """Publish an event dict on a subject"""
        if not self.is_connected:
            logger.error("Not connected to NATS")
            return False

        data = json.dumps(event, cls=DecimalEncoder).encode()
        try:
            if self._stream_ready:
                ack = await self._js.publish(subject, data, stream=self.stream_name)
                logger.debug(f"Published {subject} to stream {ack.stream}, seq={ack.seq}")
            else:
                await self._nc.publish(subject, data)
                logger.debug(f"Published {subject}")
            return True
        except Exception as e:
            logger.error(f"Failed to publish {subject}: {e}")
            return False

    async def close(self):
        """Drain and close the NATS connection"""
        if self._nc is not None:
            try:
                await self._nc.drain()
            except Exception as e:
                logger.warning(f"NATS drain failed: {e}")
            self._nc = None
            self._js = None
            self._stream_ready = False
        logger.info("Disconnected from NATS")

    @property
    def is_connected(self) -> bool:
        """Check if connected to NATS"""
        return self._nc is not None and self._nc.is_connected
