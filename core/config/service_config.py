#!/usr/bin/env python3
"""Service configuration for peer services

External collaborators the push campaign service calls over HTTP.
"""
import os
from dataclasses import dataclass

def _float(val: str, default: float) -> float:
    try:
        return float(val) if val else default
    except ValueError:
        return default


@dataclass
class ServiceConfig:
    """Peer service endpoints"""

    # ===========================================
    # Push transport (web push / FCM gateway)
    # ===========================================
    push_transport_url: str = "http://localhost:8270"
    push_transport_timeout: float = 30.0

    @classmethod
    def from_env(cls) -> 'ServiceConfig':
        """Load service configuration from environment variables"""
        return cls(
            push_transport_url=os.getenv("PUSH_TRANSPORT_URL", "http://localhost:8270"),
            push_transport_timeout=_float(os.getenv("PUSH_TRANSPORT_TIMEOUT", "30"), 30.0),
        )
