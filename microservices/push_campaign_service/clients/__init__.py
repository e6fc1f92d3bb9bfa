"""
Push Campaign Service Clients

Clients for calling external collaborators.
"""

from .push_client import PushTransportClient

__all__ = [
    "PushTransportClient",
]
