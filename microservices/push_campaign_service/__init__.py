"""
Push Campaign Service

Merchant push notification marketing microservice providing:
- Audience segments built from nested attribute conditions
- Campaign lifecycle management (create, schedule, pause, cancel)
- Batched, idempotent dispatch through the push transport
- Daily campaign analytics and merchant overview rollups

Port: 8260
"""

__version__ = "1.0.0"
__service__ = "push_campaign_service"
