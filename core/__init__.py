#!/usr/bin/env python3
"""
Core Module for the Push Campaign Service

Shared infrastructure components used by the microservices in this repository.

COMPONENTS:
    - config/: dataclass configuration loaded from the environment (python-dotenv)
    - postgres_client.py: asyncpg pool wrapper with query/query_row/execute
    - nats_client.py: NATS event bus used by event publishers

USAGE:
    from core.config import get_settings
    from core.postgres_client import get_postgres_client

    settings = get_settings()
    db = await get_postgres_client(settings.service_name, settings.infrastructure)
"""

__version__ = "1.0.0"
