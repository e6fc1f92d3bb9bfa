"""
Unit Test Fixtures for Push Campaign Service

Pure logic only: no repository, transport or event bus.
"""

import os
import sys
from datetime import datetime, timezone

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from microservices.push_campaign_service.attribute_registry import AttributeRegistry
from microservices.push_campaign_service.query_compiler import QueryCompiler
from tests.contracts.push_campaign.data_contract import (
    AttributeType,
    PushCampaignTestDataFactory,
)

FIXED_NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def factory():
    return PushCampaignTestDataFactory()


@pytest.fixture
def merchant_id(factory):
    return factory.make_merchant_id()


@pytest.fixture
def registry(factory, merchant_id):
    """Built-ins plus category, number, boolean, list and date custom attributes"""
    return AttributeRegistry(merchant_id, [
        factory.make_custom_attribute(merchant_id, "loyaltyTier"),
        factory.make_custom_attribute(merchant_id, "points", AttributeType.NUMBER),
        factory.make_custom_attribute(merchant_id, "vip", AttributeType.BOOLEAN),
        factory.make_custom_attribute(merchant_id, "interests", AttributeType.MULTIPLE_CHOICE),
        factory.make_custom_attribute(merchant_id, "renewalDate", AttributeType.DATE),
    ])


@pytest.fixture
def compiler():
    return QueryCompiler(max_depth=5, max_conditions=50, clock=lambda: FIXED_NOW)
