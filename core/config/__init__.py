#!/usr/bin/env python3
"""Modular configuration system for the push campaign service

Configuration hierarchy:
- infra_config: Infrastructure services (PostgreSQL, NATS)
- service_config: Peer services (push transport)
- dispatch_config: Dispatch batching, segment limits, rate limits
- logging_config: Logging configuration
"""
import os
from dotenv import load_dotenv
from .logging_config import LoggingConfig
from .infra_config import InfraConfig
from .service_config import ServiceConfig
from .dispatch_config import DispatchConfig, RateLimitConfig
from .push_campaign_config import PushCampaignConfig

# Load environment file based on ENV
env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
env_files = {
    "development": "deployment/environments/dev.env",
    "dev": "deployment/environments/dev.env",
    "testing": "deployment/environments/test.env",
    "test": "deployment/environments/test.env",
    "staging": "deployment/environments/staging.env",
    "production": "deployment/environments/production.env",
}
env_file = env_files.get(env, "deployment/environments/dev.env")
load_dotenv(env_file, override=False)

# Create global settings instance
settings = PushCampaignConfig.from_env()

def get_settings() -> PushCampaignConfig:
    """Get global settings instance"""
    return settings

def reload_settings() -> PushCampaignConfig:
    """Reload settings from environment"""
    global settings
    settings = PushCampaignConfig.from_env()
    return settings

__all__ = [
    # Main config
    'PushCampaignConfig',
    'get_settings',
    'reload_settings',
    'settings',
    # Sub-configs
    'LoggingConfig',
    'InfraConfig',
    'ServiceConfig',
    'DispatchConfig',
    'RateLimitConfig',
]
