#!/usr/bin/env python3
"""Push campaign service main configuration

Combines all sub-configs for the push campaign service.
"""
import os
from dataclasses import dataclass, field

from .dispatch_config import DispatchConfig, RateLimitConfig
from .infra_config import InfraConfig
from .logging_config import LoggingConfig
from .service_config import ServiceConfig


def _bool(val: str) -> bool:
    return val.lower() == "true"

def _int(val: str, default: int) -> int:
    try:
        return int(val) if val else default
    except ValueError:
        return default


@dataclass
class PushCampaignConfig:
    """Main push campaign configuration with all sub-configs"""

    # Environment
    environment: str = "development"
    debug: bool = False

    # Service settings
    service_name: str = "push_campaign_service"
    host: str = "0.0.0.0"
    port: int = 8260

    # Sub-configurations
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    infrastructure: InfraConfig = field(default_factory=InfraConfig)
    services: ServiceConfig = field(default_factory=ServiceConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)

    @classmethod
    def from_env(cls) -> 'PushCampaignConfig':
        """Load complete configuration from environment"""
        env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
        return cls(
            environment=env,
            debug=_bool(os.getenv("DEBUG", "true" if env == "development" else "false")),
            service_name=os.getenv("SERVICE_NAME", "push_campaign_service"),
            host=os.getenv("HOST", "0.0.0.0"),
            port=_int(os.getenv("SERVICE_PORT", "8260"), 8260),
            logging=LoggingConfig.from_env(),
            infrastructure=InfraConfig.from_env(),
            services=ServiceConfig.from_env(),
            dispatch=DispatchConfig.from_env(),
            rate_limit=RateLimitConfig.from_env(),
        )
