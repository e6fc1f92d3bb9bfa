#!/usr/bin/env python3
"""Dispatch, segmentation and rate limit configuration

Tunables for the segment compiler, the campaign dispatch engine and the
merchant-facing API rate limiter.
"""
import os
from dataclasses import dataclass, field
from typing import Dict

def _bool(val: str) -> bool:
    return val.lower() == "true"

def _int(val: str, default: int) -> int:
    try:
        return int(val) if val else default
    except ValueError:
        return default

def _float(val: str, default: float) -> float:
    try:
        return float(val) if val else default
    except ValueError:
        return default


@dataclass
class DispatchConfig:
    """Campaign dispatch and segment compilation settings"""

    # ===========================================
    # Batching
    # ===========================================
    batch_size: int = 500
    batch_delay_ms: int = 100
    batch_timeout_seconds: float = 30.0
    max_concurrent_batches: int = 1

    # ===========================================
    # Storage retries after the first attempt (transition + audience resolution)
    # ===========================================
    max_retries: int = 3
    retry_wait_min: float = 0.5
    retry_wait_max: float = 5.0

    # ===========================================
    # Validation thresholds
    # ===========================================
    min_reach_threshold: int = 10
    large_audience_threshold: int = 10000
    split_audience_threshold: int = 50000

    # ===========================================
    # Segment compilation limits
    # ===========================================
    segment_max_depth: int = 5
    segment_max_conditions: int = 50
    segment_estimate_timeout: float = 5.0

    @classmethod
    def from_env(cls) -> 'DispatchConfig':
        """Load dispatch config from environment"""
        return cls(
            batch_size=max(1, _int(os.getenv("DISPATCH_BATCH_SIZE", "500"), 500)),
            batch_delay_ms=_int(os.getenv("DISPATCH_BATCH_DELAY_MS", "100"), 100),
            batch_timeout_seconds=_float(os.getenv("DISPATCH_BATCH_TIMEOUT", "30"), 30.0),
            max_concurrent_batches=max(1, _int(os.getenv("DISPATCH_MAX_CONCURRENT_BATCHES", "1"), 1)),
            max_retries=max(0, _int(os.getenv("DISPATCH_MAX_RETRIES", "3"), 3)),
            retry_wait_min=_float(os.getenv("DISPATCH_RETRY_WAIT_MIN", "0.5"), 0.5),
            retry_wait_max=_float(os.getenv("DISPATCH_RETRY_WAIT_MAX", "5"), 5.0),
            min_reach_threshold=_int(os.getenv("MIN_REACH_THRESHOLD", "10"), 10),
            large_audience_threshold=_int(os.getenv("LARGE_AUDIENCE_THRESHOLD", "10000"), 10000),
            split_audience_threshold=_int(os.getenv("SPLIT_AUDIENCE_THRESHOLD", "50000"), 50000),
            segment_max_depth=_int(os.getenv("SEGMENT_MAX_DEPTH", "5"), 5),
            segment_max_conditions=_int(os.getenv("SEGMENT_MAX_CONDITIONS", "50"), 50),
            segment_estimate_timeout=_float(os.getenv("SEGMENT_ESTIMATE_TIMEOUT", "5"), 5.0),
        )


def _default_limits() -> Dict[str, int]:
    return {
        "get": 60,
        "create": 10,
        "update": 20,
        "delete": 5,
        "estimate": 30,
        "send": 5,
    }


@dataclass
class RateLimitConfig:
    """Per-actor request limits for merchant-facing endpoints"""
    enabled: bool = True
    window_seconds: float = 60.0
    sweep_interval_seconds: float = 60.0
    limits: Dict[str, int] = field(default_factory=_default_limits)

    @classmethod
    def from_env(cls) -> 'RateLimitConfig':
        """Load rate limit config from environment"""
        limits = _default_limits()
        for action in list(limits):
            limits[action] = _int(
                os.getenv(f"RATE_LIMIT_{action.upper()}", str(limits[action])),
                limits[action],
            )
        return cls(
            enabled=_bool(os.getenv("RATE_LIMIT_ENABLED", "true")),
            window_seconds=_float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"), 60.0),
            sweep_interval_seconds=_float(os.getenv("RATE_LIMIT_SWEEP_SECONDS", "60"), 60.0),
            limits=limits,
        )
