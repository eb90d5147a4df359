"""
Risk views: per-asset exposure and liquidator fleet health.

Usage:
    from liqguard.risk import ExposureMonitor, LiquidatorHealthAggregator

    exposures = monitor.get_all_exposures()
    report = aggregator.get_liquidator_health()
"""

from .exposure_monitor import ExposureMonitor, TokenExposure, WarningLevel
from .liquidator_health import (
    LiquidatorMetrics,
    LiquidatorHealthAggregator,
    LiquidatorHealthReport,
    LiquidatorInstanceHealth,
    InMemoryHealthRegistry,
    RedisHealthRegistry,
    default_instance_id,
)

__all__ = [
    "ExposureMonitor",
    "TokenExposure",
    "WarningLevel",
    "LiquidatorMetrics",
    "LiquidatorHealthAggregator",
    "LiquidatorHealthReport",
    "LiquidatorInstanceHealth",
    "InMemoryHealthRegistry",
    "RedisHealthRegistry",
    "default_instance_id",
]
