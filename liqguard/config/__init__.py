"""
Configuration management.
"""

from .config import (
    Config,
    get_config,
    load_policy_defaults,
    LiquidatorConfig,
    CircuitBreakerConfig,
    ExposureConfig,
    HealthConfig,
    TrackerConfig,
    StorageConfig,
    LogConfig,
    AdapterConfig,
)

from .constants import (
    LAMPORTS_PER_SOL,
    BPS_DENOMINATOR,
    SecurityEventType,
    lamports_to_sol,
    sol_to_lamports,
)

__all__ = [
    # Config classes
    "Config",
    "get_config",
    "load_policy_defaults",
    "LiquidatorConfig",
    "CircuitBreakerConfig",
    "ExposureConfig",
    "HealthConfig",
    "TrackerConfig",
    "StorageConfig",
    "LogConfig",
    "AdapterConfig",
    # Units / vocabularies
    "LAMPORTS_PER_SOL",
    "BPS_DENOMINATOR",
    "SecurityEventType",
    "lamports_to_sol",
    "sol_to_lamports",
]
