"""
liqguard - Liquidation Safety Engine

Discovers and closes undercollateralized or expired loans across redundant
liquidator workers, halts liquidation when realized losses spike, and
tracks per-asset concentration risk for a token-collateralized lending
protocol.
"""

__version__ = "1.0.0"
__author__ = "liqguard"

from .config import get_config
from .core import Application, get_application, CircuitBreaker, LiquidationTracker

__all__ = [
    "__version__",
    "get_config",
    "Application",
    "get_application",
    "CircuitBreaker",
    "LiquidationTracker",
]
