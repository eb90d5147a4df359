"""
Tools layer for the liquidation engine.

Callable entry points used by the CLI (liqguard_cli.py) and by any
operator surface built on top. Every tool returns a ToolResult and never
raises.

Modules:
- shared.py: ToolResult type and Application access
- liquidation_tools.py: Run a cycle, liquidation history and per-asset stats
- risk_tools.py: Circuit breaker, exposure and liquidator health
"""

from .shared import ToolResult
from .liquidation_tools import (
    run_liquidation_cycle_tool,
    get_recent_liquidations_tool,
    get_liquidations_with_losses_tool,
    get_token_liquidation_stats_tool,
)
from .risk_tools import (
    get_circuit_breaker_status_tool,
    reset_circuit_breaker_tool,
    get_all_exposures_tool,
    get_token_exposure_tool,
    get_tokens_with_warnings_tool,
    refresh_all_exposures_tool,
    get_liquidator_health_tool,
)

__all__ = [
    "ToolResult",
    # Liquidation tools
    "run_liquidation_cycle_tool",
    "get_recent_liquidations_tool",
    "get_liquidations_with_losses_tool",
    "get_token_liquidation_stats_tool",
    # Risk tools
    "get_circuit_breaker_status_tool",
    "reset_circuit_breaker_tool",
    "get_all_exposures_tool",
    "get_token_exposure_tool",
    "get_tokens_with_warnings_tool",
    "refresh_all_exposures_tool",
    "get_liquidator_health_tool",
]
