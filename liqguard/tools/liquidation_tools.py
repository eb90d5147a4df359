"""
Liquidation tools: cycle execution and liquidation history.

Read-side tools keep working while the circuit breaker is tripped.
"""

from typing import Optional

from .shared import ToolResult, _get_application
from ..config.constants import lamports_to_sol


def run_liquidation_cycle_tool() -> ToolResult:
    """
    Run one liquidation cycle on this instance.

    Returns:
        ToolResult with the CycleResult counters. success=False only when the
        cycle itself raised; a blocked cycle is a successful call.
    """
    try:
        app = _get_application()
        result = app.coordinator.run_cycle()

        if result.blocked:
            message = f"Cycle blocked by circuit breaker ({result.liquidated} liquidated before block)"
        else:
            message = (
                f"Checked {result.total_checked}, liquidated {result.liquidated}, "
                f"errors {result.errors}, locked {result.skipped_locked}"
            )
        return ToolResult(
            success=True,
            message=message,
            data=result.to_dict(),
        )
    except Exception as e:
        return ToolResult(
            success=False,
            error=f"Liquidation cycle failed: {str(e)}",
        )


def get_recent_liquidations_tool(limit: int = 20) -> ToolResult:
    """
    Get the most recent liquidations, newest first.

    Args:
        limit: Maximum number of records (default 20)

    Returns:
        ToolResult with data containing:
            - liquidations: list of record dicts
            - count: number returned
    """
    if limit <= 0:
        return ToolResult(success=False, error=f"limit must be positive, got {limit}")

    try:
        app = _get_application()
        records = app.tracker.get_recent_liquidations(limit)
        return ToolResult(
            success=True,
            message=f"{len(records)} recent liquidations",
            data={
                "liquidations": [r.to_dict() for r in records],
                "count": len(records),
            },
        )
    except Exception as e:
        return ToolResult(
            success=False,
            error=f"Failed to get recent liquidations: {str(e)}",
        )


def get_liquidations_with_losses_tool() -> ToolResult:
    """
    Get every retained liquidation that realized a loss.

    Returns:
        ToolResult with data containing liquidations, count and total loss
    """
    try:
        app = _get_application()
        records = app.tracker.get_liquidations_with_losses()
        total_loss = sum(r.loss_lamports for r in records)
        return ToolResult(
            success=True,
            message=f"{len(records)} liquidations with losses ({lamports_to_sol(total_loss):.4f} SOL)",
            data={
                "liquidations": [r.to_dict() for r in records],
                "count": len(records),
                "total_loss_lamports": total_loss,
            },
        )
    except Exception as e:
        return ToolResult(
            success=False,
            error=f"Failed to get liquidations with losses: {str(e)}",
        )


def get_token_liquidation_stats_tool(asset_id: Optional[str] = None) -> ToolResult:
    """
    Get liquidation statistics for one collateral asset.

    Args:
        asset_id: Collateral asset identifier (required)

    Returns:
        ToolResult with TokenLiquidationStats as data
    """
    if not asset_id:
        return ToolResult(success=False, error="asset_id is required")

    try:
        app = _get_application()
        stats = app.tracker.get_token_liquidation_stats(asset_id)
        return ToolResult(
            success=True,
            message=(
                f"{asset_id}: {stats.total_liquidations} liquidations, "
                f"avg loss {stats.avg_loss_bps / 100:.2f}%"
            ),
            asset_id=asset_id,
            data=stats.to_dict(),
        )
    except Exception as e:
        return ToolResult(
            success=False,
            asset_id=asset_id,
            error=f"Failed to get liquidation stats: {str(e)}",
        )
