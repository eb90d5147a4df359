"""
Risk tools: circuit breaker, exposure and liquidator health.

The breaker reset is the only state-changing tool here; it requires an
operator id and is audited as a HIGH security event.
"""

from typing import Optional

from .shared import ToolResult, _get_application


# ==============================================================================
# Circuit Breaker
# ==============================================================================

def get_circuit_breaker_status_tool() -> ToolResult:
    """
    Get circuit breaker status (evaluates the loss windows first).

    Returns:
        ToolResult with data containing tripped, reason, metrics and limits
    """
    try:
        app = _get_application()
        status = app.breaker.get_status()
        message = f"TRIPPED: {status.reason}" if status.tripped else "Armed"
        return ToolResult(
            success=True,
            message=message,
            data=status.to_dict(),
        )
    except Exception as e:
        return ToolResult(
            success=False,
            error=f"Failed to get circuit breaker status: {str(e)}",
        )


def reset_circuit_breaker_tool(actor_id: Optional[str] = None) -> ToolResult:
    """
    Re-arm the circuit breaker.

    Loss history is untouched: if the windows still exceed a limit the
    returned status shows the breaker tripped again.

    Args:
        actor_id: Operator performing the reset (required)

    Returns:
        ToolResult with was_tripped and the post-reset status
    """
    if not actor_id or not actor_id.strip():
        return ToolResult(success=False, error="actor_id is required to reset the circuit breaker")

    try:
        app = _get_application()
        was_tripped = app.breaker.reset(actor_id)
        status = app.breaker.get_status()
        if status.tripped:
            message = f"Reset by {actor_id.strip()}, but re-tripped: {status.reason}"
        else:
            message = f"Circuit breaker reset by {actor_id.strip()}"
        return ToolResult(
            success=True,
            message=message,
            data={"was_tripped": was_tripped, "status": status.to_dict()},
        )
    except Exception as e:
        return ToolResult(
            success=False,
            error=f"Failed to reset circuit breaker: {str(e)}",
        )


# ==============================================================================
# Exposure
# ==============================================================================

def get_all_exposures_tool() -> ToolResult:
    """
    Get exposure for every asset with active loans, highest first.

    Returns:
        ToolResult with data containing exposures and count
    """
    try:
        app = _get_application()
        exposures = app.exposure.get_all_exposures()
        return ToolResult(
            success=True,
            message=f"{len(exposures)} assets with active loans",
            data={
                "exposures": [e.to_dict() for e in exposures],
                "count": len(exposures),
            },
        )
    except Exception as e:
        return ToolResult(
            success=False,
            error=f"Failed to get exposures: {str(e)}",
        )


def get_token_exposure_tool(asset_id: Optional[str] = None) -> ToolResult:
    """
    Get exposure for one asset.

    Args:
        asset_id: Collateral asset identifier (required)
    """
    if not asset_id:
        return ToolResult(success=False, error="asset_id is required")

    try:
        app = _get_application()
        exposure = app.exposure.get_token_exposure(asset_id)
        if exposure.exposure_bps is None:
            message = f"{asset_id}: exposure unknown ({exposure.liquidity_error})"
        else:
            message = f"{asset_id}: {exposure.exposure_bps} bps ({exposure.warning_level.value})"
        return ToolResult(
            success=True,
            message=message,
            asset_id=asset_id,
            data=exposure.to_dict(),
        )
    except Exception as e:
        return ToolResult(
            success=False,
            asset_id=asset_id,
            error=f"Failed to get exposure: {str(e)}",
        )


def get_tokens_with_warnings_tool() -> ToolResult:
    """Get assets at WATCH level or above."""
    try:
        app = _get_application()
        exposures = app.exposure.get_tokens_with_warnings()
        return ToolResult(
            success=True,
            message=f"{len(exposures)} assets with exposure warnings",
            data={
                "exposures": [e.to_dict() for e in exposures],
                "count": len(exposures),
            },
        )
    except Exception as e:
        return ToolResult(
            success=False,
            error=f"Failed to get exposure warnings: {str(e)}",
        )


def refresh_all_exposures_tool() -> ToolResult:
    """Force recomputation of every asset's exposure."""
    try:
        app = _get_application()
        exposures = app.exposure.refresh_all()
        return ToolResult(
            success=True,
            message=f"Refreshed {len(exposures)} exposures",
            data={
                "exposures": [e.to_dict() for e in exposures],
                "count": len(exposures),
            },
        )
    except Exception as e:
        return ToolResult(
            success=False,
            error=f"Failed to refresh exposures: {str(e)}",
        )


# ==============================================================================
# Health
# ==============================================================================

def get_liquidator_health_tool() -> ToolResult:
    """
    Get fleet-wide liquidator health.

    Returns:
        ToolResult with data containing healthy, per-instance snapshots and
        24h liquidation totals
    """
    try:
        app = _get_application()
        report = app.health.get_liquidator_health()
        state = "HEALTHY" if report.healthy else "UNHEALTHY"
        return ToolResult(
            success=True,
            message=f"{state}: {report.healthy_instances}/{len(report.instances)} instances healthy",
            data=report.to_dict(),
        )
    except Exception as e:
        return ToolResult(
            success=False,
            error=f"Failed to get liquidator health: {str(e)}",
        )
