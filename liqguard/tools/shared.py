"""
Shared types and utilities for the tools layer.

This module provides:
- ToolResult: Standard return type for all tools
- Lazy access to the Application singleton

Tools never raise: every failure comes back as ToolResult(success=False).
"""

from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any


@dataclass
class ToolResult:
    """
    Standard return type for all tools.

    Attributes:
        success: Whether the operation succeeded
        message: Human-readable success/info message
        asset_id: Collateral asset (when applicable)
        data: Structured data payload
        error: Error message if success=False
    """
    success: bool
    message: str = ""
    asset_id: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


class ApplicationUnavailable(Exception):
    """The Application singleton could not be initialized."""


def _get_application():
    """
    Get the initialized Application singleton (lazy import).

    Raises:
        ApplicationUnavailable: If initialization fails
    """
    from ..core.application import get_application

    app = get_application()
    if not app.is_initialized and not app.initialize():
        raise ApplicationUnavailable(app.last_error or "Application initialization failed")
    return app
