"""
Utility modules.
"""

from .logger import get_logger, setup_logger, LiquidatorLogger
from .datetime_utils import (
    Clock,
    SystemClock,
    ManualClock,
    ensure_utc,
    datetime_to_epoch_ms,
    epoch_ms_to_datetime,
    format_age,
)
from .log_context import (
    LogContext,
    get_log_context,
    log_context_scope,
    new_cycle_context,
    loan_context,
)

__all__ = [
    # Logger
    "get_logger",
    "setup_logger",
    "LiquidatorLogger",
    # Clocks
    "Clock",
    "SystemClock",
    "ManualClock",
    "ensure_utc",
    "datetime_to_epoch_ms",
    "epoch_ms_to_datetime",
    "format_age",
    # Log context
    "LogContext",
    "get_log_context",
    "log_context_scope",
    "new_cycle_context",
    "loan_context",
]
