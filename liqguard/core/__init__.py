"""
Core liquidation safety modules.

Shared types and protocols, per-loan locking, the loss circuit breaker,
liquidation result tracking, and the application lifecycle.
"""

from .errors import (
    LiquidatorError,
    ConfigurationError,
    SignerUnavailableError,
    CircuitBreakerTrippedError,
)
from .interfaces import (
    Loan,
    LoanStatus,
    LiquidationRecord,
    SettlementResult,
    LockHandle,
    SecurityEvent,
    ExternalAdapters,
)
from .lock_store import InMemoryLockStore, RedisLockStore, loan_lock_key
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerStatus,
    BreakerMetrics,
    InMemoryBreakerStateStore,
    FileBreakerStateStore,
)
from .liquidation_tracker import LiquidationTracker, TokenLiquidationStats, compute_loss_bps
from .application import Application, get_application, reset_application

__all__ = [
    # Errors
    "LiquidatorError",
    "ConfigurationError",
    "SignerUnavailableError",
    "CircuitBreakerTrippedError",
    # Types
    "Loan",
    "LoanStatus",
    "LiquidationRecord",
    "SettlementResult",
    "LockHandle",
    "SecurityEvent",
    "ExternalAdapters",
    # Locks
    "InMemoryLockStore",
    "RedisLockStore",
    "loan_lock_key",
    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerStatus",
    "BreakerMetrics",
    "InMemoryBreakerStateStore",
    "FileBreakerStateStore",
    # Tracking
    "LiquidationTracker",
    "TokenLiquidationStats",
    "compute_loss_bps",
    # Application Lifecycle
    "Application",
    "get_application",
    "reset_application",
]
