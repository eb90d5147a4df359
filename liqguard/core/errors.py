"""
Exception hierarchy for the liquidation engine.

Contention is not an error (a held lock is a silent skip) and has no
exception type here. Settlement and liquidity failures are reported as
results, not exceptions.
"""


class LiquidatorError(Exception):
    """Base class for liquidation engine errors."""


class ConfigurationError(LiquidatorError):
    """Instance is misconfigured; liquidations cannot proceed on it."""


class SignerUnavailableError(ConfigurationError):
    """No signing identity could be resolved for settlement."""


class CircuitBreakerTrippedError(LiquidatorError):
    """Raised by guards when the circuit breaker is latched."""

    def __init__(self, reason: str | None):
        self.reason = reason
        super().__init__(f"Circuit breaker tripped: {reason or 'unknown reason'}")
