"""
Centralized constants for the liquidation engine.

Policy thresholds do NOT live here - they are configuration
(see defaults.yml and config.py). This module only holds units,
key formats and fixed vocabularies.
"""

from typing import List


# ==================== Units ====================

LAMPORTS_PER_SOL = 1_000_000_000

# 10,000 bps = 100%
BPS_DENOMINATOR = 10_000


def lamports_to_sol(lamports: int) -> float:
    """Convert lamports to SOL for display and alert payloads."""
    return lamports / LAMPORTS_PER_SOL


def sol_to_lamports(sol: float) -> int:
    """Convert a SOL amount (e.g. from an env var) to integer lamports."""
    return int(round(sol * LAMPORTS_PER_SOL))


# ==================== Lock / Registry Keys ====================

LOAN_LOCK_PREFIX = "liquidation:loan:"
HEALTH_KEY_PREFIX = "liquidator:metrics:"
# Sorted set of every LiquidationRecord, scored by epoch seconds;
# per-asset index at <key>:asset:<asset_id>
LIQUIDATION_LOG_KEY = "liquidator:liquidations"


# ==================== Severities ====================

SEVERITY_LOW = "LOW"
SEVERITY_MEDIUM = "MEDIUM"
SEVERITY_HIGH = "HIGH"
SEVERITY_CRITICAL = "CRITICAL"

SEVERITIES: List[str] = [
    SEVERITY_LOW,
    SEVERITY_MEDIUM,
    SEVERITY_HIGH,
    SEVERITY_CRITICAL,
]


def severity_rank(severity: str) -> int:
    """
    Numeric rank of a severity (LOW=0 ... CRITICAL=3).

    Raises:
        ValueError: If severity is not one of SEVERITIES
    """
    normalized = severity.strip().upper()
    if normalized not in SEVERITIES:
        raise ValueError(f"Invalid severity: '{severity}'. Must be one of {SEVERITIES}")
    return SEVERITIES.index(normalized)


# ==================== Security Event Types ====================

class SecurityEventType:
    LIQUIDATION_JOB_STARTED = "LIQUIDATION_JOB_STARTED"
    LIQUIDATION_JOB_COMPLETED = "LIQUIDATION_JOB_COMPLETED"
    LIQUIDATION_JOB_ERRORS = "LIQUIDATION_JOB_ERRORS"
    LIQUIDATION_JOB_BLOCKED = "LIQUIDATION_JOB_BLOCKED"
    LIQUIDATION_LOANS_FOUND = "LIQUIDATION_LOANS_FOUND"
    LIQUIDATION_NO_WALLET = "LIQUIDATION_NO_WALLET"
    LIQUIDATION_FAILED = "LIQUIDATION_FAILED"
    LIQUIDATION_FAILURE = "LIQUIDATION_FAILURE"
    LIQUIDATION_LOSS_DETECTED = "LIQUIDATION_LOSS_DETECTED"
    LIQUIDATION_RECOVERY_SUCCESS = "LIQUIDATION_RECOVERY_SUCCESS"
    TOKEN_AUTO_BLACKLISTED = "TOKEN_AUTO_BLACKLISTED"
    TOKEN_BLACKLIST_FAILED = "TOKEN_BLACKLIST_FAILED"
    CIRCUIT_BREAKER_TRIPPED = "CIRCUIT_BREAKER_TRIPPED"
    CIRCUIT_BREAKER_RESET = "CIRCUIT_BREAKER_RESET"
    EXPOSURE_WARNING = "EXPOSURE_WARNING"
    EXPOSURE_CRITICAL = "EXPOSURE_CRITICAL"
    JOB_FAILED = "JOB_FAILED"
