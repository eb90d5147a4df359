"""
Liquidation result tracking.

Turns a successful settlement into an append-only LiquidationRecord,
computes the realized loss against the expected recovery, auto-blacklists
assets whose liquidations lose too much, and feeds the circuit breaker.

Read-side projections (recent, with losses, per-asset stats) are computed
from the same log the breaker reads.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from ..config.config import TrackerConfig
from ..config.constants import (
    BPS_DENOMINATOR,
    SEVERITY_CRITICAL,
    SEVERITY_HIGH,
    SEVERITY_LOW,
    SecurityEventType,
    lamports_to_sol,
)
from ..utils.datetime_utils import Clock, SystemClock
from ..utils.logger import get_logger
from .circuit_breaker import CircuitBreaker
from .interfaces import LiquidationLog, LiquidationRecord, Loan, LoanStatus, TokenBlacklister


def compute_loss_bps(expected: int, actual: int) -> int:
    """
    Realized loss in basis points of the expected recovery.

    Returns 0 when expected <= 0 or when actual covers expected. Negative
    actual amounts are clamped to 0, so the result is always in [0, 10000].
    """
    if expected <= 0:
        return 0
    actual = max(0, actual)
    if actual >= expected:
        return 0
    return (expected - actual) * BPS_DENOMINATOR // expected


def compute_loss_lamports(expected: int, actual: int) -> int:
    return max(0, expected - max(0, actual))


@dataclass
class TokenLiquidationStats:
    """Per-asset liquidation summary."""
    asset_id: str
    total_liquidations: int = 0
    total_loss_lamports: int = 0
    avg_loss_bps: int = 0
    last_liquidation: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "asset_id": self.asset_id,
            "total_liquidations": self.total_liquidations,
            "total_loss_lamports": self.total_loss_lamports,
            "total_loss_sol": lamports_to_sol(self.total_loss_lamports),
            "avg_loss_bps": self.avg_loss_bps,
            "last_liquidation": self.last_liquidation.isoformat() if self.last_liquidation else None,
        }


class LiquidationTracker:
    """
    Records liquidation outcomes.

    The expected recovery for a loan is its amount_borrowed: anything the
    settlement recovers below that is a realized loss for the pool.
    """

    def __init__(
        self,
        log: LiquidationLog,
        breaker: CircuitBreaker | None = None,
        config: TrackerConfig | None = None,
        clock: Clock | None = None,
        monitor=None,
        blacklister: TokenBlacklister | None = None,
        journal=None,
    ):
        self._log = log
        self._breaker = breaker
        self.config = config or TrackerConfig()
        self._clock = clock or SystemClock()
        self._monitor = monitor
        self._blacklister = blacklister
        self._journal = journal
        self.logger = get_logger()

    def record_liquidation(
        self,
        loan: Loan,
        actual_recovery: int,
        status: LoanStatus | None = None,
        instance_id: str = "",
        tx_signature: str | None = None,
        timestamp: datetime | None = None,
    ) -> LiquidationRecord:
        """
        Append the outcome of a completed liquidation.

        Call only after the loan's ACTIVE -> LIQUIDATED_* transition won.

        Args:
            loan: The liquidated loan (pre-transition snapshot is fine)
            actual_recovery: Lamports actually recovered by settlement
            status: Terminal status used for the reason field
            instance_id: Worker that performed the liquidation
            tx_signature: Settlement transaction signature
            timestamp: Defaults to now

        Returns:
            The appended record
        """
        expected = loan.amount_borrowed
        loss_bps = compute_loss_bps(expected, actual_recovery)
        loss_lamports = compute_loss_lamports(expected, actual_recovery)
        auto_blacklisted = loss_bps > self.config.auto_blacklist_bps
        now = timestamp or self._clock.now()
        if status is None:
            status = loan.liquidation_status(now)

        record = LiquidationRecord(
            loan_id=loan.loan_id,
            asset_id=loan.asset_id,
            expected_recovery=expected,
            actual_recovery=max(0, actual_recovery),
            loss_lamports=loss_lamports,
            loss_bps=loss_bps,
            timestamp=now,
            auto_blacklisted=auto_blacklisted,
            borrower=loan.borrower,
            collateral_amount=loan.collateral_amount,
            reason="time" if status == LoanStatus.LIQUIDATED_BY_TIME else "price",
            instance_id=instance_id,
            tx_signature=tx_signature,
        )
        self._log.append(record)
        if self._journal is not None:
            self._journal.record_liquidation(record)

        self.logger.liquidation(
            "RECORDED", loan.loan_id,
            asset=loan.asset_id,
            expected=expected,
            actual=record.actual_recovery,
            loss_lamports=loss_lamports,
            loss_bps=loss_bps,
            instance=instance_id,
        )
        self._alert_outcome(record)

        if auto_blacklisted:
            self._auto_blacklist(record)

        if self._breaker is not None:
            self._breaker.evaluate()

        return record

    def _alert_outcome(self, record: LiquidationRecord) -> None:
        if self._monitor is None:
            return
        details = {
            "loan_id": record.loan_id,
            "asset_id": record.asset_id,
            "expected_sol": lamports_to_sol(record.expected_recovery),
            "actual_sol": lamports_to_sol(record.actual_recovery),
            "loss_sol": lamports_to_sol(record.loss_lamports),
            "loss_bps": record.loss_bps,
            "reason": record.reason,
        }
        if record.has_loss:
            severity = SEVERITY_CRITICAL if record.auto_blacklisted else SEVERITY_HIGH
            self._monitor.log_event(
                SecurityEventType.LIQUIDATION_LOSS_DETECTED,
                severity,
                f"Liquidation of {record.loan_id} lost {lamports_to_sol(record.loss_lamports):.4f} SOL "
                f"({record.loss_bps / 100:.2f}%)",
                **details,
            )
        else:
            self._monitor.log_event(
                SecurityEventType.LIQUIDATION_RECOVERY_SUCCESS,
                SEVERITY_LOW,
                f"Liquidation of {record.loan_id} recovered in full",
                **details,
            )

    def _auto_blacklist(self, record: LiquidationRecord) -> None:
        reason = (
            f"Auto-blacklisted: liquidation of {record.loan_id} lost "
            f"{record.loss_bps / 100:.2f}% (> {self.config.auto_blacklist_bps / 100:.2f}%)"
        )
        self.logger.risk("BLACKLIST", reason, asset=record.asset_id, loan=record.loan_id)

        if self._blacklister is None:
            return
        try:
            self._blacklister.blacklist(record.asset_id, reason)
        except Exception as e:
            # The record is already appended; a blacklist failure is alerted, not raised
            self.logger.error(f"Failed to auto-blacklist {record.asset_id}: {e}")
            if self._monitor is not None:
                self._monitor.log_event(
                    SecurityEventType.TOKEN_BLACKLIST_FAILED,
                    SEVERITY_CRITICAL,
                    f"Failed to auto-blacklist {record.asset_id}: {e}",
                    asset_id=record.asset_id,
                    loan_id=record.loan_id,
                    loss_bps=record.loss_bps,
                )
            return

        if self._monitor is not None:
            self._monitor.log_event(
                SecurityEventType.TOKEN_AUTO_BLACKLISTED,
                SEVERITY_HIGH,
                reason,
                asset_id=record.asset_id,
                loan_id=record.loan_id,
                loss_bps=record.loss_bps,
            )

    # ==================== Projections ====================

    def get_recent_liquidations(self, limit: int = 20) -> list[LiquidationRecord]:
        """Newest first."""
        if limit <= 0:
            return []
        return self._log.recent(limit)

    def get_liquidations_with_losses(self) -> list[LiquidationRecord]:
        """Records with a realized loss, newest first."""
        records = [r for r in self._log.all_records() if r.has_loss]
        records.reverse()
        return records

    def get_token_liquidation_stats(self, asset_id: str) -> TokenLiquidationStats:
        records = self._log.for_asset(asset_id)
        stats = TokenLiquidationStats(asset_id=asset_id)
        if not records:
            return stats
        stats.total_liquidations = len(records)
        stats.total_loss_lamports = sum(r.loss_lamports for r in records)
        stats.avg_loss_bps = sum(r.loss_bps for r in records) // len(records)
        stats.last_liquidation = max(r.timestamp for r in records)
        return stats
