"""
Liquidation coordinator.

Runs one liquidation cycle for one worker. Several workers run the same
cycle concurrently on independent timers; correctness rests on:

1. Coarse scan without locks (may be stale)
2. Per-loan non-blocking lock; a held lock is a silent skip
3. Authoritative re-check inside the hold (double-check after acquire)
4. Compare-and-set ledger transition; the record is appended only if it wins

The circuit breaker is checked before the cycle and again before every
settlement, so a trip caused by this cycle's own losses stops it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ..config.config import LiquidatorConfig
from ..config.constants import (
    SEVERITY_CRITICAL,
    SEVERITY_HIGH,
    SEVERITY_LOW,
    SEVERITY_MEDIUM,
    SecurityEventType,
)
from ..core.circuit_breaker import CircuitBreaker
from ..core.errors import ConfigurationError
from ..core.interfaces import (
    Loan,
    LoanLedger,
    LockStore,
    PriceFeed,
    SettlementClient,
    SettlementResult,
    SignerProvider,
)
from ..core.liquidation_tracker import LiquidationTracker
from ..core.lock_store import loan_lock_key
from ..risk.liquidator_health import LiquidatorMetrics
from ..utils.datetime_utils import Clock, SystemClock
from ..utils.log_context import loan_context, new_cycle_context
from ..utils.logger import get_logger


# Per-loan outcomes
LOCKED = "locked"
CLOSED = "closed"
NO_SIGNER = "no_signer"
BLOCKED = "blocked"
LIQUIDATED = "liquidated"
FAILED = "failed"
LOST_RACE = "lost_race"

_SETTLEMENT_ATTEMPTED = (LIQUIDATED, FAILED, LOST_RACE)

# More candidates than this in one scan is itself an alert
LOANS_FOUND_HIGH_THRESHOLD = 5


class WalletSignerProvider:
    """Signing identity from configuration (LIQUIDATOR_WALLET / ADMIN_WALLET)."""

    def __init__(self, wallet: str | None):
        self._wallet = wallet or None

    def resolve(self) -> str | None:
        return self._wallet


@dataclass
class CycleResult:
    """Outcome counters for one cycle."""
    total_checked: int = 0
    liquidated: int = 0
    errors: int = 0
    skipped_locked: int = 0
    already_closed: int = 0
    blocked: bool = False
    config_failure: bool = False
    duration_ms: int = 0
    loan_ids: list[str] = field(default_factory=list)
    cycle_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "total_checked": self.total_checked,
            "liquidated": self.liquidated,
            "errors": self.errors,
            "skipped_locked": self.skipped_locked,
            "already_closed": self.already_closed,
            "blocked": self.blocked,
            "config_failure": self.config_failure,
            "duration_ms": self.duration_ms,
            "loan_ids": list(self.loan_ids),
        }


class LiquidationCoordinator:
    """
    Scans for liquidatable loans and liquidates them safely.

    Settlement failures are counted and alerted, then retried on the next
    scheduled cycle: no loan is ever permanently skipped.
    """

    def __init__(
        self,
        ledger: LoanLedger,
        lock_store: LockStore,
        settlement: SettlementClient,
        price_feed: PriceFeed,
        breaker: CircuitBreaker,
        tracker: LiquidationTracker,
        instance_id: str,
        config: LiquidatorConfig | None = None,
        signer: SignerProvider | None = None,
        clock: Clock | None = None,
        monitor=None,
        metrics: LiquidatorMetrics | None = None,
    ):
        self._ledger = ledger
        self._locks = lock_store
        self._settlement = settlement
        self._prices = price_feed
        self._breaker = breaker
        self._tracker = tracker
        self.instance_id = instance_id
        self.config = config or LiquidatorConfig()
        self._signer = signer or WalletSignerProvider(self.config.liquidator_wallet)
        self._clock = clock or SystemClock()
        self._monitor = monitor
        self._metrics = metrics
        self.logger = get_logger()

    # ==================== Discovery ====================

    def _price_or_none(self, asset_id: str) -> float | None:
        try:
            return self._prices.price(asset_id)
        except Exception as e:
            self.logger.warning(f"Price unavailable for {asset_id}, time check only: {e}")
            return None

    def scan_liquidatable(self) -> list[str]:
        """
        Loan ids that are past due or under their trigger price.

        Pure read, no locks. A price-feed failure for an asset degrades
        that asset's loans to the time check only.
        """
        now = self._clock.now()
        loans = self._ledger.list_active_loans()
        prices: dict[str, float | None] = {}
        for asset_id in sorted({l.asset_id for l in loans}):
            prices[asset_id] = self._price_or_none(asset_id)

        candidates = [
            l.loan_id for l in loans
            if l.is_overdue(now) or l.is_under_price(prices.get(l.asset_id))
        ]
        return sorted(candidates)

    def _recheck(self, loan_id: str) -> Loan | None:
        """Fresh ledger read; returns the loan only if it is still liquidatable."""
        loan = self._ledger.get_loan(loan_id)
        if loan is None or not loan.is_active:
            return None
        if loan.is_overdue(self._clock.now()):
            return loan
        if loan.is_under_price(self._price_or_none(loan.asset_id)):
            return loan
        return None

    def is_loan_liquidatable(self, loan_id: str) -> bool:
        """Authoritative single-loan check (exists, ACTIVE, past due or under price)."""
        return self._recheck(loan_id) is not None

    # ==================== Cycle ====================

    def run_cycle(self) -> CycleResult:
        """
        Run one liquidation cycle.

        Raises:
            Exception: Any unexpected failure, after it is recorded in
                health metrics and alerted as JOB_FAILED
        """
        start_time = self._metrics.record_job_start() if self._metrics else None
        started = self._clock.now()
        result = CycleResult()

        with new_cycle_context(instance_id=self.instance_id) as ctx:
            result.cycle_id = ctx.cycle_id
            self._event(
                SecurityEventType.LIQUIDATION_JOB_STARTED, SEVERITY_LOW,
                "Liquidation check cycle started",
            )
            try:
                self._run(result)
            except Exception as e:
                result.duration_ms = self._elapsed_ms(started)
                if self._metrics is not None:
                    self._metrics.record_job_failure(e)
                self._event(
                    SecurityEventType.JOB_FAILED, SEVERITY_CRITICAL,
                    f"Liquidation cycle failed: {e}",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

            result.duration_ms = self._elapsed_ms(started)
            if self._metrics is not None:
                self._metrics.record_job_success(start_time, result.liquidated)
            self._report_completion(result)

        return result

    def _elapsed_ms(self, started) -> int:
        return int((self._clock.now() - started).total_seconds() * 1000)

    def _run(self, result: CycleResult) -> None:
        if self._breaker.evaluate():
            result.blocked = True
            self._report_blocked("before scan")
            return

        candidates = self.scan_liquidatable()
        result.total_checked = len(candidates)
        if not candidates:
            self.logger.debug("No liquidatable loans found")
            return

        self._event(
            SecurityEventType.LIQUIDATION_LOANS_FOUND,
            SEVERITY_HIGH if len(candidates) > LOANS_FOUND_HIGH_THRESHOLD else SEVERITY_MEDIUM,
            f"Found {len(candidates)} liquidatable loans",
            count=len(candidates),
            loans=candidates[:10],
        )

        no_signer_alerted = False
        for index, loan_id in enumerate(candidates):
            with loan_context(loan_id):
                outcome = self._process_loan(loan_id)

            if outcome == LOCKED:
                result.skipped_locked += 1
            elif outcome == CLOSED:
                result.already_closed += 1
            elif outcome == NO_SIGNER:
                result.errors += 1
                result.config_failure = True
                if not no_signer_alerted:
                    no_signer_alerted = True
                    self._event(
                        SecurityEventType.LIQUIDATION_NO_WALLET, SEVERITY_CRITICAL,
                        "No liquidator wallet configured - liquidations cannot proceed!",
                        env_vars=["LIQUIDATOR_WALLET", "ADMIN_WALLET"],
                        liquidatable_count=len(candidates),
                        current_loan=loan_id,
                    )
            elif outcome == BLOCKED:
                result.blocked = True
                self._report_blocked("mid-cycle")
                break
            elif outcome == LIQUIDATED:
                result.liquidated += 1
                result.loan_ids.append(loan_id)
            elif outcome in (FAILED, LOST_RACE):
                result.errors += 1

            is_last = index == len(candidates) - 1
            if outcome in _SETTLEMENT_ATTEMPTED and not is_last:
                self._clock.sleep(self.config.throttle_seconds)

    def _process_loan(self, loan_id: str) -> str:
        handle = self._locks.acquire(loan_lock_key(loan_id), self.config.lock_ttl_seconds)
        if handle is None:
            self.logger.debug(f"Loan {loan_id} locked by another liquidator, skipping")
            return LOCKED

        try:
            loan = self._recheck(loan_id)
            if loan is None:
                self.logger.liquidation("SKIPPED_CLOSED", loan_id, instance=self.instance_id)
                return CLOSED

            identity = self._resolve_identity()
            if not identity:
                self.logger.error(f"No signing identity; cannot liquidate {loan_id}")
                return NO_SIGNER

            if self._breaker.evaluate():
                return BLOCKED

            return self._settle(loan, identity)
        finally:
            self._locks.release(handle)

    def _resolve_identity(self) -> str | None:
        try:
            return self._signer.resolve()
        except ConfigurationError as e:
            self.logger.error(f"Signer unavailable: {e}")
            return None

    def _settle(self, loan: Loan, identity: str) -> str:
        self.logger.liquidation(
            "SETTLE_ATTEMPT", loan.loan_id,
            asset=loan.asset_id,
            borrowed=loan.amount_borrowed,
            collateral=loan.collateral_amount,
            instance=self.instance_id,
        )
        try:
            settlement = self._settlement.settle(loan.loan_id, identity)
        except Exception as e:
            settlement = SettlementResult(success=False, error=str(e) or type(e).__name__)

        if not settlement.success:
            self.logger.liquidation(
                "SETTLE_FAILED", loan.loan_id,
                error=settlement.error,
                instance=self.instance_id,
            )
            self._event(
                SecurityEventType.LIQUIDATION_FAILED, SEVERITY_HIGH,
                f"Failed to liquidate loan {loan.loan_id[:8]}...",
                loan_id=loan.loan_id,
                error=settlement.error,
            )
            return FAILED

        now = self._clock.now()
        status = loan.liquidation_status(now)
        if not self._ledger.mark_liquidated(loan.loan_id, status, now):
            # Settled, but the ledger no longer shows it ACTIVE: no record is appended
            self.logger.error(
                f"Loan {loan.loan_id} settled (tx={settlement.tx_signature}) "
                f"but ledger transition lost; record not appended"
            )
            return LOST_RACE

        self.logger.liquidation(
            "LIQUIDATED", loan.loan_id,
            status=status.value,
            recovered=settlement.actual_recovered_amount,
            tx=settlement.tx_signature,
            instance=self.instance_id,
        )
        self._tracker.record_liquidation(
            loan,
            settlement.actual_recovered_amount,
            status=status,
            instance_id=self.instance_id,
            tx_signature=settlement.tx_signature,
            timestamp=now,
        )
        return LIQUIDATED

    # ==================== Reporting ====================

    def _event(self, event_type: str, severity: str, message: str, **details) -> None:
        if self._monitor is not None:
            self._monitor.log_event(event_type, severity, message, **details)

    def _report_blocked(self, stage: str) -> None:
        status = self._breaker.get_status()
        self.logger.risk("BLOCKED", f"circuit breaker tripped ({stage}): {status.reason}")
        self._event(
            SecurityEventType.LIQUIDATION_JOB_BLOCKED, SEVERITY_HIGH,
            f"Liquidation cycle blocked by circuit breaker: {status.reason}",
            stage=stage,
            reason=status.reason,
        )

    def _report_completion(self, result: CycleResult) -> None:
        summary = result.to_dict()
        self.logger.info(
            f"Liquidation cycle completed: checked={result.total_checked} "
            f"liquidated={result.liquidated} errors={result.errors} "
            f"locked={result.skipped_locked} closed={result.already_closed} "
            f"blocked={result.blocked} ({result.duration_ms}ms)"
        )
        if result.errors > 0:
            all_failed = result.errors == result.total_checked
            success_rate = (
                f"{result.liquidated / result.total_checked * 100:.1f}%"
                if result.total_checked else "N/A"
            )
            self._event(
                SecurityEventType.LIQUIDATION_JOB_ERRORS,
                SEVERITY_CRITICAL if all_failed else SEVERITY_HIGH,
                f"Liquidation cycle completed with {result.errors} errors",
                success_rate=success_rate,
                **summary,
            )
        else:
            self._event(
                SecurityEventType.LIQUIDATION_JOB_COMPLETED, SEVERITY_LOW,
                f"Liquidation cycle completed: {result.liquidated} liquidated",
                **summary,
            )
