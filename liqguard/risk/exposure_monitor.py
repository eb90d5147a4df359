"""
Per-asset exposure monitoring.

Exposure is how much SOL the protocol has lent against one collateral
asset, relative to that asset's pool liquidity (what a liquidation could
actually sell into):

    exposure_bps = total_sol_lent * 10000 // pool_liquidity

Bands (ascending, configurable):
    < watch            NONE
    watch..warning     WATCH
    warning..critical  WARNING
    >= critical        CRITICAL

A liquidity read failure never raises out of the monitor: the asset is
reported with unknown exposure and the reason in liquidity_error.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from ..config.config import ExposureConfig
from ..config.constants import (
    BPS_DENOMINATOR,
    SEVERITY_CRITICAL,
    SEVERITY_HIGH,
    SecurityEventType,
    lamports_to_sol,
)
from ..core.interfaces import Loan, LoanLedger, LiquidityReader
from ..utils.datetime_utils import Clock, SystemClock
from ..utils.logger import get_logger


class WarningLevel(str, Enum):
    NONE = "NONE"
    WATCH = "WATCH"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


@dataclass
class TokenExposure:
    """Concentration snapshot for one asset."""
    asset_id: str
    active_loans: int
    total_collateral_amount: int
    total_sol_lent: int
    pool_liquidity: int | None
    exposure_bps: int | None
    warning_level: WarningLevel
    last_updated: datetime
    liquidity_error: str | None = None

    @property
    def exposure_pct(self) -> float | None:
        if self.exposure_bps is None:
            return None
        return self.exposure_bps / 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "asset_id": self.asset_id,
            "active_loans": self.active_loans,
            "total_collateral_amount": self.total_collateral_amount,
            "total_sol_lent": self.total_sol_lent,
            "total_sol_lent_sol": lamports_to_sol(self.total_sol_lent),
            "pool_liquidity": self.pool_liquidity,
            "exposure_bps": self.exposure_bps,
            "warning_level": self.warning_level.value,
            "liquidity_error": self.liquidity_error,
            "last_updated": self.last_updated.isoformat(),
        }


def _sort_key(exposure: TokenExposure):
    # Known exposures first (descending), unknown last, ties by asset id
    if exposure.exposure_bps is None:
        return (1, 0, exposure.asset_id)
    return (0, -exposure.exposure_bps, exposure.asset_id)


class ExposureMonitor:
    """
    Computes and caches TokenExposure for every asset with ACTIVE loans.

    WARNING and CRITICAL levels raise alerts, at most once per asset per
    alert_cooldown_seconds.
    """

    def __init__(
        self,
        ledger: LoanLedger,
        liquidity: LiquidityReader,
        config: ExposureConfig | None = None,
        clock: Clock | None = None,
        monitor=None,
    ):
        self._ledger = ledger
        self._liquidity = liquidity
        self.config = config or ExposureConfig()
        self._clock = clock or SystemClock()
        self._monitor = monitor
        self.logger = get_logger()

        self._lock = threading.Lock()
        self._cache: dict[str, TokenExposure] = {}
        self._cache_time: datetime | None = None
        self._last_alert: dict[str, datetime] = {}

    # ==================== Classification ====================

    def warning_level_for(self, bps: int | None) -> WarningLevel:
        """Monotonic step function from exposure bps to band."""
        if bps is None:
            return WarningLevel.NONE
        cfg = self.config
        if bps >= cfg.critical_bps:
            return WarningLevel.CRITICAL
        if bps >= cfg.warning_bps:
            return WarningLevel.WARNING
        if bps >= cfg.watch_bps:
            return WarningLevel.WATCH
        return WarningLevel.NONE

    # ==================== Computation ====================

    def _read_liquidity(self, asset_id: str) -> tuple[int | None, str | None]:
        try:
            value = self._liquidity.liquidity(asset_id)
        except Exception as e:
            self.logger.warning(f"Liquidity read failed for {asset_id}: {e}")
            return None, str(e) or type(e).__name__
        if value is None:
            return None, "liquidity unavailable"
        if value <= 0:
            return None, f"non-positive pool liquidity: {value}"
        return int(value), None

    def _build(self, asset_id: str, loans: list[Loan]) -> TokenExposure:
        total_sol_lent = sum(l.amount_borrowed for l in loans)
        total_collateral = sum(l.collateral_amount for l in loans)
        liquidity, error = self._read_liquidity(asset_id)

        exposure_bps = None
        if liquidity is not None:
            exposure_bps = total_sol_lent * BPS_DENOMINATOR // liquidity

        return TokenExposure(
            asset_id=asset_id,
            active_loans=len(loans),
            total_collateral_amount=total_collateral,
            total_sol_lent=total_sol_lent,
            pool_liquidity=liquidity,
            exposure_bps=exposure_bps,
            warning_level=self.warning_level_for(exposure_bps),
            last_updated=self._clock.now(),
            liquidity_error=error,
        )

    def compute_exposure(self, asset_id: str) -> TokenExposure:
        """Fresh exposure for one asset (bypasses and updates the cache)."""
        loans = [l for l in self._ledger.list_active_loans() if l.asset_id == asset_id]
        exposure = self._build(asset_id, loans)
        with self._lock:
            if exposure.active_loans:
                self._cache[asset_id] = exposure
            else:
                self._cache.pop(asset_id, None)
        self._maybe_alert(exposure)
        return exposure

    def refresh_all(self) -> list[TokenExposure]:
        """Recompute every asset with ACTIVE loans and replace the cache."""
        grouped: dict[str, list[Loan]] = defaultdict(list)
        for loan in self._ledger.list_active_loans():
            grouped[loan.asset_id].append(loan)

        exposures = [self._build(asset_id, loans) for asset_id, loans in grouped.items()]
        exposures.sort(key=_sort_key)

        with self._lock:
            self._cache = {e.asset_id: e for e in exposures}
            self._cache_time = self._clock.now()

        for exposure in exposures:
            self._maybe_alert(exposure)

        self.logger.debug(f"Exposure refreshed: {len(exposures)} assets")
        return exposures

    def _cache_fresh(self) -> bool:
        if self._cache_time is None:
            return False
        age = (self._clock.now() - self._cache_time).total_seconds()
        return age < self.config.cache_seconds

    # ==================== Queries ====================

    def get_all_exposures(self) -> list[TokenExposure]:
        """All assets with ACTIVE loans, highest exposure first, unknown last."""
        with self._lock:
            if self._cache_fresh():
                return sorted(self._cache.values(), key=_sort_key)
        return self.refresh_all()

    def get_token_exposure(self, asset_id: str) -> TokenExposure:
        with self._lock:
            if self._cache_fresh() and asset_id in self._cache:
                return self._cache[asset_id]
        return self.compute_exposure(asset_id)

    def get_tokens_with_warnings(self) -> list[TokenExposure]:
        """Assets whose level is anything but NONE."""
        return [e for e in self.get_all_exposures() if e.warning_level != WarningLevel.NONE]

    # ==================== Alerts ====================

    def _maybe_alert(self, exposure: TokenExposure) -> None:
        if exposure.warning_level not in (WarningLevel.WARNING, WarningLevel.CRITICAL):
            return

        now = self._clock.now()
        with self._lock:
            last = self._last_alert.get(exposure.asset_id)
            if last is not None and (now - last).total_seconds() < self.config.alert_cooldown_seconds:
                return
            self._last_alert[exposure.asset_id] = now

        critical = exposure.warning_level == WarningLevel.CRITICAL
        self.logger.risk(
            "WARNING", f"{exposure.asset_id} exposure {exposure.exposure_bps} bps",
            level=exposure.warning_level.value,
            lent=exposure.total_sol_lent,
            liquidity=exposure.pool_liquidity,
        )
        if self._monitor is None:
            return
        self._monitor.log_event(
            SecurityEventType.EXPOSURE_CRITICAL if critical else SecurityEventType.EXPOSURE_WARNING,
            SEVERITY_CRITICAL if critical else SEVERITY_HIGH,
            f"{exposure.asset_id} exposure at {exposure.exposure_bps / 100:.2f}% of pool liquidity",
            asset_id=exposure.asset_id,
            exposure_bps=exposure.exposure_bps,
            active_loans=exposure.active_loans,
            total_sol_lent_sol=lamports_to_sol(exposure.total_sol_lent),
            pool_liquidity=exposure.pool_liquidity,
        )
