"""
Liquidation circuit breaker.

Halts all liquidation activity when realized losses spike. Loss windows
are never stored: they are recomputed from the liquidation log on every
evaluation, so a reset cannot erase history and the breaker re-trips if
the window condition still holds.

States:
    ARMED --(evaluate: limit exceeded)--> TRIPPED --(reset by operator)--> ARMED

There is no automatic reset.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from ..config.config import CircuitBreakerConfig
from ..config.constants import (
    SEVERITY_CRITICAL,
    SEVERITY_HIGH,
    SecurityEventType,
    lamports_to_sol,
)
from ..utils.datetime_utils import Clock, SystemClock
from ..utils.logger import get_logger
from .errors import CircuitBreakerTrippedError
from .interfaces import LiquidationLog


ONE_HOUR = timedelta(hours=1)
ONE_DAY = timedelta(hours=24)


@dataclass(frozen=True)
class BreakerMetrics:
    """Trailing-window loss metrics derived from the liquidation log."""
    loss_1h: int = 0
    loss_24h: int = 0
    liquidation_count_1h: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "loss_1h_lamports": self.loss_1h,
            "loss_24h_lamports": self.loss_24h,
            "loss_1h_sol": lamports_to_sol(self.loss_1h),
            "loss_24h_sol": lamports_to_sol(self.loss_24h),
            "liquidation_count_1h": self.liquidation_count_1h,
        }


@dataclass
class CircuitBreakerState:
    """Latch state. Mutated only by trip() and reset()."""
    tripped: bool = False
    reason: str | None = None
    tripped_at: datetime | None = None
    last_metrics: BreakerMetrics | None = None
    reset_by: str | None = None
    reset_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tripped": self.tripped,
            "reason": self.reason,
            "tripped_at": self.tripped_at.isoformat() if self.tripped_at else None,
            "last_metrics": asdict(self.last_metrics) if self.last_metrics else None,
            "reset_by": self.reset_by,
            "reset_at": self.reset_at.isoformat() if self.reset_at else None,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "CircuitBreakerState":
        return cls(
            tripped=bool(d.get("tripped", False)),
            reason=d.get("reason"),
            tripped_at=datetime.fromisoformat(d["tripped_at"]) if d.get("tripped_at") else None,
            last_metrics=BreakerMetrics(**d["last_metrics"]) if d.get("last_metrics") else None,
            reset_by=d.get("reset_by"),
            reset_at=datetime.fromisoformat(d["reset_at"]) if d.get("reset_at") else None,
        )


@dataclass
class CircuitBreakerStatus:
    """Snapshot returned to operators."""
    tripped: bool
    reason: str | None
    tripped_at: datetime | None
    metrics: BreakerMetrics
    limits: CircuitBreakerConfig
    reset_by: str | None = None
    reset_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tripped": self.tripped,
            "reason": self.reason,
            "tripped_at": self.tripped_at.isoformat() if self.tripped_at else None,
            "metrics": self.metrics.to_dict(),
            "limits": {
                "loss_1h_limit_sol": lamports_to_sol(self.limits.loss_1h_limit_lamports),
                "loss_24h_limit_sol": lamports_to_sol(self.limits.loss_24h_limit_lamports),
                "count_1h_limit": self.limits.count_1h_limit,
            },
            "reset_by": self.reset_by,
            "reset_at": self.reset_at.isoformat() if self.reset_at else None,
        }


# ==============================================================================
# State stores
# ==============================================================================

@runtime_checkable
class BreakerStateStore(Protocol):
    """Where the latch lives. Shared stores let co-located workers share a trip."""

    def load(self) -> CircuitBreakerState | None:
        ...

    def save(self, state: CircuitBreakerState) -> None:
        ...


class InMemoryBreakerStateStore:
    """Process-local latch."""

    def __init__(self):
        self._state: CircuitBreakerState | None = None

    def load(self) -> CircuitBreakerState | None:
        return self._state

    def save(self, state: CircuitBreakerState) -> None:
        self._state = state


class FileBreakerStateStore:
    """
    JSON file latch for workers on one host.

    A corrupt or unreadable file is reported and treated as TRIPPED: an
    unknown latch state must not let liquidations through.
    """

    def __init__(self, path: Path | str):
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger()

    def load(self) -> CircuitBreakerState | None:
        if not self._path.exists():
            return None
        try:
            with open(self._path, encoding="utf-8") as f:
                return CircuitBreakerState.from_dict(json.load(f))
        except (OSError, ValueError, TypeError, KeyError) as e:
            self.logger.error(f"Circuit breaker state unreadable at {self._path}: {e}")
            return CircuitBreakerState(tripped=True, reason=f"state file unreadable: {e}")

    def save(self, state: CircuitBreakerState) -> None:
        # Unique temp file per writer, then an atomic rename over the latch
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            newline="\n",
            dir=self._path.parent,
            prefix=self._path.name + ".",
            suffix=".tmp",
            delete=False,
        ) as f:
            json.dump(state.to_dict(), f, indent=2)
            tmp = f.name
        try:
            os.replace(tmp, self._path)
        except OSError:
            os.unlink(tmp)
            raise

    @property
    def path(self) -> Path:
        return self._path


# ==============================================================================
# Circuit Breaker
# ==============================================================================

class CircuitBreaker:
    """
    Loss-window circuit breaker.

    Trips when, over the trailing windows:
    - 1h realized loss > loss_1h_limit
    - 24h realized loss > loss_24h_limit
    - 1h liquidation count > count_1h_limit

    The first firing condition (in that order) becomes the trip reason;
    every firing condition is reported in the alert details.
    """

    def __init__(
        self,
        log: LiquidationLog,
        config: CircuitBreakerConfig | None = None,
        clock: Clock | None = None,
        monitor=None,
        state_store: BreakerStateStore | None = None,
    ):
        """
        Args:
            log: Liquidation record log (source of the loss windows)
            config: Limits (defaults to CircuitBreakerConfig())
            clock: Time source
            monitor: SecurityMonitor receiving trip/reset events
            state_store: Latch persistence (defaults to in-memory)
        """
        self._log = log
        self.config = config or CircuitBreakerConfig()
        self._clock = clock or SystemClock()
        self._monitor = monitor
        self._store = state_store or InMemoryBreakerStateStore()
        self._lock = threading.RLock()
        self.logger = get_logger()

    def _state(self) -> CircuitBreakerState:
        return self._store.load() or CircuitBreakerState()

    # ==================== Metrics ====================

    def compute_metrics(self, now: datetime | None = None) -> BreakerMetrics:
        """Recompute trailing-window metrics from the record log."""
        now = now or self._clock.now()
        day_records = self._log.records_since(now - ONE_DAY)
        hour_start = now - ONE_HOUR
        hour_records = [r for r in day_records if r.timestamp >= hour_start]
        return BreakerMetrics(
            loss_1h=sum(r.loss_lamports for r in hour_records),
            loss_24h=sum(r.loss_lamports for r in day_records),
            liquidation_count_1h=len(hour_records),
        )

    def _firing_conditions(self, metrics: BreakerMetrics) -> list[str]:
        cfg = self.config
        firing = []
        if metrics.loss_1h > cfg.loss_1h_limit_lamports:
            firing.append(
                f"1h loss {lamports_to_sol(metrics.loss_1h):.4f} SOL exceeds limit "
                f"{lamports_to_sol(cfg.loss_1h_limit_lamports):g} SOL"
            )
        if metrics.loss_24h > cfg.loss_24h_limit_lamports:
            firing.append(
                f"24h loss {lamports_to_sol(metrics.loss_24h):.4f} SOL exceeds limit "
                f"{lamports_to_sol(cfg.loss_24h_limit_lamports):g} SOL"
            )
        if metrics.liquidation_count_1h > cfg.count_1h_limit:
            firing.append(
                f"1h liquidation count {metrics.liquidation_count_1h} exceeds limit "
                f"{cfg.count_1h_limit}"
            )
        return firing

    # ==================== Latch ====================

    def evaluate(self) -> bool:
        """
        Check the windows and trip if any limit is exceeded.

        Returns:
            True if the breaker is tripped (already or as a result of this call)
        """
        with self._lock:
            if self._state().tripped:
                return True
            metrics = self.compute_metrics()
            firing = self._firing_conditions(metrics)
            if not firing:
                return False
            self.trip(firing[0], metrics, conditions=firing)
            return True

    def trip(self, reason: str, metrics: BreakerMetrics, conditions: list[str] | None = None) -> None:
        """Latch the breaker. No-op if already tripped."""
        with self._lock:
            state = self._state()
            if state.tripped:
                return
            state.tripped = True
            state.reason = reason
            state.tripped_at = self._clock.now()
            state.last_metrics = metrics
            self._store.save(state)

        self.logger.risk(
            "TRIPPED", reason,
            loss_1h=metrics.loss_1h,
            loss_24h=metrics.loss_24h,
            count_1h=metrics.liquidation_count_1h,
        )
        if self._monitor is not None:
            self._monitor.log_event(
                SecurityEventType.CIRCUIT_BREAKER_TRIPPED,
                SEVERITY_CRITICAL,
                f"Liquidation circuit breaker tripped: {reason}",
                reason=reason,
                conditions=list(conditions or [reason]),
                **metrics.to_dict(),
            )

    def reset(self, actor_id: str) -> bool:
        """
        Re-arm the breaker. Manual only.

        History is untouched: if the windows still exceed a limit, the next
        evaluate() trips again.

        Args:
            actor_id: Operator performing the reset (required, audited)

        Returns:
            True if the breaker was tripped before the reset

        Raises:
            ValueError: If actor_id is empty
        """
        if not actor_id or not actor_id.strip():
            raise ValueError("actor_id is required to reset the circuit breaker")
        actor_id = actor_id.strip()

        with self._lock:
            state = self._state()
            was_tripped = state.tripped
            previous_reason = state.reason
            previous_tripped_at = state.tripped_at
            state.tripped = False
            state.reason = None
            state.tripped_at = None
            state.reset_by = actor_id
            state.reset_at = self._clock.now()
            self._store.save(state)

        self.logger.risk("RESET", f"reset by {actor_id}", previous_reason=previous_reason)
        if self._monitor is not None:
            self._monitor.log_event(
                SecurityEventType.CIRCUIT_BREAKER_RESET,
                SEVERITY_HIGH,
                f"Liquidation circuit breaker reset by {actor_id}",
                actor_id=actor_id,
                was_tripped=was_tripped,
                previous_reason=previous_reason,
                previous_tripped_at=previous_tripped_at.isoformat() if previous_tripped_at else None,
            )
        return was_tripped

    @property
    def is_tripped(self) -> bool:
        """Latch read without evaluation."""
        return self._state().tripped

    def get_status(self) -> CircuitBreakerStatus:
        """Evaluate, then report latch state with fresh metrics."""
        self.evaluate()
        state = self._state()
        return CircuitBreakerStatus(
            tripped=state.tripped,
            reason=state.reason,
            tripped_at=state.tripped_at,
            metrics=self.compute_metrics(),
            limits=self.config,
            reset_by=state.reset_by,
            reset_at=state.reset_at,
        )

    def assert_ok(self) -> None:
        """
        Guard for callers about to open new risk.

        Raises:
            CircuitBreakerTrippedError: If the breaker is (or becomes) tripped
        """
        if self.evaluate():
            raise CircuitBreakerTrippedError(self._state().reason)
