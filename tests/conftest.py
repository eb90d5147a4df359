"""
Pytest configuration and shared fakes for liquidation engine tests.

Every world runs on a ManualClock so loss windows, lock TTLs and health
staleness are deterministic.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from liqguard.config.config import (
    CircuitBreakerConfig,
    Config,
    ExposureConfig,
    HealthConfig,
    LiquidatorConfig,
    TrackerConfig,
)
from liqguard.config.constants import LAMPORTS_PER_SOL
from liqguard.core.circuit_breaker import CircuitBreaker
from liqguard.core.interfaces import Loan, SettlementResult
from liqguard.core.liquidation_tracker import LiquidationTracker
from liqguard.core.lock_store import InMemoryLockStore
from liqguard.data.liquidation_log import InMemoryLiquidationLog
from liqguard.data.loan_ledger import InMemoryLoanLedger
from liqguard.engine.coordinator import LiquidationCoordinator
from liqguard.engine.security_monitor import SecurityMonitor
from liqguard.risk.exposure_monitor import ExposureMonitor
from liqguard.risk.liquidator_health import (
    InMemoryHealthRegistry,
    LiquidatorHealthAggregator,
    LiquidatorMetrics,
)
from liqguard.utils.datetime_utils import ManualClock


SOL = LAMPORTS_PER_SOL
START = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


# ==============================================================================
# Fakes
# ==============================================================================

class FakeSettlement:
    """Recovers amount_borrowed unless told otherwise."""

    def __init__(self, ledger):
        self._ledger = ledger
        self.recoveries: dict[str, int] = {}
        self.failures: dict[str, str] = {}
        self.raises: dict[str, Exception] = {}
        self.calls: list[tuple[str, str]] = []

    def settle(self, loan_id: str, identity: str) -> SettlementResult:
        self.calls.append((loan_id, identity))
        if loan_id in self.raises:
            raise self.raises[loan_id]
        if loan_id in self.failures:
            return SettlementResult(success=False, error=self.failures[loan_id])
        if loan_id in self.recoveries:
            recovered = self.recoveries[loan_id]
        else:
            recovered = self._ledger.get_loan(loan_id).amount_borrowed
        return SettlementResult(
            success=True,
            actual_recovered_amount=recovered,
            tx_signature=f"tx-{loan_id}-{len(self.calls)}",
        )

    def settled_ids(self) -> list[str]:
        return [loan_id for loan_id, _ in self.calls]


class FakePriceFeed:
    def __init__(self, prices: dict[str, float] | None = None):
        self.prices = dict(prices or {})
        self.failing: set[str] = set()

    def price(self, asset_id: str) -> float:
        if asset_id in self.failing:
            raise RuntimeError(f"price feed down for {asset_id}")
        return self.prices.get(asset_id, 1.0)


class FakeLiquidity:
    def __init__(self, values: dict[str, int | None] | None = None):
        self.values = dict(values or {})
        self.failing: set[str] = set()

    def liquidity(self, asset_id: str) -> int | None:
        if asset_id in self.failing:
            raise ConnectionError(f"pool unreachable for {asset_id}")
        return self.values.get(asset_id)


class FakeBlacklister:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.blacklisted: list[tuple[str, str]] = []

    def blacklist(self, asset_id: str, reason: str) -> None:
        if self.fail:
            raise RuntimeError("admin key rejected")
        self.blacklisted.append((asset_id, reason))


class SortedSetRedis:
    """
    In-process stand-in for the sorted-set subset of redis.Redis used by
    RedisLiquidationLog. Two log objects over one instance behave like two
    worker processes sharing one server.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.zsets: dict[str, dict[str, float]] = {}

    def _sorted(self, key: str) -> list[tuple[str, float]]:
        return sorted(self.zsets.get(key, {}).items(), key=lambda item: (item[1], item[0]))

    @staticmethod
    def _slice(items: list, start: int, end: int) -> list:
        return items[start:] if end == -1 else items[start:end + 1]

    def zadd(self, key: str, mapping: dict[str, float]) -> int:
        with self._lock:
            zset = self.zsets.setdefault(key, {})
            added = sum(1 for member in mapping if member not in zset)
            zset.update(mapping)
            return added

    def zrangebyscore(self, key: str, min_score, max_score) -> list[str]:
        low = float(min_score)
        high = float("inf") if max_score == "+inf" else float(max_score)
        with self._lock:
            return [m for m, s in self._sorted(key) if low <= s <= high]

    def zrange(self, key: str, start: int, end: int) -> list[str]:
        with self._lock:
            return self._slice([m for m, _ in self._sorted(key)], start, end)

    def zrevrange(self, key: str, start: int, end: int) -> list[str]:
        with self._lock:
            return self._slice([m for m, _ in reversed(self._sorted(key))], start, end)

    def zcard(self, key: str) -> int:
        with self._lock:
            return len(self.zsets.get(key, {}))

    def pipeline(self, transaction: bool = True) -> "_Pipeline":
        return _Pipeline(self)


class _Pipeline:
    def __init__(self, client: SortedSetRedis):
        self._client = client
        self._ops: list[tuple[str, tuple]] = []

    def zadd(self, key: str, mapping: dict[str, float]) -> "_Pipeline":
        self._ops.append(("zadd", (key, mapping)))
        return self

    def execute(self) -> list:
        return [getattr(self._client, name)(*args) for name, args in self._ops]


class RecordingSink:
    """AlertSink that keeps every event."""

    def __init__(self):
        self.events = []

    def emit(self, event) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list:
        return [e for e in self.events if e.event_type == event_type]


def make_loan(
    loan_id: str,
    now: datetime = START,
    asset_id: str = "MINT_A",
    borrowed: int = 1 * SOL,
    collateral: int = 1_000_000,
    due_in: timedelta = timedelta(days=1),
    liquidation_price: float = 0.5,
    borrower: str = "borrower-1",
) -> Loan:
    return Loan(
        loan_id=loan_id,
        borrower=borrower,
        asset_id=asset_id,
        collateral_amount=collateral,
        amount_borrowed=borrowed,
        due_at=now + due_in,
        liquidation_price=liquidation_price,
    )


def make_overdue_loan(loan_id: str, now: datetime = START, **kwargs) -> Loan:
    return make_loan(loan_id, now=now, due_in=timedelta(hours=-1), **kwargs)


# ==============================================================================
# World
# ==============================================================================

class World:
    """
    One shared ledger/log/lock store with any number of workers on top.

    Mirrors a deployment where several liquidator processes share the
    same persistence and lock service.
    """

    def __init__(
        self,
        breaker_config: CircuitBreakerConfig | None = None,
        liquidator_config: LiquidatorConfig | None = None,
        tracker_config: TrackerConfig | None = None,
        wallet: str | None = "liquidator-wallet",
    ):
        self.clock = ManualClock(START)
        self.ledger = InMemoryLoanLedger()
        self.log = InMemoryLiquidationLog()
        self.locks = InMemoryLockStore(clock=self.clock)
        self.registry = InMemoryHealthRegistry()
        self.sink = RecordingSink()
        self.monitor = SecurityMonitor(clock=self.clock, sinks=[self.sink])
        self.settlement = FakeSettlement(self.ledger)
        self.prices = FakePriceFeed()
        self.liquidity = FakeLiquidity()
        self.blacklister = FakeBlacklister()

        self.liquidator_config = liquidator_config or LiquidatorConfig(
            throttle_seconds=0.0,
            liquidator_wallet=wallet or "",
        )
        self.breaker = CircuitBreaker(
            self.log,
            config=breaker_config or CircuitBreakerConfig(),
            clock=self.clock,
            monitor=self.monitor,
        )
        self.tracker = LiquidationTracker(
            self.log,
            breaker=self.breaker,
            config=tracker_config or TrackerConfig(),
            clock=self.clock,
            monitor=self.monitor,
            blacklister=self.blacklister,
        )
        self.exposure = ExposureMonitor(
            self.ledger,
            self.liquidity,
            config=ExposureConfig(),
            clock=self.clock,
            monitor=self.monitor,
        )
        self.health = LiquidatorHealthAggregator(
            self.registry,
            scan_interval_seconds=self.liquidator_config.scan_interval_seconds,
            config=HealthConfig(),
            clock=self.clock,
        )
        self._workers: dict[str, LiquidationCoordinator] = {}

    def add_loans(self, *loans: Loan) -> None:
        for loan in loans:
            self.ledger.add_loan(loan)

    def worker(self, instance_id: str = "worker-1", **kwargs) -> LiquidationCoordinator:
        if instance_id not in self._workers:
            metrics = LiquidatorMetrics(
                instance_id,
                self.registry,
                clock=self.clock,
                config=HealthConfig(),
                monitor=self.monitor,
            )
            self._workers[instance_id] = LiquidationCoordinator(
                ledger=self.ledger,
                lock_store=self.locks,
                settlement=self.settlement,
                price_feed=self.prices,
                breaker=self.breaker,
                tracker=self.tracker,
                instance_id=instance_id,
                config=self.liquidator_config,
                clock=self.clock,
                monitor=self.monitor,
                metrics=metrics,
                **kwargs,
            )
        return self._workers[instance_id]


# ==============================================================================
# Fixtures
# ==============================================================================

@pytest.fixture
def world() -> World:
    return World()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(START)


@pytest.fixture
def env_config(monkeypatch, tmp_path):
    """
    Fresh Config singleton driven by a clean environment.

    Returns a callable so tests can set extra env vars before the first
    load: env_config(CB_LOSS_1H_LIMIT_SOL="2").
    """
    from liqguard.core.application import reset_application

    for name in (
        "LIQUIDATOR_WALLET", "ADMIN_WALLET", "LIQUIDATOR_ADAPTERS",
        "LIQUIDATOR_INSTANCE_ID", "INSTANCE_ID", "REDIS_URL", "DATA_DB_PATH",
        "CB_LOSS_1H_LIMIT_SOL", "CB_LOSS_24H_LIMIT_SOL", "CB_COUNT_1H_LIMIT",
        "CB_STATE_FILE", "LIQUIDATOR_SCAN_INTERVAL_SECONDS",
        "LIQUIDATOR_LOCK_TTL_SECONDS", "LIQUIDATOR_THROTTLE_SECONDS",
        "EXPOSURE_WATCH_BPS", "EXPOSURE_WARNING_BPS", "EXPOSURE_CRITICAL_BPS",
        "LIQGUARD_TELEGRAM_TOKEN", "LIQGUARD_TELEGRAM_CHAT_ID",
        "LIQGUARD_DISCORD_WEBHOOK",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("JOURNAL_DIR", str(tmp_path / "journal"))
    monkeypatch.setenv("LIQUIDATOR_THROTTLE_SECONDS", "0")

    Config._instance = None
    reset_application()

    def _load(**env) -> Config:
        for key, value in env.items():
            monkeypatch.setenv(key, str(value))
        Config._instance = None
        return Config()

    yield _load

    reset_application()
    Config._instance = None
