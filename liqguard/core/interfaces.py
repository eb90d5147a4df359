"""
Protocol definitions and shared data types for the liquidation engine.

The engine owns scheduling, locking, loss accounting and risk decisions.
Everything that touches the chain, prices or persistence beyond what the
engine reads/writes is an external collaborator defined here as a Protocol:

- LoanLedger: Loan state (list, fetch, compare-and-set transition)
- LiquidationLog: Append-only liquidation outcomes
- LockStore: Non-blocking mutual exclusion keyed by loan id
- SettlementClient: Builds, signs and submits the liquidation
- PriceFeed / LiquidityReader: Market reads for triggers and exposure
- SignerProvider: Resolves the signing identity for this instance
- AlertSink: Receives structured security events
- TokenBlacklister: Blocks new loans against an asset
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol, runtime_checkable


# =============================================================================
# Data Types
# =============================================================================


class LoanStatus(str, Enum):
    """Ledger status of a loan. The engine only moves ACTIVE -> LIQUIDATED_*."""

    ACTIVE = "Active"
    REPAID = "Repaid"
    LIQUIDATED_BY_TIME = "LiquidatedByTime"
    LIQUIDATED_BY_PRICE = "LiquidatedByPrice"

    @property
    def is_liquidated(self) -> bool:
        return self in (LoanStatus.LIQUIDATED_BY_TIME, LoanStatus.LIQUIDATED_BY_PRICE)


@dataclass(slots=True)
class Loan:
    """
    A collateralized loan as seen by the engine.

    Amounts are integer lamports. liquidation_price is the SOL price per
    collateral unit below which the loan may be liquidated.
    """

    loan_id: str
    borrower: str
    asset_id: str
    collateral_amount: int
    amount_borrowed: int
    due_at: datetime
    liquidation_price: float
    status: LoanStatus = LoanStatus.ACTIVE
    liquidated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    def is_overdue(self, now: datetime) -> bool:
        return self.due_at < now

    def is_under_price(self, price: float | None) -> bool:
        if price is None:
            return False
        return price < self.liquidation_price

    def liquidation_status(self, now: datetime) -> LoanStatus:
        """Terminal status for a liquidation happening at `now`."""
        if self.is_overdue(now):
            return LoanStatus.LIQUIDATED_BY_TIME
        return LoanStatus.LIQUIDATED_BY_PRICE


@dataclass(slots=True)
class SettlementResult:
    """Outcome of one settlement attempt."""

    success: bool
    actual_recovered_amount: int = 0
    error: str | None = None
    tx_signature: str | None = None


@dataclass(slots=True, frozen=True)
class LockHandle:
    """Proof of an exclusive hold on a lock key until expires_at."""

    key: str
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class LiquidationRecord:
    """
    Append-only outcome of a completed liquidation.

    loss_lamports and loss_bps are derived from expected/actual recovery
    by the tracker; records are never mutated after creation.
    """

    loan_id: str
    asset_id: str
    expected_recovery: int
    actual_recovery: int
    loss_lamports: int
    loss_bps: int
    timestamp: datetime
    auto_blacklisted: bool = False
    borrower: str = ""
    collateral_amount: int = 0
    reason: str = "price"
    instance_id: str = ""
    tx_signature: str | None = None

    @property
    def has_loss(self) -> bool:
        return self.loss_lamports > 0

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["timestamp"] = self.timestamp.isoformat()
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "LiquidationRecord":
        data = dict(d)
        timestamp = datetime.fromisoformat(data.pop("timestamp"))
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return cls(timestamp=timestamp, **data)


@dataclass
class SecurityEvent:
    """Structured security/audit event delivered to an AlertSink."""

    event_type: str
    severity: str
    message: str
    timestamp: datetime
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "severity": self.severity,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }


# =============================================================================
# Protocol Definitions
# =============================================================================


@runtime_checkable
class LoanLedger(Protocol):
    """
    Loan state owned outside the engine.

    mark_liquidated is a compare-and-set: it succeeds only if the loan is
    still ACTIVE, so concurrent workers cannot both transition a loan.
    """

    def list_active_loans(self) -> list[Loan]:
        ...

    def get_loan(self, loan_id: str) -> Loan | None:
        ...

    def mark_liquidated(self, loan_id: str, status: LoanStatus, at: datetime) -> bool:
        """Transition ACTIVE -> status. Returns False if the loan was not ACTIVE."""
        ...


@runtime_checkable
class LiquidationLog(Protocol):
    """Append-only store of LiquidationRecords."""

    def append(self, record: LiquidationRecord) -> None:
        ...

    def records_since(self, since: datetime) -> list[LiquidationRecord]:
        """Records with timestamp >= since, oldest first."""
        ...

    def recent(self, limit: int) -> list[LiquidationRecord]:
        """Newest first."""
        ...

    def for_asset(self, asset_id: str) -> list[LiquidationRecord]:
        """All retained records for one asset, oldest first."""
        ...

    def all_records(self) -> list[LiquidationRecord]:
        ...


@runtime_checkable
class LockStore(Protocol):
    """Non-blocking, TTL-bounded mutual exclusion."""

    def acquire(self, key: str, ttl_seconds: float) -> LockHandle | None:
        """Take the lock or return None immediately if it is held."""
        ...

    def release(self, handle: LockHandle) -> bool:
        """Release only if the handle still owns the key."""
        ...


@runtime_checkable
class SettlementClient(Protocol):
    """Closes a loan on-ledger and reports what was recovered."""

    def settle(self, loan_id: str, identity: str) -> SettlementResult:
        ...


@runtime_checkable
class PriceFeed(Protocol):
    """Current SOL price per collateral unit. Raises on feed failure."""

    def price(self, asset_id: str) -> float:
        ...


@runtime_checkable
class LiquidityReader(Protocol):
    """Pool liquidity in lamports; None when unknown."""

    def liquidity(self, asset_id: str) -> int | None:
        ...


@runtime_checkable
class SignerProvider(Protocol):
    """Resolves the signing identity for this instance; None when unset."""

    def resolve(self) -> str | None:
        ...


@runtime_checkable
class AlertSink(Protocol):
    """Receives security events."""

    def emit(self, event: SecurityEvent) -> None:
        ...


@runtime_checkable
class TokenBlacklister(Protocol):
    """Blocks new loans against an asset."""

    def blacklist(self, asset_id: str, reason: str) -> None:
        ...


@dataclass
class ExternalAdapters:
    """
    Bundle of external collaborators built by the adapter factory.

    signer and blacklister are optional: without a signer the instance
    falls back to the configured wallet, without a blacklister auto-blacklist
    decisions are only logged. ledger and liquidation_log, when given, take
    precedence over the stores built from configuration; every worker
    must see the same liquidation_log for the circuit breaker to hold
    fleet-wide.
    """

    settlement: SettlementClient
    price_feed: PriceFeed
    liquidity: LiquidityReader
    signer: SignerProvider | None = None
    blacklister: TokenBlacklister | None = None
    ledger: LoanLedger | None = None
    liquidation_log: LiquidationLog | None = None
