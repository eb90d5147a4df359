"""
Tests for loan ledgers and liquidation logs (in-memory, DuckDB and Redis).

Validates that:
1. mark_liquidated is a compare-and-set from ACTIVE only
2. Ledgers hand out copies, never live state
3. DuckDB round-trips loans and records with UTC timestamps
4. Log queries return the documented ordering
5. Separate Redis log handles over one server see one shared history
"""

from datetime import timedelta

import pytest

from liqguard.core.interfaces import LiquidationLog, LiquidationRecord, LoanLedger, LoanStatus
from liqguard.data.liquidation_log import (
    DuckDBLiquidationLog,
    InMemoryLiquidationLog,
    RedisLiquidationLog,
)
from liqguard.data.loan_ledger import DuckDBLoanLedger, InMemoryLoanLedger

from conftest import SOL, START, SortedSetRedis, make_loan, make_overdue_loan


@pytest.fixture(params=["memory", "duckdb"])
def ledger(request, tmp_path):
    if request.param == "memory":
        yield InMemoryLoanLedger()
        return
    store = DuckDBLoanLedger(tmp_path / "ledger.duckdb")
    yield store
    store.close()


@pytest.fixture(params=["memory", "duckdb", "redis"])
def record_log(request, tmp_path):
    if request.param == "memory":
        yield InMemoryLiquidationLog()
        return
    if request.param == "redis":
        yield RedisLiquidationLog(SortedSetRedis())
        return
    store = DuckDBLiquidationLog(tmp_path / "records.duckdb")
    yield store
    store.close()


def make_record(loan_id: str, at, asset_id: str = "MINT_A", loss: int = 0) -> LiquidationRecord:
    return LiquidationRecord(
        loan_id=loan_id,
        asset_id=asset_id,
        expected_recovery=SOL,
        actual_recovery=SOL - loss,
        loss_lamports=loss,
        loss_bps=loss * 10_000 // SOL,
        timestamp=at,
        borrower="borrower-1",
        collateral_amount=123,
        reason="time",
        instance_id="w1",
        tx_signature=f"tx-{loan_id}",
    )


class TestLoanLedger:
    """Shared behavior of every ledger."""

    def test_satisfies_protocol(self, ledger):
        assert isinstance(ledger, LoanLedger)

    def test_round_trip(self, ledger):
        loan = make_loan("l1", borrowed=3 * SOL, collateral=42, liquidation_price=0.125)
        ledger.add_loan(loan)

        fetched = ledger.get_loan("l1")
        assert fetched == loan
        assert fetched.due_at.tzinfo is not None
        assert ledger.get_loan("missing") is None

    def test_list_active(self, ledger):
        ledger.add_loan(make_loan("l1"))
        ledger.add_loan(make_loan("l2"))
        ledger.add_loan(make_loan("l3"))
        ledger.mark_repaid("l2")

        assert sorted(l.loan_id for l in ledger.list_active_loans()) == ["l1", "l3"]
        assert [l.loan_id for l in ledger.list_loans(LoanStatus.REPAID)] == ["l2"]

    def test_compare_and_set(self, ledger):
        """Only the first transition out of ACTIVE wins."""
        ledger.add_loan(make_overdue_loan("l1"))
        at = START + timedelta(minutes=5)

        assert ledger.mark_liquidated("l1", LoanStatus.LIQUIDATED_BY_TIME, at) is True
        assert ledger.mark_liquidated("l1", LoanStatus.LIQUIDATED_BY_PRICE, at) is False

        loan = ledger.get_loan("l1")
        assert loan.status == LoanStatus.LIQUIDATED_BY_TIME
        assert loan.liquidated_at == at

    def test_repaid_loan_cannot_be_liquidated(self, ledger):
        ledger.add_loan(make_loan("l1"))
        assert ledger.mark_repaid("l1") is True
        assert ledger.mark_liquidated("l1", LoanStatus.LIQUIDATED_BY_PRICE, START) is False
        assert ledger.mark_repaid("l1") is False

    def test_unknown_loan(self, ledger):
        assert ledger.mark_liquidated("missing", LoanStatus.LIQUIDATED_BY_TIME, START) is False

    def test_rejects_non_liquidated_status(self, ledger):
        ledger.add_loan(make_loan("l1"))
        with pytest.raises(ValueError):
            ledger.mark_liquidated("l1", LoanStatus.REPAID, START)


class TestInMemoryLedgerCopies:
    def test_mutating_returned_loan_does_not_leak(self):
        ledger = InMemoryLoanLedger([make_loan("l1")])
        loan = ledger.get_loan("l1")
        loan.status = LoanStatus.REPAID
        assert ledger.get_loan("l1").is_active


class TestDuckDBLedgerPersistence:
    def test_survives_reopen(self, tmp_path):
        path = tmp_path / "ledger.duckdb"
        first = DuckDBLoanLedger(path)
        first.add_loan(make_overdue_loan("l1"))
        first.mark_liquidated("l1", LoanStatus.LIQUIDATED_BY_TIME, START)
        first.close()

        second = DuckDBLoanLedger(path)
        try:
            assert second.get_loan("l1").status == LoanStatus.LIQUIDATED_BY_TIME
            assert second.list_active_loans() == []
        finally:
            second.close()


class TestLiquidationLog:
    """Shared behavior of every record log."""

    def test_satisfies_protocol(self, record_log):
        assert isinstance(record_log, LiquidationLog)

    def test_round_trip(self, record_log):
        record = make_record("l1", START, loss=SOL // 4)
        record_log.append(record)
        assert record_log.all_records() == [record]

    def test_records_since_is_inclusive(self, record_log):
        """Window start is inclusive."""
        record_log.append(make_record("old", START - timedelta(hours=2)))
        record_log.append(make_record("edge", START - timedelta(hours=1)))
        record_log.append(make_record("new", START))

        since = record_log.records_since(START - timedelta(hours=1))
        assert [r.loan_id for r in since] == ["edge", "new"]

    def test_recent_newest_first(self, record_log):
        for i in range(5):
            record_log.append(make_record(f"l{i}", START + timedelta(minutes=i)))
        assert [r.loan_id for r in record_log.recent(3)] == ["l4", "l3", "l2"]

    def test_for_asset(self, record_log):
        record_log.append(make_record("a1", START, asset_id="A"))
        record_log.append(make_record("b1", START + timedelta(seconds=1), asset_id="B"))
        record_log.append(make_record("a2", START + timedelta(seconds=2), asset_id="A"))
        assert [r.loan_id for r in record_log.for_asset("A")] == ["a1", "a2"]


class TestRedisLiquidationLog:
    """Record log shared through Redis sorted sets."""

    def test_handles_share_history(self):
        """Two workers' log handles on one server read each other's records."""
        server = SortedSetRedis()
        worker_a = RedisLiquidationLog(server)
        worker_b = RedisLiquidationLog(server)

        worker_a.append(make_record("a1", START, loss=SOL // 4))
        worker_b.append(make_record("b1", START + timedelta(seconds=1), loss=SOL // 2))

        assert [r.loan_id for r in worker_a.records_since(START)] == ["a1", "b1"]
        assert sum(r.loss_lamports for r in worker_b.all_records()) == SOL // 4 + SOL // 2
        assert len(worker_a) == 2

    def test_key_layout(self):
        server = SortedSetRedis()
        RedisLiquidationLog(server).append(make_record("l1", START, asset_id="MINT_A"))

        assert set(server.zsets) == {
            "liquidator:liquidations",
            "liquidator:liquidations:asset:MINT_A",
        }
        [score] = server.zsets["liquidator:liquidations"].values()
        assert score == START.timestamp()

    def test_record_fields_survive(self):
        log = RedisLiquidationLog(SortedSetRedis())
        record = make_record("l1", START, loss=SOL // 4)
        log.append(record)

        [stored] = log.recent(1)
        assert stored == record
        assert stored.timestamp.tzinfo is not None
        assert stored.tx_signature == "tx-l1"

    def test_recent_zero_is_empty(self):
        log = RedisLiquidationLog(SortedSetRedis())
        log.append(make_record("l1", START))
        assert log.recent(0) == []
