"""
Loan ledger stores.

- InMemoryLoanLedger: Dict-based (single process, tests)
- DuckDBLoanLedger: DuckDB file shared by workers on one host

Both implement the LoanLedger protocol. mark_liquidated is the
compare-and-set that makes the ACTIVE -> LIQUIDATED_* transition
happen at most once regardless of how many workers race for it.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path

import duckdb

from ..core.interfaces import Loan, LoanStatus
from ..utils.datetime_utils import ensure_utc, to_storage
from ..utils.logger import get_logger


class InMemoryLoanLedger:
    """
    In-memory ledger.

    Returned loans are copies; callers cannot mutate ledger state except
    through the ledger's methods.
    """

    def __init__(self, loans: list[Loan] | None = None):
        self._lock = threading.Lock()
        self._loans: dict[str, Loan] = {}
        for loan in loans or []:
            self.add_loan(loan)

    def add_loan(self, loan: Loan) -> None:
        with self._lock:
            self._loans[loan.loan_id] = replace(loan)

    def list_active_loans(self) -> list[Loan]:
        with self._lock:
            return [replace(l) for l in self._loans.values() if l.status == LoanStatus.ACTIVE]

    def list_loans(self, status: LoanStatus | None = None) -> list[Loan]:
        with self._lock:
            return [replace(l) for l in self._loans.values() if status is None or l.status == status]

    def get_loan(self, loan_id: str) -> Loan | None:
        with self._lock:
            loan = self._loans.get(loan_id)
            return replace(loan) if loan else None

    def mark_liquidated(self, loan_id: str, status: LoanStatus, at: datetime) -> bool:
        if not status.is_liquidated:
            raise ValueError(f"mark_liquidated requires a liquidated status, got {status}")
        with self._lock:
            loan = self._loans.get(loan_id)
            if loan is None or loan.status != LoanStatus.ACTIVE:
                return False
            loan.status = status
            loan.liquidated_at = at
            return True

    def mark_repaid(self, loan_id: str) -> bool:
        """Borrower repaid; ACTIVE -> REPAID."""
        with self._lock:
            loan = self._loans.get(loan_id)
            if loan is None or loan.status != LoanStatus.ACTIVE:
                return False
            loan.status = LoanStatus.REPAID
            return True


class DuckDBLoanLedger:
    """
    DuckDB-backed ledger.

    A single connection is shared and serialized by a lock. The transition
    is an UPDATE guarded by status = 'Active'; the RETURNING row tells us
    whether this caller won.
    """

    TABLE = "loans"

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = duckdb.connect(str(self.db_path))
        self._lock = threading.Lock()
        self.logger = get_logger()
        self._init_schema()
        self.logger.info(f"DuckDBLoanLedger initialized: db={self.db_path}")

    def _init_schema(self):
        """Initialize loans table."""
        with self._lock:
            self.conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.TABLE} (
                    loan_id VARCHAR PRIMARY KEY,
                    borrower VARCHAR NOT NULL,
                    asset_id VARCHAR NOT NULL,
                    collateral_amount BIGINT NOT NULL,
                    amount_borrowed BIGINT NOT NULL,
                    due_at TIMESTAMP NOT NULL,
                    liquidation_price DOUBLE NOT NULL,
                    status VARCHAR NOT NULL,
                    liquidated_at TIMESTAMP
                )
            """)

    def _row_to_loan(self, row) -> Loan:
        return Loan(
            loan_id=row[0],
            borrower=row[1],
            asset_id=row[2],
            collateral_amount=int(row[3]),
            amount_borrowed=int(row[4]),
            due_at=ensure_utc(row[5]),
            liquidation_price=float(row[6]),
            status=LoanStatus(row[7]),
            liquidated_at=ensure_utc(row[8]) if row[8] else None,
        )

    _COLUMNS = (
        "loan_id, borrower, asset_id, collateral_amount, amount_borrowed, "
        "due_at, liquidation_price, status, liquidated_at"
    )

    def add_loan(self, loan: Loan) -> None:
        """Insert or replace a loan."""
        with self._lock:
            self.conn.execute(f"""
                INSERT OR REPLACE INTO {self.TABLE} ({self._COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                loan.loan_id,
                loan.borrower,
                loan.asset_id,
                loan.collateral_amount,
                loan.amount_borrowed,
                to_storage(loan.due_at),
                loan.liquidation_price,
                loan.status.value,
                to_storage(loan.liquidated_at),
            ])

    def list_active_loans(self) -> list[Loan]:
        return self.list_loans(LoanStatus.ACTIVE)

    def list_loans(self, status: LoanStatus | None = None) -> list[Loan]:
        with self._lock:
            if status is None:
                rows = self.conn.execute(
                    f"SELECT {self._COLUMNS} FROM {self.TABLE} ORDER BY loan_id"
                ).fetchall()
            else:
                rows = self.conn.execute(
                    f"SELECT {self._COLUMNS} FROM {self.TABLE} WHERE status = ? ORDER BY loan_id",
                    [status.value],
                ).fetchall()
        return [self._row_to_loan(r) for r in rows]

    def get_loan(self, loan_id: str) -> Loan | None:
        with self._lock:
            row = self.conn.execute(
                f"SELECT {self._COLUMNS} FROM {self.TABLE} WHERE loan_id = ?",
                [loan_id],
            ).fetchone()
        return self._row_to_loan(row) if row else None

    def mark_liquidated(self, loan_id: str, status: LoanStatus, at: datetime) -> bool:
        if not status.is_liquidated:
            raise ValueError(f"mark_liquidated requires a liquidated status, got {status}")
        with self._lock:
            rows = self.conn.execute(f"""
                UPDATE {self.TABLE}
                SET status = ?, liquidated_at = ?
                WHERE loan_id = ? AND status = ?
                RETURNING loan_id
            """, [status.value, to_storage(at), loan_id, LoanStatus.ACTIVE.value]).fetchall()
        return len(rows) == 1

    def mark_repaid(self, loan_id: str) -> bool:
        """Borrower repaid; ACTIVE -> REPAID."""
        with self._lock:
            rows = self.conn.execute(f"""
                UPDATE {self.TABLE}
                SET status = ?
                WHERE loan_id = ? AND status = ?
                RETURNING loan_id
            """, [LoanStatus.REPAID.value, loan_id, LoanStatus.ACTIVE.value]).fetchall()
        return len(rows) == 1

    def close(self):
        """Close database connection."""
        with self._lock:
            self.conn.close()
