"""
Persistence for the loan ledger and the liquidation record log.

- InMemory*: Process-local (single worker, tests)
- DuckDB*: DuckDB file shared by workers on one host
"""

from .loan_ledger import InMemoryLoanLedger, DuckDBLoanLedger
from .liquidation_log import InMemoryLiquidationLog, DuckDBLiquidationLog

__all__ = [
    "InMemoryLoanLedger",
    "DuckDBLoanLedger",
    "InMemoryLiquidationLog",
    "DuckDBLiquidationLog",
]
