"""
Append-only liquidation record log.

- InMemoryLiquidationLog: Bounded in-process history
- DuckDBLiquidationLog: Durable, single process (DuckDB locks the file)
- RedisLiquidationLog: Durable, shared by every worker

Loss windows for the circuit breaker are computed from this log on demand;
nothing here aggregates.
"""

from __future__ import annotations

import json
import threading
from collections import deque
from datetime import datetime
from pathlib import Path

import duckdb

from ..config.constants import LIQUIDATION_LOG_KEY
from ..core.interfaces import LiquidationRecord
from ..utils.datetime_utils import ensure_utc, to_storage
from ..utils.logger import get_logger


class InMemoryLiquidationLog:
    """
    In-memory log keeping the newest max_records entries.

    max_records must comfortably cover 24h of liquidations or the 24h loss
    window will undercount.
    """

    def __init__(self, max_records: int = 1000):
        self._lock = threading.Lock()
        self._records: deque[LiquidationRecord] = deque(maxlen=max_records)

    def append(self, record: LiquidationRecord) -> None:
        with self._lock:
            self._records.append(record)

    def records_since(self, since: datetime) -> list[LiquidationRecord]:
        with self._lock:
            return [r for r in self._records if r.timestamp >= since]

    def recent(self, limit: int) -> list[LiquidationRecord]:
        with self._lock:
            records = list(self._records)
        records.reverse()
        return records[:limit]

    def for_asset(self, asset_id: str) -> list[LiquidationRecord]:
        with self._lock:
            return [r for r in self._records if r.asset_id == asset_id]

    def all_records(self) -> list[LiquidationRecord]:
        with self._lock:
            return list(self._records)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class DuckDBLiquidationLog:
    """DuckDB-backed record log (one row per completed liquidation)."""

    TABLE = "liquidation_records"

    _COLUMNS = (
        "loan_id, asset_id, expected_recovery, actual_recovery, loss_lamports, "
        "loss_bps, timestamp, auto_blacklisted, borrower, collateral_amount, "
        "reason, instance_id, tx_signature"
    )

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = duckdb.connect(str(self.db_path))
        self._lock = threading.Lock()
        self.logger = get_logger()
        self._init_schema()
        self.logger.info(f"DuckDBLiquidationLog initialized: db={self.db_path}")

    def _init_schema(self):
        """Initialize record table."""
        with self._lock:
            self.conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.TABLE} (
                    loan_id VARCHAR NOT NULL,
                    asset_id VARCHAR NOT NULL,
                    expected_recovery BIGINT NOT NULL,
                    actual_recovery BIGINT NOT NULL,
                    loss_lamports BIGINT NOT NULL,
                    loss_bps INTEGER NOT NULL,
                    timestamp TIMESTAMP NOT NULL,
                    auto_blacklisted BOOLEAN NOT NULL,
                    borrower VARCHAR,
                    collateral_amount BIGINT,
                    reason VARCHAR,
                    instance_id VARCHAR,
                    tx_signature VARCHAR
                )
            """)
            self.conn.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_liquidations_timestamp ON {self.TABLE} (timestamp)
            """)

    def _row_to_record(self, row) -> LiquidationRecord:
        return LiquidationRecord(
            loan_id=row[0],
            asset_id=row[1],
            expected_recovery=int(row[2]),
            actual_recovery=int(row[3]),
            loss_lamports=int(row[4]),
            loss_bps=int(row[5]),
            timestamp=ensure_utc(row[6]),
            auto_blacklisted=bool(row[7]),
            borrower=row[8] or "",
            collateral_amount=int(row[9] or 0),
            reason=row[10] or "price",
            instance_id=row[11] or "",
            tx_signature=row[12],
        )

    def append(self, record: LiquidationRecord) -> None:
        with self._lock:
            self.conn.execute(f"""
                INSERT INTO {self.TABLE} ({self._COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                record.loan_id,
                record.asset_id,
                record.expected_recovery,
                record.actual_recovery,
                record.loss_lamports,
                record.loss_bps,
                to_storage(record.timestamp),
                record.auto_blacklisted,
                record.borrower,
                record.collateral_amount,
                record.reason,
                record.instance_id,
                record.tx_signature,
            ])

    def _query(self, where: str = "", params: list | None = None, order: str = "ASC", limit: int | None = None):
        sql = f"SELECT {self._COLUMNS} FROM {self.TABLE} {where} ORDER BY timestamp {order}, loan_id {order}"
        if limit is not None:
            sql += f" LIMIT {int(limit)}"
        with self._lock:
            rows = self.conn.execute(sql, params or []).fetchall()
        return [self._row_to_record(r) for r in rows]

    def records_since(self, since: datetime) -> list[LiquidationRecord]:
        return self._query("WHERE timestamp >= ?", [to_storage(since)])

    def recent(self, limit: int) -> list[LiquidationRecord]:
        return self._query(order="DESC", limit=limit)

    def for_asset(self, asset_id: str) -> list[LiquidationRecord]:
        return self._query("WHERE asset_id = ?", [asset_id])

    def all_records(self) -> list[LiquidationRecord]:
        return self._query()

    def close(self):
        """Close database connection."""
        with self._lock:
            self.conn.close()


class RedisLiquidationLog:
    """
    Redis-backed record log shared by every worker.

    Each record is stored as its JSON form in a sorted set scored by epoch
    seconds, and again in a per-asset sorted set, written together in one
    MULTI/EXEC so the two never disagree.
    """

    def __init__(self, client, key: str = LIQUIDATION_LOG_KEY):
        """
        Args:
            client: redis.Redis instance with decode_responses=True
            key: Sorted-set key holding every record
        """
        self._client = client
        self._key = key

    @classmethod
    def from_url(cls, url: str) -> "RedisLiquidationLog":
        import redis

        client = redis.Redis.from_url(url, decode_responses=True, socket_connect_timeout=3)
        return cls(client)

    def _asset_key(self, asset_id: str) -> str:
        return f"{self._key}:asset:{asset_id}"

    @staticmethod
    def _decode(members) -> list[LiquidationRecord]:
        return [LiquidationRecord.from_dict(json.loads(m)) for m in members]

    def append(self, record: LiquidationRecord) -> None:
        member = json.dumps(record.to_dict(), sort_keys=True)
        score = record.timestamp.timestamp()
        pipe = self._client.pipeline(transaction=True)
        pipe.zadd(self._key, {member: score})
        pipe.zadd(self._asset_key(record.asset_id), {member: score})
        pipe.execute()

    def records_since(self, since: datetime) -> list[LiquidationRecord]:
        return self._decode(self._client.zrangebyscore(self._key, ensure_utc(since).timestamp(), "+inf"))

    def recent(self, limit: int) -> list[LiquidationRecord]:
        # zrevrange(0, -1) would return everything
        if limit <= 0:
            return []
        return self._decode(self._client.zrevrange(self._key, 0, limit - 1))

    def for_asset(self, asset_id: str) -> list[LiquidationRecord]:
        return self._decode(self._client.zrange(self._asset_key(asset_id), 0, -1))

    def all_records(self) -> list[LiquidationRecord]:
        return self._decode(self._client.zrange(self._key, 0, -1))

    def __len__(self) -> int:
        return int(self._client.zcard(self._key))
