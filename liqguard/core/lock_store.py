"""
Per-loan mutual exclusion for redundant liquidator workers.

Acquisition never waits: a held lock means another worker is on the loan
and the caller simply moves on. Holds are bounded by a TTL so a worker
that dies mid-liquidation cannot block a loan forever.

- InMemoryLockStore: Thread-safe, process-local (single worker, tests)
- RedisLockStore: SET NX PX + compare-and-delete (multi-process)
"""

from __future__ import annotations

import secrets
import threading
from datetime import datetime, timedelta

from ..config.constants import LOAN_LOCK_PREFIX
from ..utils.datetime_utils import Clock, SystemClock
from ..utils.logger import get_logger
from .interfaces import LockHandle


logger = get_logger()


def loan_lock_key(loan_id: str) -> str:
    """Lock key guarding one loan."""
    return f"{LOAN_LOCK_PREFIX}{loan_id}"


def _new_token() -> str:
    return secrets.token_hex(16)


class InMemoryLockStore:
    """
    Process-local lock store.

    Expired holds are treated as absent and are pruned on every acquire.
    A handle can only release the key while its token is still the current
    holder.
    """

    def __init__(self, clock: Clock | None = None):
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._holds: dict[str, tuple[str, datetime]] = {}

    def _prune(self, now: datetime) -> None:
        """Drop expired holds, including those of crashed owners. Must hold _lock."""
        expired = [key for key, (_, expires_at) in self._holds.items() if expires_at <= now]
        for key in expired:
            del self._holds[key]

    def acquire(self, key: str, ttl_seconds: float) -> LockHandle | None:
        now = self._clock.now()
        with self._lock:
            self._prune(now)
            if key in self._holds:
                return None
            token = _new_token()
            expires_at = now + timedelta(seconds=ttl_seconds)
            self._holds[key] = (token, expires_at)
            return LockHandle(key=key, token=token, expires_at=expires_at)

    def release(self, handle: LockHandle) -> bool:
        with self._lock:
            current = self._holds.get(handle.key)
            if current is None or current[0] != handle.token:
                return False
            del self._holds[handle.key]
            return True

    def is_held(self, key: str) -> bool:
        """True if an unexpired hold exists for key."""
        now = self._clock.now()
        with self._lock:
            current = self._holds.get(key)
            return current is not None and current[1] > now

    def __len__(self) -> int:
        """Holds currently tracked, expired ones included until the next acquire."""
        with self._lock:
            return len(self._holds)

    def clear(self) -> None:
        with self._lock:
            self._holds.clear()


# Delete only if we still own the key
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RedisLockStore:
    """
    Redis-backed lock store shared by every worker.

    Acquire is SET key token NX PX ttl. Release runs a Lua script so the
    compare and the delete happen atomically on the server.
    """

    def __init__(self, client, clock: Clock | None = None):
        """
        Args:
            client: redis.Redis instance (decode_responses=True recommended)
            clock: Used only to stamp LockHandle.expires_at
        """
        self._client = client
        self._clock = clock or SystemClock()

    @classmethod
    def from_url(cls, url: str, clock: Clock | None = None) -> "RedisLockStore":
        import redis

        client = redis.Redis.from_url(url, decode_responses=True, socket_connect_timeout=3)
        return cls(client, clock=clock)

    def acquire(self, key: str, ttl_seconds: float) -> LockHandle | None:
        token = _new_token()
        ttl_ms = max(1, int(ttl_seconds * 1000))
        try:
            acquired = self._client.set(key, token, nx=True, px=ttl_ms)
        except Exception as e:
            # Unreachable store reads as contention
            logger.warning(f"Lock acquire failed for {key}: {e}")
            return None
        if not acquired:
            return None
        expires_at = self._clock.now() + timedelta(milliseconds=ttl_ms)
        return LockHandle(key=key, token=token, expires_at=expires_at)

    def release(self, handle: LockHandle) -> bool:
        try:
            result = self._client.eval(_RELEASE_SCRIPT, 1, handle.key, handle.token)
        except Exception as e:
            # TTL still bounds the hold
            logger.warning(f"Lock release failed for {handle.key}: {e}")
            return False
        return bool(result)
