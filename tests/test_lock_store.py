"""
Tests for per-loan lock stores.

Validates that:
1. A held key cannot be acquired until released or expired
2. Release only succeeds for the current holder's token
3. Redis store maps to SET NX PX and a compare-and-delete script
4. Redis errors read as "not acquired" rather than raising
"""

import threading
from unittest.mock import MagicMock

from liqguard.core.interfaces import LockHandle
from liqguard.core.lock_store import InMemoryLockStore, RedisLockStore, loan_lock_key


class TestLockKey:
    def test_key_format(self):
        assert loan_lock_key("abc") == "liquidation:loan:abc"


class TestInMemoryLockStore:
    """Process-local store."""

    def test_acquire_then_contend(self, clock):
        store = InMemoryLockStore(clock=clock)
        handle = store.acquire("k", 15)

        assert handle is not None
        assert handle.key == "k"
        assert (handle.expires_at - clock.now()).total_seconds() == 15
        assert store.acquire("k", 15) is None
        assert store.is_held("k")

    def test_release_allows_reacquire(self, clock):
        store = InMemoryLockStore(clock=clock)
        handle = store.acquire("k", 15)
        assert store.release(handle) is True
        assert not store.is_held("k")
        assert store.acquire("k", 15) is not None

    def test_hold_expires_after_ttl(self, clock):
        store = InMemoryLockStore(clock=clock)
        store.acquire("k", 15)

        clock.advance(14)
        assert store.acquire("k", 15) is None

        clock.advance(1)
        assert store.acquire("k", 15) is not None

    def test_stale_token_cannot_release_new_holder(self, clock):
        """An expired holder cannot release a lock taken over by another."""
        store = InMemoryLockStore(clock=clock)
        first = store.acquire("k", 15)
        clock.advance(16)
        second = store.acquire("k", 15)

        assert store.release(first) is False
        assert store.is_held("k")
        assert store.release(second) is True

    def test_expired_holds_pruned_on_acquire(self, clock):
        """Holds abandoned by crashed owners do not accumulate."""
        store = InMemoryLockStore(clock=clock)
        for i in range(50):
            store.acquire(f"loan-{i}", 15)
        assert len(store) == 50

        clock.advance(16)
        assert store.acquire("loan-new", 15) is not None

        assert len(store) == 1
        assert store.is_held("loan-new")
        assert not store.is_held("loan-0")

    def test_forged_handle_rejected(self, clock):
        store = InMemoryLockStore(clock=clock)
        real = store.acquire("k", 15)
        forged = LockHandle(key="k", token="not-the-token", expires_at=real.expires_at)
        assert store.release(forged) is False
        assert store.is_held("k")

    def test_keys_are_independent(self, clock):
        store = InMemoryLockStore(clock=clock)
        assert store.acquire("a", 15) is not None
        assert store.acquire("b", 15) is not None

    def test_concurrent_acquire_single_winner(self, clock):
        store = InMemoryLockStore(clock=clock)
        barrier = threading.Barrier(8)
        wins = []

        def contend():
            barrier.wait()
            handle = store.acquire("k", 15)
            if handle is not None:
                wins.append(handle)

        threads = [threading.Thread(target=contend) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(wins) == 1


class TestRedisLockStore:
    """Redis store against a mocked client."""

    def test_acquire_uses_set_nx_px(self, clock):
        client = MagicMock()
        client.set.return_value = True
        store = RedisLockStore(client, clock=clock)

        handle = store.acquire("liquidation:loan:1", 15)

        assert handle is not None
        args, kwargs = client.set.call_args
        assert args[0] == "liquidation:loan:1"
        assert args[1] == handle.token
        assert kwargs == {"nx": True, "px": 15000}

    def test_acquire_contended(self, clock):
        client = MagicMock()
        client.set.return_value = None
        store = RedisLockStore(client, clock=clock)
        assert store.acquire("k", 15) is None

    def test_acquire_error_is_contention(self, clock):
        """Redis outage reads as contention, so the loan is skipped."""
        client = MagicMock()
        client.set.side_effect = ConnectionError("redis down")
        store = RedisLockStore(client, clock=clock)
        assert store.acquire("k", 15) is None

    def test_release_runs_compare_and_delete(self, clock):
        client = MagicMock()
        client.set.return_value = True
        client.eval.return_value = 1
        store = RedisLockStore(client, clock=clock)
        handle = store.acquire("k", 15)

        assert store.release(handle) is True
        script, numkeys, key, token = client.eval.call_args[0]
        assert 'redis.call("get", KEYS[1]) == ARGV[1]' in script
        assert numkeys == 1
        assert key == "k"
        assert token == handle.token

    def test_release_of_lost_hold(self, clock):
        client = MagicMock()
        client.set.return_value = True
        client.eval.return_value = 0
        store = RedisLockStore(client, clock=clock)
        assert store.release(store.acquire("k", 15)) is False

    def test_release_error_returns_false(self, clock):
        client = MagicMock()
        client.set.return_value = True
        client.eval.side_effect = ConnectionError("redis down")
        store = RedisLockStore(client, clock=clock)
        assert store.release(store.acquire("k", 15)) is False

    def test_tokens_are_unique(self, clock):
        client = MagicMock()
        client.set.return_value = True
        store = RedisLockStore(client, clock=clock)
        tokens = {store.acquire("k", 15).token for _ in range(50)}
        assert len(tokens) == 50
