"""
Tests for the per-instance liquidation scheduler.
"""

import threading
import time
from unittest.mock import MagicMock

import pytest

from liqguard.engine.runner import LiquidatorRunner

from conftest import make_overdue_loan


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class TestRunOnce:
    def test_runs_a_cycle(self, world):
        world.add_loans(make_overdue_loan("l1"))
        runner = LiquidatorRunner(world.worker(), interval_seconds=30)

        result = runner.run_once()

        assert result.liquidated == 1
        assert runner.cycles_run == 1
        assert runner.last_result is result

    def test_raising_cycle_is_counted_not_raised(self):
        """A raising cycle is logged and retried at the next tick."""
        coordinator = MagicMock(instance_id="w1")
        coordinator.run_cycle.side_effect = RuntimeError("ledger unreachable")
        runner = LiquidatorRunner(coordinator, interval_seconds=30)

        assert runner.run_once() is None
        assert runner.cycles_run == 1
        assert runner.cycles_failed == 1
        assert runner.last_error == "ledger unreachable"

    def test_recovers_on_next_tick(self):
        coordinator = MagicMock(instance_id="w1")
        coordinator.run_cycle.side_effect = [RuntimeError("blip"), "ok"]
        runner = LiquidatorRunner(coordinator, interval_seconds=30)

        runner.run_once()
        assert runner.run_once() == "ok"
        assert runner.last_error is None

    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            LiquidatorRunner(MagicMock(), interval_seconds=0)


class TestLifecycle:
    """Background thread start/stop."""

    def test_start_runs_immediately_and_stops(self, world):
        world.add_loans(make_overdue_loan("l1"))
        runner = LiquidatorRunner(world.worker(), interval_seconds=60)

        runner.start()
        try:
            assert runner.is_running
            assert wait_until(lambda: runner.cycles_run >= 1)
        finally:
            runner.stop(timeout=5)

        assert not runner.is_running
        assert runner.wait(timeout=0) is True
        assert world.settlement.settled_ids() == ["l1"]

    def test_double_start_is_ignored(self):
        coordinator = MagicMock(instance_id="w1")
        runner = LiquidatorRunner(coordinator, interval_seconds=60)
        runner.start()
        try:
            runner.start()
            assert wait_until(lambda: runner.cycles_run >= 1)
        finally:
            runner.stop(timeout=5)
        assert coordinator.run_cycle.call_count == 1

    def test_wait_times_out_while_running(self):
        runner = LiquidatorRunner(MagicMock(instance_id="w1"), interval_seconds=60)
        runner.start()
        try:
            assert runner.wait(timeout=0.01) is False
        finally:
            runner.stop(timeout=5)

    def test_stop_when_not_running_is_noop(self):
        runner = LiquidatorRunner(MagicMock(instance_id="w1"), interval_seconds=60)
        runner.stop()
        assert not runner.is_running


class TestHeartbeat:
    """Liveness publishing while the scheduler runs."""

    def test_heartbeats_between_cycles(self):
        """A long scan interval still refreshes the heartbeat."""
        metrics = MagicMock()
        runner = LiquidatorRunner(
            MagicMock(instance_id="w1"), interval_seconds=60, metrics=metrics, heartbeat_seconds=0.01,
        )
        runner.start()
        try:
            assert wait_until(lambda: metrics.heartbeat.call_count >= 3)
        finally:
            runner.stop(timeout=5)

        count = metrics.heartbeat.call_count
        time.sleep(0.05)
        assert metrics.heartbeat.call_count == count

    def test_heartbeat_continues_during_a_slow_cycle(self):
        release = threading.Event()
        coordinator = MagicMock(instance_id="w1")
        coordinator.run_cycle.side_effect = lambda: release.wait(5)
        metrics = MagicMock()
        runner = LiquidatorRunner(coordinator, interval_seconds=60, metrics=metrics, heartbeat_seconds=0.01)

        runner.start()
        try:
            assert wait_until(lambda: metrics.heartbeat.call_count >= 3)
            assert runner.cycles_run == 0
        finally:
            release.set()
            runner.stop(timeout=5)

    def test_heartbeat_interval_must_be_positive(self):
        with pytest.raises(ValueError, match="heartbeat_seconds"):
            LiquidatorRunner(MagicMock(), interval_seconds=30, heartbeat_seconds=0)
