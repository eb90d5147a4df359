"""
Tests for liquidation outcome tracking.

Validates that:
1. Loss math is integer bps of the expected recovery, clamped to [0, 10000]
2. Recording appends exactly one record and alerts by outcome
3. Heavy losses auto-blacklist the asset; blacklist failures are alerted, not raised
4. Projections (recent, losses, per-asset stats) read the log correctly
"""

from liqguard.config.config import TrackerConfig
from liqguard.config.constants import SecurityEventType
from liqguard.core.interfaces import LoanStatus
from liqguard.core.liquidation_tracker import (
    LiquidationTracker,
    compute_loss_bps,
    compute_loss_lamports,
)
from liqguard.data.liquidation_log import InMemoryLiquidationLog
from liqguard.engine.journal import SecurityJournal

from conftest import SOL, FakeBlacklister, World, make_loan, make_overdue_loan


class TestLossMath:
    """Loss bps and lamports."""

    def test_five_percent_shortfall_is_500_bps(self):
        """Recovering 0.95 of 1 SOL is a 500 bps loss."""
        assert compute_loss_bps(1_000_000_000, 950_000_000) == 500
        assert compute_loss_lamports(1_000_000_000, 950_000_000) == 50_000_000

    def test_full_recovery_is_zero(self):
        assert compute_loss_bps(SOL, SOL) == 0
        assert compute_loss_bps(SOL, 2 * SOL) == 0
        assert compute_loss_lamports(SOL, 2 * SOL) == 0

    def test_zero_expected_is_zero(self):
        assert compute_loss_bps(0, 0) == 0
        assert compute_loss_bps(0, 5) == 0

    def test_negative_actual_clamps_to_total_loss(self):
        """Loss never exceeds the expected recovery."""
        assert compute_loss_bps(SOL, -10) == 10_000
        assert compute_loss_lamports(SOL, -10) == SOL

    def test_rounds_down(self):
        # 1/3 shortfall -> 3333.33 bps
        assert compute_loss_bps(3, 2) == 3333


class TestRecordLiquidation:
    """record_liquidation appends and alerts."""

    def test_records_worked_example(self, world):
        """Recording a shortfall stores the loss and raises a loss alert."""
        loan = make_loan("loan-1", borrowed=1_000_000_000)
        record = world.tracker.record_liquidation(loan, 950_000_000, instance_id="w1", tx_signature="sig")

        assert record.loss_bps == 500
        assert record.loss_lamports == 50_000_000
        assert record.expected_recovery == 1_000_000_000
        assert record.actual_recovery == 950_000_000
        assert record.timestamp == world.clock.now()
        assert record.instance_id == "w1"
        assert record.auto_blacklisted is False
        assert world.log.all_records() == [record]

        losses = world.sink.of_type(SecurityEventType.LIQUIDATION_LOSS_DETECTED)
        assert len(losses) == 1
        assert losses[0].severity == "HIGH"
        assert losses[0].details["loss_bps"] == 500

    def test_full_recovery_alerts_success(self, world):
        loan = make_loan("loan-1")
        record = world.tracker.record_liquidation(loan, loan.amount_borrowed)

        assert record.has_loss is False
        assert world.sink.of_type(SecurityEventType.LIQUIDATION_LOSS_DETECTED) == []
        success = world.sink.of_type(SecurityEventType.LIQUIDATION_RECOVERY_SUCCESS)
        assert len(success) == 1
        assert success[0].severity == "LOW"

    def test_reason_follows_status(self, world):
        overdue = make_overdue_loan("loan-t")
        record = world.tracker.record_liquidation(overdue, SOL)
        assert record.reason == "time"

        priced = make_loan("loan-p")
        record = world.tracker.record_liquidation(priced, SOL, status=LoanStatus.LIQUIDATED_BY_PRICE)
        assert record.reason == "price"

    def test_journal_receives_record(self, tmp_path, world):
        journal = SecurityJournal("w1", tmp_path)
        tracker = LiquidationTracker(world.log, clock=world.clock, journal=journal)
        tracker.record_liquidation(make_loan("loan-1"), SOL // 2)

        entries = journal.read_entries()
        assert len(entries) == 1
        assert entries[0]["event"] == "liquidation"
        assert entries[0]["loan_id"] == "loan-1"
        assert entries[0]["loss_bps"] == 5000

    def test_recording_evaluates_breaker(self, world):
        world.tracker.record_liquidation(make_loan("loan-1", borrowed=6 * SOL), 0)
        assert world.breaker.is_tripped


class TestAutoBlacklist:
    """Loss above auto_blacklist_bps blocks the asset."""

    def test_at_threshold_does_not_blacklist(self, world):
        """Auto-blacklist needs a loss strictly above the threshold."""
        # exactly 1000 bps is not "greater than"
        record = world.tracker.record_liquidation(make_loan("loan-1"), 900_000_000)
        assert record.loss_bps == 1000
        assert record.auto_blacklisted is False
        assert world.blacklister.blacklisted == []

    def test_above_threshold_blacklists(self, world):
        record = world.tracker.record_liquidation(make_loan("loan-1"), 899_000_000)
        assert record.auto_blacklisted is True
        assert [a for a, _ in world.blacklister.blacklisted] == ["MINT_A"]
        assert len(world.sink.of_type(SecurityEventType.TOKEN_AUTO_BLACKLISTED)) == 1
        loss = world.sink.of_type(SecurityEventType.LIQUIDATION_LOSS_DETECTED)[0]
        assert loss.severity == "CRITICAL"

    def test_blacklist_failure_is_alerted_not_raised(self):
        """A rejected blacklist call is alerted and the record still stands."""
        world = World()
        world.tracker._blacklister = FakeBlacklister(fail=True)

        record = world.tracker.record_liquidation(make_loan("loan-1"), 0)

        assert record.auto_blacklisted is True
        assert len(world.log) == 1
        failed = world.sink.of_type(SecurityEventType.TOKEN_BLACKLIST_FAILED)
        assert len(failed) == 1
        assert failed[0].severity == "CRITICAL"

    def test_custom_threshold(self):
        world = World(tracker_config=TrackerConfig(auto_blacklist_bps=200))
        record = world.tracker.record_liquidation(make_loan("loan-1"), 970_000_000)
        assert record.loss_bps == 300
        assert record.auto_blacklisted is True


class TestProjections:
    """Read-side views over the record log."""

    def _seed(self, world):
        world.tracker.record_liquidation(make_loan("a1", asset_id="MINT_A"), 950_000_000)
        world.clock.advance(minutes=1)
        world.tracker.record_liquidation(make_loan("b1", asset_id="MINT_B"), SOL)
        world.clock.advance(minutes=1)
        world.tracker.record_liquidation(make_loan("a2", asset_id="MINT_A"), 850_000_000)

    def test_recent_newest_first(self, world):
        self._seed(world)
        recent = world.tracker.get_recent_liquidations(2)
        assert [r.loan_id for r in recent] == ["a2", "b1"]

    def test_recent_non_positive_limit_is_empty(self, world):
        self._seed(world)
        assert world.tracker.get_recent_liquidations(0) == []

    def test_losses_only(self, world):
        self._seed(world)
        losses = world.tracker.get_liquidations_with_losses()
        assert [r.loan_id for r in losses] == ["a2", "a1"]

    def test_token_stats(self, world):
        self._seed(world)
        stats = world.tracker.get_token_liquidation_stats("MINT_A")
        assert stats.total_liquidations == 2
        assert stats.total_loss_lamports == 50_000_000 + 150_000_000
        assert stats.avg_loss_bps == (500 + 1500) // 2
        assert stats.last_liquidation == world.clock.now()

    def test_token_stats_unknown_asset(self, world):
        stats = world.tracker.get_token_liquidation_stats("NOPE")
        assert stats.total_liquidations == 0
        assert stats.avg_loss_bps == 0
        assert stats.last_liquidation is None

    def test_bounded_history(self, clock):
        """History keeps only the most recent records."""
        log = InMemoryLiquidationLog(max_records=3)
        tracker = LiquidationTracker(log, clock=clock)
        for i in range(5):
            tracker.record_liquidation(make_loan(f"loan-{i}"), SOL)
            clock.advance(1)
        assert [r.loan_id for r in tracker.get_recent_liquidations(10)] == ["loan-4", "loan-3", "loan-2"]
