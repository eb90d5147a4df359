"""
Per-instance liquidation scheduler.

Every worker runs its own timer; there is no leader election. A failing
cycle is logged and retried at the next tick. stop() interrupts the wait
between cycles, never a cycle in progress. With metrics attached, a
second thread publishes a health heartbeat every heartbeat_seconds
until stop().
"""

from __future__ import annotations

import threading

from ..risk.liquidator_health import LiquidatorMetrics
from ..utils.logger import get_logger
from .coordinator import CycleResult, LiquidationCoordinator


class LiquidatorRunner:
    """Drives LiquidationCoordinator.run_cycle on a fixed interval."""

    def __init__(
        self,
        coordinator: LiquidationCoordinator,
        interval_seconds: float,
        metrics: LiquidatorMetrics | None = None,
        heartbeat_seconds: float = 30.0,
    ):
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")
        if heartbeat_seconds <= 0:
            raise ValueError(f"heartbeat_seconds must be positive, got {heartbeat_seconds}")
        self.coordinator = coordinator
        self.interval_seconds = interval_seconds
        self.metrics = metrics
        self.heartbeat_seconds = heartbeat_seconds
        self.logger = get_logger()

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._heartbeat_thread: threading.Thread | None = None
        self._running = False

        self.cycles_run = 0
        self.cycles_failed = 0
        self.last_result: CycleResult | None = None
        self.last_error: str | None = None

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def run_once(self) -> CycleResult | None:
        """
        Run a single cycle. A raising cycle is logged and counted, not re-raised.

        Returns:
            The cycle result, or None if the cycle raised (already recorded
            in health metrics and alerted by the coordinator)
        """
        try:
            result = self.coordinator.run_cycle()
        except Exception as e:
            self.cycles_failed += 1
            self.last_error = str(e)
            self.logger.error(f"Liquidation cycle raised, retrying next tick: {e}")
            return None
        finally:
            self.cycles_run += 1
        self.last_result = result
        self.last_error = None
        return result

    def start(self) -> None:
        """Start the scheduler (and heartbeat, when metrics are attached) on daemon threads."""
        with self._lock:
            if self._running:
                self.logger.warning("LiquidatorRunner already running")
                return
            self._running = True
            self._stop_event.clear()

        self._start_heartbeat()
        self._thread = threading.Thread(
            target=self._loop,
            daemon=True,
            name=f"Liquidator-{self.coordinator.instance_id}",
        )
        self._thread.start()
        self.logger.info(
            f"Liquidator {self.coordinator.instance_id} started (every {self.interval_seconds}s)"
        )

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_once()
            if self._stop_event.wait(self.interval_seconds):
                break

    def _start_heartbeat(self) -> None:
        if self.metrics is None:
            return
        self._heartbeat_thread = threading.Thread(
            target=self._heartbeat_loop,
            daemon=True,
            name=f"Heartbeat-{self.coordinator.instance_id}",
        )
        self._heartbeat_thread.start()

    def _heartbeat_loop(self) -> None:
        # Independent of the cycle thread; keeps publishing while a cycle runs
        while not self._stop_event.wait(self.heartbeat_seconds):
            self.metrics.heartbeat()

    def stop(self, timeout: float | None = 30.0) -> None:
        """Signal the loop to exit and wait for the current cycle to finish."""
        with self._lock:
            if not self._running:
                return
            self._running = False
            self._stop_event.set()

        for thread in (self._thread, self._heartbeat_thread):
            if thread is not None and thread.is_alive():
                thread.join(timeout=timeout)
        self.logger.info(f"Liquidator {self.coordinator.instance_id} stopped")

    def wait(self, timeout: float | None = None) -> bool:
        """Block until stop() is called. Returns False on timeout."""
        return self._stop_event.wait(timeout)

    def run_forever(self) -> None:
        """Run in the calling thread until stop() is called (e.g. from a signal handler)."""
        with self._lock:
            self._running = True
            self._stop_event.clear()
        self._start_heartbeat()
        try:
            self._loop()
        finally:
            with self._lock:
                self._running = False
