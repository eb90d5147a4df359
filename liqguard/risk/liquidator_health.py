"""
Liquidator health tracking.

Each worker owns one LiquidatorMetrics and publishes its snapshot to a
shared HealthRegistry after every change and on every heartbeat. Nothing
is aggregated at write time: LiquidatorHealthAggregator merges all
published snapshots when health is read.

An instance is healthy iff
    consecutive_failures < failure_threshold
    and last_successful_run is within staleness_multiplier x scan_interval
    and last_heartbeat is within heartbeat_stale_multiplier x heartbeat_interval.
The fleet is healthy iff at least one instance is healthy.

Registrations without a heartbeat for instance_ttl_seconds are dropped
(Redis key expiry, or skipped at read time), so a dead worker's 24h
counts stop contributing to the fleet totals.
"""

from __future__ import annotations

import json
import os
import secrets
import socket
import threading
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Protocol, runtime_checkable

from ..config.config import HealthConfig
from ..config.constants import HEALTH_KEY_PREFIX, SEVERITY_HIGH, SecurityEventType
from ..utils.datetime_utils import Clock, SystemClock, ensure_utc
from ..utils.logger import get_logger


MAX_PROCESSING_TIME_SAMPLES = 100
ROLLING_WINDOW = timedelta(hours=24)


def default_instance_id() -> str:
    """hostname-pid-random6, unique per worker process."""
    return f"{socket.gethostname()}-{os.getpid()}-{secrets.token_hex(3)}"


@dataclass
class LiquidatorInstanceHealth:
    """Published snapshot of one worker. is_healthy is filled in at read time."""
    instance_id: str
    last_successful_run: datetime | None = None
    consecutive_failures: int = 0
    avg_processing_time_ms: int = 0
    liquidations_24h: int = 0
    checks_24h: int = 0
    last_heartbeat: datetime | None = None
    last_error: str | None = None
    is_healthy: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "last_successful_run": self.last_successful_run.isoformat() if self.last_successful_run else None,
            "consecutive_failures": self.consecutive_failures,
            "avg_processing_time_ms": self.avg_processing_time_ms,
            "liquidations_24h": self.liquidations_24h,
            "checks_24h": self.checks_24h,
            "last_heartbeat": self.last_heartbeat.isoformat() if self.last_heartbeat else None,
            "last_error": self.last_error,
            "is_healthy": self.is_healthy,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "LiquidatorInstanceHealth":
        def _dt(value):
            return ensure_utc(datetime.fromisoformat(value)) if value else None

        return cls(
            instance_id=d["instance_id"],
            last_successful_run=_dt(d.get("last_successful_run")),
            consecutive_failures=int(d.get("consecutive_failures", 0)),
            avg_processing_time_ms=int(d.get("avg_processing_time_ms", 0)),
            liquidations_24h=int(d.get("liquidations_24h", 0)),
            checks_24h=int(d.get("checks_24h", 0)),
            last_heartbeat=_dt(d.get("last_heartbeat")),
            last_error=d.get("last_error"),
        )


@dataclass
class LiquidatorHealthReport:
    """Fleet-wide health view."""
    healthy: bool
    instances: list[LiquidatorInstanceHealth] = field(default_factory=list)
    healthy_instances: int = 0
    total_liquidations_24h: int = 0
    checked_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "healthy_instances": self.healthy_instances,
            "total_instances": len(self.instances),
            "total_liquidations_24h": self.total_liquidations_24h,
            "checked_at": self.checked_at.isoformat() if self.checked_at else None,
            "instances": [i.to_dict() for i in self.instances],
        }


# ==============================================================================
# Registries
# ==============================================================================

@runtime_checkable
class HealthRegistry(Protocol):
    """Shared store of per-instance snapshots. Entries may expire."""

    def publish(self, snapshot: LiquidatorInstanceHealth) -> None:
        ...

    def list_instances(self) -> list[LiquidatorInstanceHealth]:
        ...


class InMemoryHealthRegistry:
    """Process-local registry (single host, tests)."""

    def __init__(self):
        self._lock = threading.Lock()
        self._instances: dict[str, LiquidatorInstanceHealth] = {}

    def publish(self, snapshot: LiquidatorInstanceHealth) -> None:
        with self._lock:
            self._instances[snapshot.instance_id] = replace(snapshot)

    def list_instances(self) -> list[LiquidatorInstanceHealth]:
        with self._lock:
            return [replace(s) for s in self._instances.values()]


class RedisHealthRegistry:
    """
    One Redis hash per instance at liquidator:metrics:<instance_id>.

    Hash fields are the snapshot fields as strings (JSON-encoded values).
    Every publish refreshes the key's TTL, so a worker that stops
    heartbeating disappears after ttl_seconds.
    """

    def __init__(self, client, prefix: str = HEALTH_KEY_PREFIX, ttl_seconds: float = 3600):
        self._client = client
        self._prefix = prefix
        self._ttl_seconds = max(1, int(ttl_seconds))

    @classmethod
    def from_url(cls, url: str, ttl_seconds: float = 3600) -> "RedisHealthRegistry":
        import redis

        client = redis.Redis.from_url(url, decode_responses=True, socket_connect_timeout=3)
        return cls(client, ttl_seconds=ttl_seconds)

    def _key(self, instance_id: str) -> str:
        return f"{self._prefix}{instance_id}"

    def publish(self, snapshot: LiquidatorInstanceHealth) -> None:
        data = snapshot.to_dict()
        data.pop("is_healthy", None)
        mapping = {k: json.dumps(v) for k, v in data.items()}
        key = self._key(snapshot.instance_id)
        self._client.hset(key, mapping=mapping)
        self._client.expire(key, self._ttl_seconds)

    def list_instances(self) -> list[LiquidatorInstanceHealth]:
        instances = []
        for key in self._client.scan_iter(match=f"{self._prefix}*"):
            raw = self._client.hgetall(key)
            if not raw:
                continue
            data = {k: json.loads(v) for k, v in raw.items()}
            instances.append(LiquidatorInstanceHealth.from_dict(data))
        instances.sort(key=lambda i: i.instance_id)
        return instances


# ==============================================================================
# Per-instance metrics
# ==============================================================================

class LiquidatorMetrics:
    """
    Metrics owned by one worker.

    Usage:
        start = metrics.record_job_start()
        try:
            result = coordinator.run_cycle()
            metrics.record_job_success(start, result.liquidated)
        except Exception as e:
            metrics.record_job_failure(e)
    """

    def __init__(
        self,
        instance_id: str,
        registry: HealthRegistry,
        clock: Clock | None = None,
        config: HealthConfig | None = None,
        monitor=None,
    ):
        self.instance_id = instance_id
        self._registry = registry
        self._clock = clock or SystemClock()
        self.config = config or HealthConfig()
        self._monitor = monitor
        self.logger = get_logger()

        self._lock = threading.Lock()
        self._samples: deque[float] = deque(maxlen=MAX_PROCESSING_TIME_SAMPLES)
        self._liquidations: deque[tuple[datetime, int]] = deque()
        self._checks: deque[datetime] = deque()
        self._last_successful_run: datetime | None = None
        self._consecutive_failures = 0
        self._last_error: str | None = None
        self._last_alert: datetime | None = None

    def _prune(self, now: datetime) -> None:
        """Drop rolling-window entries older than 24h. Must hold _lock."""
        cutoff = now - ROLLING_WINDOW
        while self._liquidations and self._liquidations[0][0] < cutoff:
            self._liquidations.popleft()
        while self._checks and self._checks[0] < cutoff:
            self._checks.popleft()

    def snapshot(self) -> LiquidatorInstanceHealth:
        now = self._clock.now()
        with self._lock:
            self._prune(now)
            avg = round(sum(self._samples) / len(self._samples)) if self._samples else 0
            return LiquidatorInstanceHealth(
                instance_id=self.instance_id,
                last_successful_run=self._last_successful_run,
                consecutive_failures=self._consecutive_failures,
                avg_processing_time_ms=int(avg),
                liquidations_24h=sum(n for _, n in self._liquidations),
                checks_24h=len(self._checks),
                last_heartbeat=now,
                last_error=self._last_error,
            )

    def _publish(self) -> None:
        snapshot = self.snapshot()
        try:
            self._registry.publish(snapshot)
        except Exception as e:
            # Publish failures are logged only
            self.logger.warning(f"Health snapshot publish failed for {self.instance_id}: {e}")

    def heartbeat(self) -> None:
        """Publish a fresh snapshot without recording a run."""
        self._publish()

    def record_job_start(self) -> float:
        """Returns the start timestamp (epoch seconds) to pass back on completion."""
        return self._clock.now().timestamp()

    def record_job_success(self, start_time: float, liquidated_count: int = 0) -> None:
        now = self._clock.now()
        duration_ms = max(0.0, (now.timestamp() - start_time) * 1000)
        with self._lock:
            self._samples.append(duration_ms)
            self._checks.append(now)
            if liquidated_count > 0:
                self._liquidations.append((now, liquidated_count))
            self._last_successful_run = now
            self._consecutive_failures = 0
        self._publish()
        self.logger.debug(
            f"Liquidation job completed in {duration_ms:.0f}ms, {liquidated_count} liquidations"
        )

    def record_job_failure(self, error: BaseException | str) -> None:
        message = str(error)
        with self._lock:
            self._consecutive_failures += 1
            self._last_error = message
            failures = self._consecutive_failures
        self._publish()
        self.logger.error(
            f"Liquidation job failed ({failures} consecutive failures): {message}"
        )
        if failures >= self.config.failure_threshold:
            self._failure_alert(failures, message)

    def _failure_alert(self, failures: int, message: str) -> None:
        now = self._clock.now()
        with self._lock:
            if self._last_alert is not None:
                if (now - self._last_alert).total_seconds() < self.config.alert_cooldown_seconds:
                    return
            self._last_alert = now
            last_success = self._last_successful_run
        if self._monitor is None:
            return
        self._monitor.log_event(
            SecurityEventType.LIQUIDATION_FAILURE,
            SEVERITY_HIGH,
            f"Liquidator instance {self.instance_id} has failed {failures} consecutive times",
            instance_id=self.instance_id,
            consecutive_failures=failures,
            error=message,
            last_successful_run=last_success.isoformat() if last_success else None,
        )

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures


# ==============================================================================
# Aggregation
# ==============================================================================

class LiquidatorHealthAggregator:
    """
    Merges every registered instance into one fleet health report.

    Reading health also raises the no-run alert: an instance whose last
    success is older than no_run_alert_seconds gets a HIGH
    LIQUIDATION_FAILURE event, at most once per alert_cooldown_seconds
    per instance.
    """

    def __init__(
        self,
        registry: HealthRegistry,
        scan_interval_seconds: float,
        config: HealthConfig | None = None,
        clock: Clock | None = None,
        monitor=None,
    ):
        self._registry = registry
        self.scan_interval_seconds = scan_interval_seconds
        self.config = config or HealthConfig()
        self._clock = clock or SystemClock()
        self._monitor = monitor
        self._lock = threading.Lock()
        self._last_no_run_alert: dict[str, datetime] = {}

    @property
    def staleness_limit(self) -> timedelta:
        return timedelta(seconds=self.config.staleness_multiplier * self.scan_interval_seconds)

    @property
    def heartbeat_limit(self) -> timedelta:
        return timedelta(seconds=self.config.heartbeat_stale_after)

    def is_registered(self, instance: LiquidatorInstanceHealth, now: datetime) -> bool:
        """False once the instance has gone instance_ttl_seconds without a heartbeat."""
        if instance.last_heartbeat is None:
            return True
        return now - instance.last_heartbeat <= timedelta(seconds=self.config.instance_ttl_seconds)

    def is_instance_healthy(self, instance: LiquidatorInstanceHealth, now: datetime) -> bool:
        if instance.consecutive_failures >= self.config.failure_threshold:
            return False
        if instance.last_successful_run is None:
            return False
        if now - instance.last_successful_run > self.staleness_limit:
            return False
        # Dead process: snapshot is frozen at its last publish
        if instance.last_heartbeat is None or now - instance.last_heartbeat > self.heartbeat_limit:
            return False
        return True

    def _check_no_run(self, instance: LiquidatorInstanceHealth, now: datetime) -> None:
        if instance.last_successful_run is None:
            return
        since_run = (now - instance.last_successful_run).total_seconds()
        if since_run <= self.config.no_run_alert_seconds:
            return
        with self._lock:
            last = self._last_no_run_alert.get(instance.instance_id)
            if last is not None and (now - last).total_seconds() < self.config.alert_cooldown_seconds:
                return
            self._last_no_run_alert[instance.instance_id] = now
        if self._monitor is None:
            return
        minutes = int(since_run // 60)
        self._monitor.log_event(
            SecurityEventType.LIQUIDATION_FAILURE,
            SEVERITY_HIGH,
            f"Liquidator instance {instance.instance_id} hasn't had a successful run in {minutes} minutes",
            instance_id=instance.instance_id,
            minutes_since_last_run=minutes,
            last_successful_run=instance.last_successful_run.isoformat(),
        )

    def get_liquidator_health(self) -> LiquidatorHealthReport:
        now = self._clock.now()
        instances = [i for i in self._registry.list_instances() if self.is_registered(i, now)]
        for instance in instances:
            instance.is_healthy = self.is_instance_healthy(instance, now)
            self._check_no_run(instance, now)
        healthy_count = sum(1 for i in instances if i.is_healthy)
        return LiquidatorHealthReport(
            healthy=healthy_count > 0,
            instances=instances,
            healthy_instances=healthy_count,
            total_liquidations_24h=sum(i.liquidations_24h for i in instances),
            checked_at=now,
        )
