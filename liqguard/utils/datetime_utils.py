"""
Datetime normalization and clock utilities.

Single source of truth for "now" across the engine. Every component takes
a Clock so that windows, TTLs and staleness checks can be driven by a
ManualClock in tests.
"""

import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Source of the current time (timezone-aware UTC)."""

    def now(self) -> datetime:
        ...

    def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    """Wall clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


class ManualClock:
    """
    Controllable clock for tests and replays.

    sleep() advances the clock instead of blocking.
    """

    def __init__(self, start: datetime | None = None):
        self._lock = threading.Lock()
        self._now = ensure_utc(start) if start else datetime(2024, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float = 0.0, **kwargs) -> datetime:
        """Move the clock forward; kwargs are passed to timedelta."""
        with self._lock:
            self._now = self._now + timedelta(seconds=seconds, **kwargs)
            return self._now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = ensure_utc(value)

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            self.advance(seconds)


def ensure_utc(dt: datetime) -> datetime:
    """
    Return a timezone-aware UTC datetime.

    Naive datetimes are assumed to be UTC (DuckDB stores UTC-naive).
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_storage(dt: datetime | None) -> datetime | None:
    """Convert to UTC-naive for DuckDB TIMESTAMP columns."""
    if dt is None:
        return None
    return ensure_utc(dt).replace(tzinfo=None)


def datetime_to_epoch_ms(dt: datetime | None) -> int | None:
    """
    Convert datetime to epoch milliseconds.

    Naive datetimes are assumed to be UTC.
    """
    if dt is None:
        return None
    return int(ensure_utc(dt).timestamp() * 1000)


def epoch_ms_to_datetime(ms: int | None) -> datetime | None:
    """Inverse of datetime_to_epoch_ms."""
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def format_age(seconds: float | None) -> str:
    """Short human-readable age ("42s", "7m", "3h", "2d")."""
    if seconds is None:
        return "never"
    if seconds < 60:
        return f"{int(seconds)}s"
    if seconds < 3600:
        return f"{int(seconds // 60)}m"
    if seconds < 86400:
        return f"{int(seconds // 3600)}h"
    return f"{int(seconds // 86400)}d"
