"""
Security monitor: the single alert sink every component reports into.

Each event is stamped with the current log context (cycle id, instance id,
loan id), written to the structured log at a level matching its severity,
appended to the JSONL journal, forwarded to any extra AlertSinks, and
pushed to the notification adapter when severity is HIGH or above.
"""

from __future__ import annotations

import threading
from collections import Counter, deque
from typing import Any

from ..config.constants import (
    SEVERITY_CRITICAL,
    SEVERITY_HIGH,
    SEVERITY_MEDIUM,
    severity_rank,
)
from ..core.interfaces import AlertSink, SecurityEvent
from ..utils.datetime_utils import Clock, SystemClock
from ..utils.log_context import get_log_context
from ..utils.logger import get_logger
from .journal import SecurityJournal
from .notifications import NotificationAdapter


class SecurityMonitor:
    """
    Fan-out alert sink.

    Satisfies the AlertSink protocol itself (emit), so monitors can be
    chained, and adds log_event() as the convenience constructor used by
    engine components.
    """

    def __init__(
        self,
        clock: Clock | None = None,
        journal: SecurityJournal | None = None,
        notifier: NotificationAdapter | None = None,
        sinks: list[AlertSink] | None = None,
        history_size: int = 500,
    ):
        self._clock = clock or SystemClock()
        self._journal = journal
        self._notifier = notifier
        self._sinks: list[AlertSink] = list(sinks or [])
        self._lock = threading.Lock()
        self._recent: deque[SecurityEvent] = deque(maxlen=history_size)
        self.logger = get_logger()

    def add_sink(self, sink: AlertSink) -> None:
        self._sinks.append(sink)

    def log_event(
        self,
        event_type: str,
        severity: str,
        message: str,
        **details: Any,
    ) -> SecurityEvent:
        """Build an event from the current context and emit it."""
        severity_rank(severity)
        merged = {**get_log_context().to_log_fields(), **details}
        event = SecurityEvent(
            event_type=event_type,
            severity=severity.upper(),
            message=message,
            timestamp=self._clock.now(),
            details=merged,
        )
        self.emit(event)
        return event

    def emit(self, event: SecurityEvent) -> None:
        with self._lock:
            self._recent.append(event)

        line = f"[SECURITY:{event.severity}] {event.event_type} | {event.message}"
        if event.severity == SEVERITY_CRITICAL:
            self.logger.critical(line)
        elif event.severity == SEVERITY_HIGH:
            self.logger.warning(line)
        elif event.severity == SEVERITY_MEDIUM:
            self.logger.info(line)
        else:
            self.logger.debug(line)

        if self._journal is not None:
            self._journal.record_event(event)

        for sink in self._sinks:
            try:
                sink.emit(event)
            except Exception as e:
                # Sink failures are logged, never propagated
                self.logger.error(f"Alert sink {type(sink).__name__} failed: {e}")

        if self._notifier is not None and severity_rank(event.severity) >= severity_rank(SEVERITY_HIGH):
            self._notifier.notify_event(event)

    def recent_events(
        self,
        limit: int = 50,
        event_type: str | None = None,
        min_severity: str | None = None,
    ) -> list[SecurityEvent]:
        """Most recent events, newest first, optionally filtered."""
        with self._lock:
            events = list(self._recent)
        if event_type is not None:
            events = [e for e in events if e.event_type == event_type]
        if min_severity is not None:
            floor = severity_rank(min_severity)
            events = [e for e in events if severity_rank(e.severity) >= floor]
        events.reverse()
        return events[:limit]

    def count_by_type(self) -> dict[str, int]:
        with self._lock:
            return dict(Counter(e.event_type for e in self._recent))
