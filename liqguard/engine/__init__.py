"""
Liquidation engine: per-cycle coordination, scheduling and alerting.

Architecture:
    LiquidatorRunner (timer, one per worker)
        |
        +-- LiquidationCoordinator (one cycle)
                |
                +-- LockStore (per-loan exclusion)
                +-- CircuitBreaker (checked before every settlement)
                +-- SettlementClient (protocol)
                +-- LiquidationTracker (records outcomes)

    SecurityMonitor -> SecurityJournal (JSONL) + NotificationAdapter

The coordinator and runner are imported from their modules directly
(liqguard.engine.coordinator, liqguard.engine.runner) so that core modules
can depend on the security monitor without an import cycle.
"""

from .journal import SecurityJournal
from .notifications import (
    NotificationAdapter,
    TelegramAdapter,
    DiscordAdapter,
    NoopAdapter,
    get_notification_adapter,
)
from .security_monitor import SecurityMonitor

__all__ = [
    "SecurityJournal",
    "NotificationAdapter",
    "TelegramAdapter",
    "DiscordAdapter",
    "NoopAdapter",
    "get_notification_adapter",
    "SecurityMonitor",
]
