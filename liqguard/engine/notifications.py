"""
Push notifications for HIGH and CRITICAL security events.

Configured via env vars (first match wins):
- LIQGUARD_TELEGRAM_TOKEN + LIQGUARD_TELEGRAM_CHAT_ID
- LIQGUARD_DISCORD_WEBHOOK

Without either, alerts stay in the log and journal only.
"""

from __future__ import annotations

import json
import os
import urllib.error
import urllib.request
from abc import ABC, abstractmethod

from ..core.interfaces import SecurityEvent
from ..utils.logger import get_logger

logger = get_logger()

# Context fields worth a line in a pushed alert, in display order
_ALERT_CONTEXT_FIELDS = ("instance_id", "cycle_id", "loan_id", "asset_id", "reason")

# Telegram rejects longer messages
MAX_MESSAGE_LENGTH = 4000


def format_event(event: SecurityEvent) -> str:
    """Render an event as a short multi-line alert."""
    lines = [f"[{event.severity}] {event.event_type}", event.message]
    for key in _ALERT_CONTEXT_FIELDS:
        value = event.details.get(key)
        if value:
            lines.append(f"{key}: {value}")
    lines.append(event.timestamp.isoformat())
    text = "\n".join(lines)
    if len(text) > MAX_MESSAGE_LENGTH:
        text = text[:MAX_MESSAGE_LENGTH - 3] + "..."
    return text


class NotificationAdapter(ABC):
    """Base class for notification adapters."""

    @abstractmethod
    def send(self, message: str) -> bool:
        """Send a notification message. Returns True on success."""
        ...

    def notify_event(self, event: SecurityEvent) -> bool:
        """Send a security event."""
        return self.send(format_event(event))


class WebhookAdapter(NotificationAdapter):
    """POSTs a JSON payload; subclasses choose the URL and payload shape."""

    service = "webhook"
    ok_statuses: tuple[int, ...] = (200,)

    def __init__(self, url: str, timeout: float = 10.0):
        self._url = url
        self._timeout = timeout

    @abstractmethod
    def payload(self, message: str) -> dict:
        ...

    def send(self, message: str) -> bool:
        req = urllib.request.Request(
            self._url,
            data=json.dumps(self.payload(message)).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib.request.urlopen(req, timeout=self._timeout) as resp:
                return resp.status in self.ok_statuses
        except (urllib.error.URLError, OSError) as e:
            logger.warning(f"{self.service} notification failed: {e}")
            return False


class TelegramAdapter(WebhookAdapter):
    """Send notifications via Telegram Bot API."""

    service = "Telegram"

    def __init__(self, token: str, chat_id: str):
        super().__init__(f"https://api.telegram.org/bot{token}/sendMessage")
        self._chat_id = chat_id

    def payload(self, message: str) -> dict:
        return {"chat_id": self._chat_id, "text": message}


class DiscordAdapter(WebhookAdapter):
    """Send notifications via Discord webhook."""

    service = "Discord"
    ok_statuses = (200, 204)

    def payload(self, message: str) -> dict:
        return {"content": message}


class NoopAdapter(NotificationAdapter):
    """No-op adapter when no notification service is configured."""

    def send(self, message: str) -> bool:
        return True


def get_notification_adapter() -> NotificationAdapter:
    """Create the notification adapter from environment variables."""
    telegram_token = os.environ.get("LIQGUARD_TELEGRAM_TOKEN")
    telegram_chat = os.environ.get("LIQGUARD_TELEGRAM_CHAT_ID")
    discord_webhook = os.environ.get("LIQGUARD_DISCORD_WEBHOOK")

    if telegram_token and telegram_chat:
        logger.info("Notifications: Telegram configured")
        return TelegramAdapter(telegram_token, telegram_chat)
    if discord_webhook:
        logger.info("Notifications: Discord configured")
        return DiscordAdapter(discord_webhook)
    return NoopAdapter()
