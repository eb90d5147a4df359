"""
Security event journal.

Writes security events as JSONL (one JSON object per line) so that every
liquidation decision can be reconstructed after the fact.

Journal files are stored at {journal_dir}/{instance_id}.jsonl
"""

from __future__ import annotations

import json
import threading
from pathlib import Path

from ..core.interfaces import LiquidationRecord, SecurityEvent
from ..utils.logger import get_logger

logger = get_logger()


class SecurityJournal:
    """
    Persistent per-instance event log writing JSONL files.

    Each line has an "event" discriminator:
    - security: event_type, severity, message, timestamp, details
    - liquidation: the full LiquidationRecord
    """

    def __init__(self, instance_id: str, journal_dir: Path | str = "data/journal"):
        self._instance_id = instance_id
        self._journal_dir = Path(journal_dir)
        self._journal_dir.mkdir(parents=True, exist_ok=True)
        safe_id = "".join(c if c.isalnum() or c in "-_" else "_" for c in instance_id)
        self._path = self._journal_dir / f"{safe_id}.jsonl"
        self._lock = threading.Lock()
        self._count = 0
        logger.info(f"SecurityJournal initialized: {self._path}")

    def record_event(self, event: SecurityEvent) -> None:
        """Record a security event."""
        self._write({
            "event": "security",
            "instance_id": self._instance_id,
            **event.to_dict(),
        })

    def record_liquidation(self, record: LiquidationRecord) -> None:
        """Record a completed liquidation."""
        self._write({
            "event": "liquidation",
            "instance_id": self._instance_id,
            **record.to_dict(),
        })

    def read_entries(self) -> list[dict]:
        """Read back every entry (used by tests and post-hoc analysis)."""
        if not self._path.exists():
            return []
        with open(self._path, encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]

    def _write(self, data: dict) -> None:
        """Append a JSON line to the journal file."""
        try:
            with self._lock:
                with open(self._path, "a", encoding="utf-8", newline="\n") as f:
                    f.write(json.dumps(data, default=str) + "\n")
                self._count += 1
        except OSError as e:
            # Journal write failures are logged only
            logger.warning(f"Failed to write journal entry: {e}")

    @property
    def path(self) -> Path:
        """Path to the journal file."""
        return self._path

    @property
    def entry_count(self) -> int:
        return self._count
