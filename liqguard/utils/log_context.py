"""
Logging context propagation for liquidation cycles.

Provides contextvars-based context so that every log line and security
event emitted while a cycle runs carries the same cycle_id/instance_id,
without threading those values through every call.

Usage:
    from liqguard.utils.log_context import new_cycle_context, get_log_context

    with new_cycle_context(instance_id="host-1234-ab12cd") as ctx:
        # Security events emitted here include cycle_id, instance_id
        coordinator.run_cycle()

    # Per-loan scope inside a cycle
    with loan_context("loan-42"):
        ...
"""

from __future__ import annotations

import os
import socket
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any


_cycle_id: ContextVar[str | None] = ContextVar("cycle_id", default=None)
_instance_id: ContextVar[str | None] = ContextVar("instance_id", default=None)
_loan_id: ContextVar[str | None] = ContextVar("loan_id", default=None)
_extra_context: ContextVar[dict[str, Any]] = ContextVar("extra_context", default={})

_HOSTNAME: str = socket.gethostname()
_PID: int = os.getpid()


def _generate_id() -> str:
    """Generate a short unique ID (first 12 chars of UUID4)."""
    return uuid.uuid4().hex[:12]


@dataclass
class LogContext:
    """Snapshot of the current logging context."""
    cycle_id: str | None = None
    instance_id: str | None = None
    loan_id: str | None = None
    hostname: str = field(default_factory=lambda: _HOSTNAME)
    pid: int = field(default_factory=lambda: _PID)
    extra: dict[str, Any] = field(default_factory=dict)

    def to_log_fields(self) -> dict[str, Any]:
        """Fields to attach to an event; None values are dropped."""
        fields: dict[str, Any] = {}
        if self.cycle_id:
            fields["cycle_id"] = self.cycle_id
        if self.instance_id:
            fields["instance_id"] = self.instance_id
        if self.loan_id:
            fields["loan_id"] = self.loan_id
        fields["hostname"] = self.hostname
        fields["pid"] = self.pid
        if self.extra:
            fields.update(self.extra)
        return fields


def get_log_context() -> LogContext:
    """Get the current logging context."""
    return LogContext(
        cycle_id=_cycle_id.get(),
        instance_id=_instance_id.get(),
        loan_id=_loan_id.get(),
        extra=_extra_context.get().copy(),
    )


@contextmanager
def log_context_scope(
    cycle_id: str | None = None,
    instance_id: str | None = None,
    loan_id: str | None = None,
    **extra: Any,
) -> Generator[LogContext, None, None]:
    """
    Set logging context for a scope; previous values are restored on exit.
    """
    tokens = []
    if cycle_id is not None:
        tokens.append((_cycle_id, _cycle_id.set(cycle_id)))
    if instance_id is not None:
        tokens.append((_instance_id, _instance_id.set(instance_id)))
    if loan_id is not None:
        tokens.append((_loan_id, _loan_id.set(loan_id)))
    if extra:
        tokens.append((_extra_context, _extra_context.set({**_extra_context.get(), **extra})))

    try:
        yield get_log_context()
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


@contextmanager
def new_cycle_context(
    instance_id: str | None = None,
    cycle_id: str | None = None,
    **extra: Any,
) -> Generator[LogContext, None, None]:
    """
    Start a new liquidation-cycle context.

    Generates a cycle_id if not provided.
    """
    with log_context_scope(
        cycle_id=cycle_id or f"cycle-{_generate_id()}",
        instance_id=instance_id,
        **extra,
    ) as ctx:
        yield ctx


@contextmanager
def loan_context(loan_id: str) -> Generator[LogContext, None, None]:
    """Scope events to a single loan within the current cycle."""
    with log_context_scope(loan_id=loan_id) as ctx:
        yield ctx
