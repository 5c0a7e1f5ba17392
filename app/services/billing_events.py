# FILE: app/services/billing_events.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Protocol

logger = logging.getLogger(__name__)


@dataclass
class BillingEvent:
    name: str
    level: int
    fields: Dict[str, Any] = field(default_factory=dict)


class BillingEventSink(Protocol):
    """
    Side channel for pipeline diagnostics (bill synthesized, ledger split,
    payment rejected, recompute failed ...). Implementations must not raise.
    """

    def emit(self, name: str, level: int = logging.INFO, **fields: Any) -> None:
        ...


class LoggingEventSink:
    """Default sink: one log line per event."""

    def __init__(self, log: logging.Logger | None = None):
        self.log = log or logger

    def emit(self, name: str, level: int = logging.INFO, **fields: Any) -> None:
        # logging handlers already absorb their own I/O failures
        self.log.log(level, "billing.%s %s", name, fields)


class MemoryEventSink:
    """
    Keeps every event in memory (and forwards to the logger) so callers
    and tests can inspect what the pipeline reported.
    """

    def __init__(self, forward: BillingEventSink | None = None):
        self.events: List[BillingEvent] = []
        self.forward = forward or LoggingEventSink()

    def emit(self, name: str, level: int = logging.INFO, **fields: Any) -> None:
        self.events.append(BillingEvent(name=name, level=level, fields=fields))
        self.forward.emit(name, level, **fields)

    def names(self) -> List[str]:
        return [e.name for e in self.events]

    def of(self, name: str) -> List[BillingEvent]:
        return [e for e in self.events if e.name == name]

    def clear(self) -> None:
        self.events.clear()
