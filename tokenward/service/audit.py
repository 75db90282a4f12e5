from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Protocol

from tokenward.logging import get_logger
from tokenward.storage.models import utcnow

logger = get_logger(__name__)

SEVERITIES = ("info", "warning", "error", "critical")


class AuditSink(Protocol):
    def emit(self, event: str, *, severity: str = "info", **fields: Any) -> None: ...


@dataclass
class AuditEvent:
    event: str
    severity: str
    fields: Dict[str, Any]
    at: datetime = field(default_factory=utcnow)


class LoggingAuditSink:
    """Writes audit events to the structured log under the ``audit`` logger."""

    def __init__(self, name: str = "tokenward.audit") -> None:
        self.logger = get_logger(name)

    def emit(self, event: str, *, severity: str = "info", **fields: Any) -> None:
        log_fn = getattr(self.logger, severity if severity in SEVERITIES else "info")
        log_fn(event, audit=True, severity=severity, **fields)


class RecordingAuditSink:
    """Keeps events in memory; handy for embedding and assertions."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: List[AuditEvent] = []

    def emit(self, event: str, *, severity: str = "info", **fields: Any) -> None:
        with self._lock:
            self.events.append(AuditEvent(event=event, severity=severity, fields=fields))

    def named(self, event: str) -> List[AuditEvent]:
        with self._lock:
            return [entry for entry in self.events if entry.event == event]


def emit_safely(sink: AuditSink, event: str, *, severity: str = "info", **fields: Any) -> None:
    """Audit emission never fails the operation that triggered it."""
    try:
        sink.emit(event, severity=severity, **fields)
    except Exception as exc:
        logger.warning(
            "audit_emit_failed",
            audit_event=event,
            error=str(exc),
            error_type=type(exc).__name__,
        )


__all__ = [
    "AuditSink",
    "AuditEvent",
    "LoggingAuditSink",
    "RecordingAuditSink",
    "emit_safely",
    "SEVERITIES",
]
