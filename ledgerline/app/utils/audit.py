"""Audit capability: a narrow record/flush interface with adapters."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

logger = logging.getLogger("ledgerline.audit")


@dataclass(frozen=True)
class AuditEvent:
    """Security-relevant event: isolation violations, bypass activations."""

    kind: str
    actor: str
    details: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AuditSink(Protocol):
    """Anything that can durably record audit events."""

    def record(self, event: AuditEvent) -> None: ...

    def flush(self) -> None: ...


class LoggingAuditSink:
    """Adapter writing audit events to the audit logger."""

    def record(self, event: AuditEvent) -> None:
        logger.warning(
            f"Audit event: {event.kind}",
            extra={
                "structured": {
                    "kind": event.kind,
                    "actor": event.actor,
                    "occurred_at": event.occurred_at.isoformat(),
                    **event.details,
                }
            },
        )

    def flush(self) -> None:
        for handler in logger.handlers:
            handler.flush()


class InMemoryAuditSink:
    """Collects events in a list; flush is a no-op."""

    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def flush(self) -> None:
        pass

    def kinds(self) -> list[str]:
        return [e.kind for e in self.events]


default_audit_sink: AuditSink = LoggingAuditSink()
