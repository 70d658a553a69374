"""Outbound boundary: typed domain events and audit records."""

from app.infra.notifier.audit import AuditRecord, AuditSink, InMemoryAuditSink, LoggingAuditSink
from app.infra.notifier.memory import InMemoryEventPublisher
from app.infra.notifier.publisher import EventPublisher, NoopEventPublisher

__all__ = [
    "AuditRecord",
    "AuditSink",
    "EventPublisher",
    "InMemoryAuditSink",
    "InMemoryEventPublisher",
    "LoggingAuditSink",
    "NoopEventPublisher",
]
