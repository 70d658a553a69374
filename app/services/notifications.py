from typing import Any
from uuid import UUID

import structlog

from app.domain.enums import DomainEvent
from app.infra.notifier.audit import AuditRecord, AuditSink, LoggingAuditSink
from app.infra.notifier.publisher import EventPublisher, NoopEventPublisher

logger = structlog.get_logger(__name__)


class Notifications:
    """Post-commit fan-out: one typed event plus one audit record per change.

    Delivery problems are logged and swallowed; the change is already durable.
    """

    def __init__(
        self,
        publisher: EventPublisher | None = None,
        audit: AuditSink | None = None,
    ) -> None:
        self.publisher = publisher or NoopEventPublisher()
        self.audit = audit or LoggingAuditSink()

    async def emit(
        self,
        *,
        channels: list[str],
        event: DomainEvent,
        workspace_id: UUID,
        customer_id: UUID,
        actor: str,
        entity_type: str,
        entity_id: UUID,
        snapshot: dict[str, Any],
    ) -> None:
        payload = {
            "workspace_id": str(workspace_id),
            "customer_id": str(customer_id),
            entity_type: snapshot,
        }
        try:
            await self.publisher.publish(channels, event, payload)
        except Exception:
            logger.exception(
                "Event delivery failed",
                event_type=event.value,
                workspace_id=str(workspace_id),
                customer_id=str(customer_id),
            )

        try:
            await self.audit.record(
                AuditRecord(
                    workspace_id=workspace_id,
                    actor=actor,
                    action=event.value,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    snapshot=snapshot,
                )
            )
        except Exception:
            logger.exception(
                "Audit delivery failed",
                event_type=event.value,
                workspace_id=str(workspace_id),
                entity_id=str(entity_id),
            )
