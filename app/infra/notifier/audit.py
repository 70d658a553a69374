from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol
from uuid import UUID

import structlog

logger = structlog.get_logger("audit")


@dataclass(frozen=True, slots=True)
class AuditRecord:
    workspace_id: UUID
    actor: str
    action: str
    entity_type: str
    entity_id: UUID
    snapshot: dict[str, Any]
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["workspace_id"] = str(self.workspace_id)
        data["entity_id"] = str(self.entity_id)
        data["occurred_at"] = self.occurred_at.isoformat()
        return data


class AuditSink(Protocol):
    async def record(self, entry: AuditRecord) -> None: ...


class LoggingAuditSink:
    async def record(self, entry: AuditRecord) -> None:
        logger.info("audit", **entry.as_dict())


class InMemoryAuditSink:
    def __init__(self) -> None:
        self.records: list[AuditRecord] = []

    async def record(self, entry: AuditRecord) -> None:
        self.records.append(entry)
