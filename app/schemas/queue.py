from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.domain.enums import ActorType, EscalationPriority, QueueStatus


class QueueEntryResponse(BaseModel):
    id: UUID
    workspace_id: UUID
    customer_id: UUID
    status: QueueStatus
    priority: EscalationPriority
    operator_id: UUID | None
    lock_expires_at: datetime | None
    reason: str | None
    resolved_by: UUID | None
    metadata: dict | None = Field(default=None, alias="metadata_json")
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class QueueEntryListResponse(BaseModel):
    items: list[QueueEntryResponse]


class OperatorActionRequest(BaseModel):
    operator_id: UUID


class ResolveEntryRequest(BaseModel):
    operator_id: UUID
    outcome: str | None = Field(default=None, max_length=500)


class CancelEntryRequest(BaseModel):
    actor: str = Field(default=ActorType.ADMIN.value, min_length=1, max_length=120)
    reason: str | None = Field(default=None, max_length=500)


class OperatorMessageRequest(BaseModel):
    operator_id: UUID
    content: str = Field(min_length=1, max_length=4000)
    channel: str = Field(default="whatsapp", max_length=50)


class SweepResponse(BaseModel):
    reclaimed: list[QueueEntryResponse]
