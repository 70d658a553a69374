from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.domain.enums import EscalationPriority, EscalationReason
from app.schemas.queue import QueueEntryResponse


class InboundEventRequest(BaseModel):
    address: str = Field(min_length=3, max_length=120)
    display_name: str | None = Field(default=None, max_length=120)
    intent: str = Field(min_length=1, max_length=100)
    payload: dict[str, Any] = Field(default_factory=dict)
    channel: str = Field(default="whatsapp", min_length=1, max_length=50)
    event_id: str | None = Field(default=None, min_length=1, max_length=200)
    timestamp: datetime | None = None
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)

    @field_validator("timestamp")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class OutboundActionResponse(BaseModel):
    kind: str
    template_key: str
    state: str

    model_config = ConfigDict(from_attributes=True)


class EscalationResponse(BaseModel):
    escalate: bool
    reason: EscalationReason | None
    priority: EscalationPriority | None

    model_config = ConfigDict(from_attributes=True)


class InboundEventResponse(BaseModel):
    customer_id: UUID
    previous_state: str
    state: str
    outbound_actions: list[OutboundActionResponse]
    replayed: bool
    degraded: bool
    escalation: EscalationResponse
    queue_entry: QueueEntryResponse | None
