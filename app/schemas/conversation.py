from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from app.domain.enums import Direction


class ConversationStateResponse(BaseModel):
    customer_id: UUID
    state: str
    context: dict
    version: int
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class InteractionResponse(BaseModel):
    id: UUID
    direction: Direction
    channel: str
    content: dict
    state: str
    operator_id: UUID | None
    external_event_id: str | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class InteractionListResponse(BaseModel):
    items: list[InteractionResponse]
