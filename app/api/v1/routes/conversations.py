from uuid import UUID

from fastapi import APIRouter, Depends, Query

from app.api.dependencies import get_engine, raise_for_service_error
from app.domain.exceptions import NotFoundError
from app.schemas.conversation import (
    ConversationStateResponse,
    InteractionListResponse,
    InteractionResponse,
)
from app.services.engine import StateMachineEngine

router = APIRouter()


@router.get(
    "/{workspace_id}/customers/{customer_id}/state",
    response_model=ConversationStateResponse,
)
async def get_conversation_state(
    workspace_id: UUID,
    customer_id: UUID,
    engine: StateMachineEngine = Depends(get_engine),
) -> ConversationStateResponse:
    try:
        record = await engine.get_state(workspace_id, customer_id)
    except NotFoundError as exc:
        raise_for_service_error(exc)
    return ConversationStateResponse.model_validate(record)


@router.get(
    "/{workspace_id}/customers/{customer_id}/interactions",
    response_model=InteractionListResponse,
)
async def list_interactions(
    workspace_id: UUID,
    customer_id: UUID,
    limit: int = Query(default=100, ge=1, le=500),
    engine: StateMachineEngine = Depends(get_engine),
) -> InteractionListResponse:
    try:
        interactions = await engine.list_interactions(workspace_id, customer_id, limit=limit)
    except NotFoundError as exc:
        raise_for_service_error(exc)
    return InteractionListResponse(
        items=[InteractionResponse.model_validate(item) for item in interactions]
    )
