from uuid import UUID

from fastapi import APIRouter, Depends

from app.api.dependencies import get_handoff_service, raise_for_service_error
from app.domain.exceptions import NotFoundError, TransientStoreError
from app.domain.messages import InboundEvent
from app.schemas.inbound import (
    EscalationResponse,
    InboundEventRequest,
    InboundEventResponse,
    OutboundActionResponse,
)
from app.schemas.queue import QueueEntryResponse
from app.services.handoff import HandoffService, InboundResult

router = APIRouter()


def _to_event(payload: InboundEventRequest) -> InboundEvent:
    extra = {}
    if payload.timestamp is not None:
        extra["timestamp"] = payload.timestamp
    return InboundEvent(
        intent=payload.intent.strip(),
        payload=payload.payload,
        channel=payload.channel,
        event_id=payload.event_id,
        confidence=payload.confidence,
        **extra,
    )


def _to_inbound_response(result: InboundResult) -> InboundEventResponse:
    return InboundEventResponse(
        customer_id=result.customer.id,
        previous_state=result.outcome.previous_state,
        state=result.outcome.new_state.value,
        outbound_actions=[
            OutboundActionResponse.model_validate(action)
            for action in result.outcome.outbound_actions
        ],
        replayed=result.outcome.replayed,
        degraded=result.degraded,
        escalation=EscalationResponse.model_validate(result.decision),
        queue_entry=(
            QueueEntryResponse.model_validate(result.queue_entry)
            if result.queue_entry is not None
            else None
        ),
    )


@router.post("/{workspace_id}/inbound", response_model=InboundEventResponse)
async def post_inbound_event(
    workspace_id: UUID,
    payload: InboundEventRequest,
    service: HandoffService = Depends(get_handoff_service),
) -> InboundEventResponse:
    try:
        result = await service.handle_inbound(
            workspace_id=workspace_id,
            address=payload.address,
            event=_to_event(payload),
            display_name=payload.display_name,
        )
    except (NotFoundError, TransientStoreError, ValueError) as exc:
        raise_for_service_error(exc)
    return _to_inbound_response(result)
