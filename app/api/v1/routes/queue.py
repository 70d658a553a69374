from uuid import UUID

from fastapi import APIRouter, Depends, Query

from app.api.dependencies import (
    get_handoff_service,
    get_queue_service,
    raise_for_service_error,
)
from app.domain.exceptions import ConflictError, NotFoundError, TransientStoreError
from app.schemas.conversation import InteractionResponse
from app.schemas.queue import (
    CancelEntryRequest,
    OperatorActionRequest,
    OperatorMessageRequest,
    QueueEntryListResponse,
    QueueEntryResponse,
    ResolveEntryRequest,
    SweepResponse,
)
from app.services.handoff import HandoffService
from app.services.queue import HumanQueueService

router = APIRouter()

_QUEUE_ERRORS = (NotFoundError, ConflictError, TransientStoreError)


def _to_entry_response(entry) -> QueueEntryResponse:
    return QueueEntryResponse.model_validate(entry)


@router.get("/{workspace_id}/queue", response_model=QueueEntryListResponse)
async def list_waiting_entries(
    workspace_id: UUID,
    limit: int = Query(default=100, ge=1, le=500),
    service: HumanQueueService = Depends(get_queue_service),
) -> QueueEntryListResponse:
    entries = await service.list_waiting(workspace_id, limit=limit)
    return QueueEntryListResponse(items=[_to_entry_response(entry) for entry in entries])


@router.get("/{workspace_id}/queue/active", response_model=QueueEntryListResponse)
async def list_active_entries(
    workspace_id: UUID,
    limit: int = Query(default=200, ge=1, le=500),
    service: HumanQueueService = Depends(get_queue_service),
) -> QueueEntryListResponse:
    entries = await service.list_active(workspace_id, limit=limit)
    return QueueEntryListResponse(items=[_to_entry_response(entry) for entry in entries])


@router.post("/{workspace_id}/queue/sweep", response_model=SweepResponse)
async def sweep_expired_locks(
    workspace_id: UUID,
    service: HumanQueueService = Depends(get_queue_service),
) -> SweepResponse:
    reclaimed = await service.sweep_expired(workspace_id)
    return SweepResponse(reclaimed=[_to_entry_response(entry) for entry in reclaimed])


@router.get("/{workspace_id}/queue/{entry_id}", response_model=QueueEntryResponse)
async def get_queue_entry(
    workspace_id: UUID,
    entry_id: UUID,
    service: HumanQueueService = Depends(get_queue_service),
) -> QueueEntryResponse:
    try:
        entry = await service.get_entry(workspace_id, entry_id)
    except _QUEUE_ERRORS as exc:
        raise_for_service_error(exc)
    return _to_entry_response(entry)


@router.post("/{workspace_id}/queue/{entry_id}/claim", response_model=QueueEntryResponse)
async def claim_entry(
    workspace_id: UUID,
    entry_id: UUID,
    payload: OperatorActionRequest,
    service: HumanQueueService = Depends(get_queue_service),
) -> QueueEntryResponse:
    try:
        entry = await service.claim(workspace_id, entry_id, payload.operator_id)
    except _QUEUE_ERRORS as exc:
        raise_for_service_error(exc)
    return _to_entry_response(entry)


@router.post("/{workspace_id}/queue/{entry_id}/renew", response_model=QueueEntryResponse)
async def renew_entry(
    workspace_id: UUID,
    entry_id: UUID,
    payload: OperatorActionRequest,
    service: HumanQueueService = Depends(get_queue_service),
) -> QueueEntryResponse:
    try:
        entry = await service.renew(workspace_id, entry_id, payload.operator_id)
    except _QUEUE_ERRORS as exc:
        raise_for_service_error(exc)
    return _to_entry_response(entry)


@router.post("/{workspace_id}/queue/{entry_id}/release", response_model=QueueEntryResponse)
async def release_entry(
    workspace_id: UUID,
    entry_id: UUID,
    payload: OperatorActionRequest,
    service: HumanQueueService = Depends(get_queue_service),
) -> QueueEntryResponse:
    try:
        entry = await service.release(workspace_id, entry_id, payload.operator_id)
    except _QUEUE_ERRORS as exc:
        raise_for_service_error(exc)
    return _to_entry_response(entry)


@router.post("/{workspace_id}/queue/{entry_id}/resolve", response_model=QueueEntryResponse)
async def resolve_entry(
    workspace_id: UUID,
    entry_id: UUID,
    payload: ResolveEntryRequest,
    service: HandoffService = Depends(get_handoff_service),
) -> QueueEntryResponse:
    try:
        entry = await service.resolve(
            workspace_id, entry_id, payload.operator_id, outcome=payload.outcome
        )
    except _QUEUE_ERRORS as exc:
        raise_for_service_error(exc)
    return _to_entry_response(entry)


@router.post("/{workspace_id}/queue/{entry_id}/cancel", response_model=QueueEntryResponse)
async def cancel_entry(
    workspace_id: UUID,
    entry_id: UUID,
    payload: CancelEntryRequest,
    service: HandoffService = Depends(get_handoff_service),
) -> QueueEntryResponse:
    try:
        entry = await service.cancel(
            workspace_id, entry_id, actor=payload.actor, reason=payload.reason
        )
    except _QUEUE_ERRORS as exc:
        raise_for_service_error(exc)
    return _to_entry_response(entry)


@router.post(
    "/{workspace_id}/queue/{entry_id}/messages",
    response_model=InteractionResponse,
)
async def post_operator_message(
    workspace_id: UUID,
    entry_id: UUID,
    payload: OperatorMessageRequest,
    service: HandoffService = Depends(get_handoff_service),
) -> InteractionResponse:
    try:
        interaction = await service.send_operator_message(
            workspace_id,
            entry_id,
            payload.operator_id,
            payload.content,
            channel=payload.channel,
        )
    except _QUEUE_ERRORS as exc:
        raise_for_service_error(exc)
    return InteractionResponse.model_validate(interaction)
