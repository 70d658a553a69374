from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_db_session
from app.domain.exceptions import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    TransientStoreError,
)
from app.services.engine import StateMachineEngine
from app.services.handoff import HandoffService
from app.services.queue import HumanQueueService
from app.services.runtime import ServiceRuntime


def get_runtime(request: Request) -> ServiceRuntime:
    return request.app.state.runtime


async def get_engine(
    runtime: ServiceRuntime = Depends(get_runtime),
    session: AsyncSession = Depends(get_db_session),
) -> StateMachineEngine:
    return runtime.engine(session)


async def get_queue_service(
    runtime: ServiceRuntime = Depends(get_runtime),
    session: AsyncSession = Depends(get_db_session),
) -> HumanQueueService:
    return runtime.queue(session)


async def get_handoff_service(
    runtime: ServiceRuntime = Depends(get_runtime),
    session: AsyncSession = Depends(get_db_session),
) -> HandoffService:
    return runtime.handoff(session)


def raise_for_service_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, (ConfigurationError, TransientStoreError)):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
        ) from exc
    if isinstance(exc, ValueError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    raise exc
