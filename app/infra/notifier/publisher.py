from collections.abc import Mapping, Sequence
from typing import Any, Protocol

from app.domain.enums import DomainEvent


class EventPublisher(Protocol):
    async def publish(
        self,
        channels: Sequence[str],
        event: DomainEvent,
        payload: Mapping[str, Any],
    ) -> None: ...


class NoopEventPublisher:
    async def publish(
        self,
        channels: Sequence[str],
        event: DomainEvent,
        payload: Mapping[str, Any],
    ) -> None:
        _ = channels
        _ = event
        _ = payload
        return None
