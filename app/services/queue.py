from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.locks import KeyedLock
from app.core.retry import store_retrying
from app.domain.enums import ActorType, DomainEvent, EscalationPriority, QueueStatus
from app.domain.exceptions import ConflictError, TransientStoreError
from app.infra.db.models import QueueEntry
from app.infra.db.repositories import CustomerRepository, QueueRepository
from app.infra.db.unit_of_work import atomic
from app.infra.notifier.channels import (
    customer_channel,
    operator_channel,
    workspace_queue_channel,
)
from app.services.errors import (
    CustomerNotFoundError,
    LockExpiredError,
    LockNotHeldError,
    OperatorCapacityError,
    QueueEntryAlreadyClaimedError,
    QueueEntryClosedError,
    QueueEntryNotFoundError,
)
from app.services.notifications import Notifications

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def operator_actor(operator_id: UUID) -> str:
    return f"{ActorType.OPERATOR.value}:{operator_id}"


@dataclass(slots=True)
class EnqueueResult:
    entry: QueueEntry
    created: bool


class HumanQueueService:
    """Queue of customers waiting for, or being handled by, a human operator.

    Every mutation is one conditional UPDATE scoped to a single row, so two
    operators racing for the same entry cannot both win. Expired locks are
    handed back to the waiting list lazily on access and by ``sweep_expired``.

    The per-operator capacity check is exact within one process, where claims
    by the same operator are serialised. Across processes it is advisory: two
    workers can each admit one claim past the limit.
    """

    def __init__(
        self,
        session: AsyncSession,
        entries: QueueRepository | None = None,
        customers: CustomerRepository | None = None,
        notifications: Notifications | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
        locks: KeyedLock | None = None,
    ) -> None:
        self.session = session
        self.entries = entries or QueueRepository(session)
        self.customers = customers or CustomerRepository(session)
        self.notifications = notifications or Notifications()
        self.settings = settings or get_settings()
        self.clock = clock
        self.locks = locks or KeyedLock()

    async def enqueue(
        self,
        workspace_id: UUID,
        customer_id: UUID,
        priority: EscalationPriority,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> EnqueueResult:
        try:
            result = await self._retry_transient(
                self._enqueue_once, workspace_id, customer_id, priority, reason, metadata
            )
        except ConflictError:
            # Lost the race against another escalation of the same customer.
            entry = await self._retry_transient(self._active_entry, workspace_id, customer_id)
            if entry is None:
                raise
            result = EnqueueResult(entry=entry, created=False)

        if result.created:
            logger.info(
                "Customer queued for a human",
                workspace_id=str(workspace_id),
                customer_id=str(customer_id),
                entry_id=str(result.entry.id),
                priority=priority.value,
                reason=reason,
            )
            await self._emit(DomainEvent.QUEUE_CREATED, result.entry, ActorType.SYSTEM.value)
        return result

    async def claim(self, workspace_id: UUID, entry_id: UUID, operator_id: UUID) -> QueueEntry:
        await self.sweep_expired(workspace_id, entry_id=entry_id)
        async with self.locks.hold(("operator", workspace_id, operator_id)):
            entry = await self._retry_transient(
                self._claim_once, workspace_id, entry_id, operator_id
            )
        logger.info(
            "Queue entry claimed",
            workspace_id=str(workspace_id),
            entry_id=str(entry.id),
            operator_id=str(operator_id),
        )
        await self._emit(DomainEvent.QUEUE_CLAIMED, entry, operator_actor(operator_id))
        return entry

    async def renew(self, workspace_id: UUID, entry_id: UUID, operator_id: UUID) -> QueueEntry:
        entry = await self._retry_transient(self._renew_once, workspace_id, entry_id, operator_id)
        await self._emit(DomainEvent.QUEUE_RENEWED, entry, operator_actor(operator_id))
        return entry

    async def release(self, workspace_id: UUID, entry_id: UUID, operator_id: UUID) -> QueueEntry:
        entry = await self._retry_transient(
            self._release_once, workspace_id, entry_id, operator_id
        )
        await self._emit(DomainEvent.QUEUE_RELEASED, entry, operator_actor(operator_id))
        return entry

    async def resolve(
        self,
        workspace_id: UUID,
        entry_id: UUID,
        operator_id: UUID,
        outcome: str | None = None,
    ) -> QueueEntry:
        entry = await self._retry_transient(
            self._resolve_once, workspace_id, entry_id, operator_id, outcome
        )
        logger.info(
            "Queue entry resolved",
            workspace_id=str(workspace_id),
            entry_id=str(entry.id),
            operator_id=str(operator_id),
        )
        await self._emit(DomainEvent.QUEUE_RESOLVED, entry, operator_actor(operator_id))
        return entry

    async def cancel(
        self,
        workspace_id: UUID,
        entry_id: UUID,
        actor: str = ActorType.ADMIN.value,
        reason: str | None = None,
    ) -> QueueEntry:
        entry = await self._retry_transient(
            self._cancel_once, workspace_id, entry_id, actor, reason
        )
        logger.info(
            "Queue entry cancelled",
            workspace_id=str(workspace_id),
            entry_id=str(entry.id),
            actor=actor,
        )
        await self._emit(DomainEvent.QUEUE_CANCELLED, entry, actor)
        return entry

    async def get_entry(self, workspace_id: UUID, entry_id: UUID) -> QueueEntry:
        await self.sweep_expired(workspace_id, entry_id=entry_id)
        entry = await self.entries.get_by_id(workspace_id, entry_id)
        if entry is None:
            raise QueueEntryNotFoundError(entry_id)
        return entry

    async def assert_holder(
        self, workspace_id: UUID, entry_id: UUID, operator_id: UUID
    ) -> QueueEntry:
        now = self.clock()
        entry = await self._get_or_raise(workspace_id, entry_id)
        if (
            entry.status == QueueStatus.LOCKED
            and entry.operator_id == operator_id
            and entry.lock_expires_at is not None
            and entry.lock_expires_at > now
        ):
            return entry
        await self._raise_for_holder(workspace_id, entry_id, operator_id, now)
        return entry

    async def get_active_for_customer(
        self, workspace_id: UUID, customer_id: UUID
    ) -> QueueEntry | None:
        return await self.entries.get_active_for_customer(workspace_id, customer_id)

    async def list_waiting(self, workspace_id: UUID, limit: int = 100) -> list[QueueEntry]:
        await self.sweep_expired(workspace_id)
        return await self.entries.list_waiting(workspace_id, limit=limit)

    async def list_active(self, workspace_id: UUID, limit: int = 200) -> list[QueueEntry]:
        await self.sweep_expired(workspace_id)
        return await self.entries.list_active(workspace_id, limit=limit)

    async def sweep_expired(
        self, workspace_id: UUID | None = None, entry_id: UUID | None = None
    ) -> list[QueueEntry]:
        """Return expired locks to the waiting list; a no-op for everything else."""
        reclaimed = await self._retry_transient(self._reclaim_once, workspace_id, entry_id)
        for entry in reclaimed:
            logger.info(
                "Expired queue lock reclaimed",
                workspace_id=str(entry.workspace_id),
                entry_id=str(entry.id),
            )
            await self._emit(DomainEvent.QUEUE_RELEASED, entry, ActorType.SYSTEM.value)
        return reclaimed

    async def _retry_transient(self, operation, *args):
        async for attempt in store_retrying(
            (TransientStoreError,),
            max_attempts=self.settings.state_write_max_attempts,
            backoff_min=self.settings.state_write_backoff_min_seconds,
            backoff_max=self.settings.state_write_backoff_max_seconds,
        ):
            with attempt:
                return await operation(*args)

    async def _enqueue_once(
        self,
        workspace_id: UUID,
        customer_id: UUID,
        priority: EscalationPriority,
        reason: str | None,
        metadata: dict[str, Any] | None,
    ) -> EnqueueResult:
        async with atomic(self.session):
            existing = await self.entries.get_active_for_customer(workspace_id, customer_id)
            if existing is not None:
                return EnqueueResult(entry=existing, created=False)
            if await self.customers.get_by_id(workspace_id, customer_id) is None:
                raise CustomerNotFoundError(customer_id)
            entry = await self.entries.create(
                workspace_id=workspace_id,
                customer_id=customer_id,
                priority=priority,
                reason=reason,
                metadata_json=dict(metadata or {}),
                now=self.clock(),
            )
            return EnqueueResult(entry=entry, created=True)

    async def _active_entry(self, workspace_id: UUID, customer_id: UUID) -> QueueEntry | None:
        async with atomic(self.session):
            return await self.entries.get_active_for_customer(workspace_id, customer_id)

    async def _claim_once(
        self, workspace_id: UUID, entry_id: UUID, operator_id: UUID
    ) -> QueueEntry:
        async with atomic(self.session):
            now = self.clock()
            max_locks = self.settings.operator_max_active_locks
            held = await self.entries.count_active_locks(workspace_id, operator_id, now)
            if held >= max_locks:
                raise OperatorCapacityError(operator_id, max_locks)

            lease = timedelta(seconds=self.settings.lock_lease_seconds_for(workspace_id))
            entry = await self.entries.try_claim(
                workspace_id, entry_id, operator_id, now + lease, now
            )
            if entry is not None:
                return entry

            current = await self._get_or_raise(workspace_id, entry_id)
            if current.status.is_terminal:
                raise QueueEntryClosedError(entry_id, current.status)
            logger.info(
                "Queue claim lost",
                workspace_id=str(workspace_id),
                entry_id=str(entry_id),
                operator_id=str(operator_id),
                holder_id=str(current.operator_id),
            )
            raise QueueEntryAlreadyClaimedError(entry_id, current.operator_id)

    async def _renew_once(
        self, workspace_id: UUID, entry_id: UUID, operator_id: UUID
    ) -> QueueEntry:
        async with atomic(self.session):
            now = self.clock()
            lease = timedelta(seconds=self.settings.lock_lease_seconds_for(workspace_id))
            entry = await self.entries.try_renew(
                workspace_id, entry_id, operator_id, now + lease, now
            )
            if entry is None:
                await self._raise_for_holder(workspace_id, entry_id, operator_id, now)
            return entry

    async def _release_once(
        self, workspace_id: UUID, entry_id: UUID, operator_id: UUID
    ) -> QueueEntry:
        async with atomic(self.session):
            now = self.clock()
            entry = await self.entries.try_release(workspace_id, entry_id, operator_id, now)
            if entry is None:
                await self._raise_for_holder(workspace_id, entry_id, operator_id, now)
            return entry

    async def _resolve_once(
        self,
        workspace_id: UUID,
        entry_id: UUID,
        operator_id: UUID,
        outcome: str | None,
    ) -> QueueEntry:
        async with atomic(self.session):
            now = self.clock()
            current = await self._get_or_raise(workspace_id, entry_id)
            metadata = {
                **(current.metadata_json or {}),
                "resolution": {
                    "outcome": outcome,
                    "operator_id": str(operator_id),
                    "at": now.isoformat(),
                },
            }
            entry = await self.entries.try_resolve(
                workspace_id, entry_id, operator_id, metadata, now
            )
            if entry is None:
                await self._raise_for_holder(workspace_id, entry_id, operator_id, now)
            return entry

    async def _cancel_once(
        self,
        workspace_id: UUID,
        entry_id: UUID,
        actor: str,
        reason: str | None,
    ) -> QueueEntry:
        async with atomic(self.session):
            now = self.clock()
            current = await self._get_or_raise(workspace_id, entry_id)
            metadata = {
                **(current.metadata_json or {}),
                "cancellation": {"actor": actor, "reason": reason, "at": now.isoformat()},
            }
            entry = await self.entries.try_cancel(workspace_id, entry_id, metadata, now)
            if entry is None:
                current = await self._get_or_raise(workspace_id, entry_id)
                raise QueueEntryClosedError(entry_id, current.status)
            return entry

    async def _reclaim_once(
        self, workspace_id: UUID | None, entry_id: UUID | None
    ) -> list[QueueEntry]:
        async with atomic(self.session):
            return await self.entries.reclaim_expired(
                self.clock(), workspace_id=workspace_id, entry_id=entry_id
            )

    async def _get_or_raise(self, workspace_id: UUID, entry_id: UUID) -> QueueEntry:
        entry = await self.entries.get_by_id(workspace_id, entry_id)
        if entry is None:
            raise QueueEntryNotFoundError(entry_id)
        return entry

    async def _raise_for_holder(
        self, workspace_id: UUID, entry_id: UUID, operator_id: UUID, now: datetime
    ) -> None:
        current = await self._get_or_raise(workspace_id, entry_id)
        if current.status.is_terminal:
            raise QueueEntryClosedError(entry_id, current.status)
        if current.status != QueueStatus.LOCKED or current.operator_id != operator_id:
            raise LockNotHeldError(entry_id, operator_id)
        if current.lock_expires_at is not None and current.lock_expires_at <= now:
            raise LockExpiredError(entry_id, current.lock_expires_at)
        raise LockNotHeldError(entry_id, operator_id)

    async def _emit(self, event: DomainEvent, entry: QueueEntry, actor: str) -> None:
        channels = [
            workspace_queue_channel(entry.workspace_id),
            customer_channel(entry.workspace_id, entry.customer_id),
        ]
        if entry.operator_id is not None:
            channels.append(operator_channel(entry.workspace_id, entry.operator_id))
        await self.notifications.emit(
            channels=channels,
            event=event,
            workspace_id=entry.workspace_id,
            customer_id=entry.customer_id,
            actor=actor,
            entity_type="queue_entry",
            entity_id=entry.id,
            snapshot=self.snapshot(entry),
        )

    @staticmethod
    def snapshot(entry: QueueEntry) -> dict[str, Any]:
        return {
            "id": str(entry.id),
            "status": entry.status.value,
            "priority": entry.priority.value,
            "operator_id": str(entry.operator_id) if entry.operator_id else None,
            "lock_expires_at": (
                entry.lock_expires_at.isoformat() if entry.lock_expires_at else None
            ),
            "reason": entry.reason,
            "resolved_by": str(entry.resolved_by) if entry.resolved_by else None,
            "created_at": entry.created_at.isoformat() if entry.created_at else None,
        }
