from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import Select, and_, case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.enums import (
    ACTIVE_QUEUE_STATUSES,
    Direction,
    EscalationPriority,
    QueueStatus,
)
from app.infra.db.models import ConversationState, Customer, Interaction, QueueEntry

_PRIORITY_ORDER = case(
    {priority: priority.rank for priority in EscalationPriority},
    value=QueueEntry.priority,
)


class CustomerRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_id(self, workspace_id: UUID, customer_id: UUID) -> Customer | None:
        customer = await self.session.get(Customer, customer_id)
        if customer is None or customer.workspace_id != workspace_id:
            return None
        return customer

    async def get_by_address(self, workspace_id: UUID, address: str) -> Customer | None:
        stmt: Select[tuple[Customer]] = select(Customer).where(
            Customer.workspace_id == workspace_id, Customer.address == address
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(
        self,
        workspace_id: UUID,
        address: str,
        display_name: str | None = None,
        tags: list[str] | None = None,
        metadata_json: dict | None = None,
    ) -> Customer:
        customer = Customer(
            workspace_id=workspace_id,
            address=address,
            display_name=display_name,
            tags=tags or [],
            metadata_json=metadata_json or {},
        )
        self.session.add(customer)
        await self.session.flush()
        return customer


class ConversationStateRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, workspace_id: UUID, customer_id: UUID) -> ConversationState | None:
        stmt: Select[tuple[ConversationState]] = select(ConversationState).where(
            ConversationState.workspace_id == workspace_id,
            ConversationState.customer_id == customer_id,
        )
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def create(
        self,
        workspace_id: UUID,
        customer_id: UUID,
        state: str,
        context: dict[str, Any],
        now: datetime,
    ) -> ConversationState:
        record = ConversationState(
            workspace_id=workspace_id,
            customer_id=customer_id,
            state=state,
            context=context,
            version=1,
            updated_at=now,
        )
        self.session.add(record)
        await self.session.flush()
        return record

    async def save(
        self,
        record: ConversationState,
        state: str,
        context: dict[str, Any],
        now: datetime,
    ) -> ConversationState | None:
        """Version-checked write; None means another writer got there first."""
        expected_version = record.version
        stmt = (
            update(ConversationState)
            .where(
                ConversationState.id == record.id,
                ConversationState.version == expected_version,
            )
            .values(
                state=state,
                context=context,
                version=expected_version + 1,
                updated_at=now,
            )
            .returning(ConversationState)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_idle(
        self,
        states: list[str],
        idle_before: datetime,
        limit: int = 200,
        after: tuple[datetime, UUID] | None = None,
    ) -> list[ConversationState]:
        """Page through silent conversations by ``(updated_at, id)``.

        ``after`` is the key of the last row of the previous page.
        """
        stmt: Select[tuple[ConversationState]] = select(ConversationState).where(
            ConversationState.state.in_(states),
            ConversationState.updated_at < idle_before,
        )
        if after is not None:
            updated_at, state_id = after
            stmt = stmt.where(
                or_(
                    ConversationState.updated_at > updated_at,
                    and_(
                        ConversationState.updated_at == updated_at,
                        ConversationState.id > state_id,
                    ),
                )
            )
        stmt = stmt.order_by(
            ConversationState.updated_at.asc(), ConversationState.id.asc()
        ).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class InteractionRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def append(
        self,
        workspace_id: UUID,
        customer_id: UUID,
        direction: Direction,
        channel: str,
        content: dict[str, Any],
        state: str,
        operator_id: UUID | None = None,
        external_event_id: str | None = None,
        created_at: datetime | None = None,
    ) -> Interaction:
        interaction = Interaction(
            workspace_id=workspace_id,
            customer_id=customer_id,
            direction=direction,
            channel=channel,
            content=content,
            state=state,
            operator_id=operator_id,
            external_event_id=external_event_id,
        )
        if created_at is not None:
            interaction.created_at = created_at
        self.session.add(interaction)
        await self.session.flush()
        return interaction

    async def find_inbound_by_event(
        self, workspace_id: UUID, customer_id: UUID, external_event_id: str
    ) -> Interaction | None:
        stmt: Select[tuple[Interaction]] = select(Interaction).where(
            Interaction.workspace_id == workspace_id,
            Interaction.customer_id == customer_id,
            Interaction.direction == Direction.INBOUND,
            Interaction.external_event_id == external_event_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_by_customer(
        self, workspace_id: UUID, customer_id: UUID, limit: int = 100
    ) -> list[Interaction]:
        stmt: Select[tuple[Interaction]] = (
            select(Interaction)
            .where(
                Interaction.workspace_id == workspace_id,
                Interaction.customer_id == customer_id,
            )
            .order_by(Interaction.created_at.asc(), Interaction.id.asc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class QueueRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_id(self, workspace_id: UUID, entry_id: UUID) -> QueueEntry | None:
        stmt: Select[tuple[QueueEntry]] = select(QueueEntry).where(
            QueueEntry.id == entry_id, QueueEntry.workspace_id == workspace_id
        )
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def get_active_for_customer(
        self, workspace_id: UUID, customer_id: UUID
    ) -> QueueEntry | None:
        stmt: Select[tuple[QueueEntry]] = select(QueueEntry).where(
            QueueEntry.workspace_id == workspace_id,
            QueueEntry.customer_id == customer_id,
            QueueEntry.status.in_(ACTIVE_QUEUE_STATUSES),
        )
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def create(
        self,
        workspace_id: UUID,
        customer_id: UUID,
        priority: EscalationPriority,
        reason: str | None,
        metadata_json: dict[str, Any],
        now: datetime,
    ) -> QueueEntry:
        entry = QueueEntry(
            workspace_id=workspace_id,
            customer_id=customer_id,
            status=QueueStatus.WAITING,
            priority=priority,
            reason=reason,
            metadata_json=metadata_json,
            created_at=now,
            updated_at=now,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def _update_one(self, entry_id: UUID, workspace_id: UUID, *criteria, **values):
        stmt = (
            update(QueueEntry)
            .where(QueueEntry.id == entry_id, QueueEntry.workspace_id == workspace_id, *criteria)
            .values(**values)
            .returning(QueueEntry)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def try_claim(
        self,
        workspace_id: UUID,
        entry_id: UUID,
        operator_id: UUID,
        lock_expires_at: datetime,
        now: datetime,
    ) -> QueueEntry | None:
        return await self._update_one(
            entry_id,
            workspace_id,
            QueueEntry.status == QueueStatus.WAITING,
            status=QueueStatus.LOCKED,
            operator_id=operator_id,
            lock_expires_at=lock_expires_at,
            updated_at=now,
        )

    async def try_renew(
        self,
        workspace_id: UUID,
        entry_id: UUID,
        operator_id: UUID,
        lock_expires_at: datetime,
        now: datetime,
    ) -> QueueEntry | None:
        return await self._update_one(
            entry_id,
            workspace_id,
            QueueEntry.status == QueueStatus.LOCKED,
            QueueEntry.operator_id == operator_id,
            QueueEntry.lock_expires_at > now,
            lock_expires_at=lock_expires_at,
            updated_at=now,
        )

    async def try_release(
        self,
        workspace_id: UUID,
        entry_id: UUID,
        operator_id: UUID,
        now: datetime,
    ) -> QueueEntry | None:
        return await self._update_one(
            entry_id,
            workspace_id,
            QueueEntry.status == QueueStatus.LOCKED,
            QueueEntry.operator_id == operator_id,
            status=QueueStatus.WAITING,
            operator_id=None,
            lock_expires_at=None,
            updated_at=now,
        )

    async def try_resolve(
        self,
        workspace_id: UUID,
        entry_id: UUID,
        operator_id: UUID,
        metadata_json: dict[str, Any],
        now: datetime,
    ) -> QueueEntry | None:
        return await self._update_one(
            entry_id,
            workspace_id,
            QueueEntry.status == QueueStatus.LOCKED,
            QueueEntry.operator_id == operator_id,
            QueueEntry.lock_expires_at > now,
            status=QueueStatus.DONE,
            operator_id=None,
            lock_expires_at=None,
            resolved_by=operator_id,
            metadata_json=metadata_json,
            updated_at=now,
        )

    async def try_cancel(
        self,
        workspace_id: UUID,
        entry_id: UUID,
        metadata_json: dict[str, Any],
        now: datetime,
    ) -> QueueEntry | None:
        return await self._update_one(
            entry_id,
            workspace_id,
            QueueEntry.status.in_(ACTIVE_QUEUE_STATUSES),
            status=QueueStatus.CANCELLED,
            operator_id=None,
            lock_expires_at=None,
            metadata_json=metadata_json,
            updated_at=now,
        )

    async def reclaim_expired(
        self,
        now: datetime,
        workspace_id: UUID | None = None,
        entry_id: UUID | None = None,
    ) -> list[QueueEntry]:
        criteria = [
            QueueEntry.status == QueueStatus.LOCKED,
            QueueEntry.lock_expires_at <= now,
        ]
        if workspace_id is not None:
            criteria.append(QueueEntry.workspace_id == workspace_id)
        if entry_id is not None:
            criteria.append(QueueEntry.id == entry_id)

        stmt = (
            update(QueueEntry)
            .where(*criteria)
            .values(
                status=QueueStatus.WAITING,
                operator_id=None,
                lock_expires_at=None,
                updated_at=now,
            )
            .returning(QueueEntry)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_waiting(self, workspace_id: UUID, limit: int = 100) -> list[QueueEntry]:
        stmt: Select[tuple[QueueEntry]] = (
            select(QueueEntry)
            .where(
                QueueEntry.workspace_id == workspace_id,
                QueueEntry.status == QueueStatus.WAITING,
            )
            .order_by(_PRIORITY_ORDER.asc(), QueueEntry.created_at.asc(), QueueEntry.id.asc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_active(self, workspace_id: UUID, limit: int = 200) -> list[QueueEntry]:
        stmt: Select[tuple[QueueEntry]] = (
            select(QueueEntry)
            .where(
                QueueEntry.workspace_id == workspace_id,
                QueueEntry.status.in_(ACTIVE_QUEUE_STATUSES),
            )
            .order_by(
                QueueEntry.status.asc(),
                _PRIORITY_ORDER.asc(),
                QueueEntry.created_at.asc(),
            )
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_active_locks(
        self, workspace_id: UUID, operator_id: UUID, now: datetime
    ) -> int:
        stmt: Select[tuple[int]] = select(func.count(QueueEntry.id)).where(
            QueueEntry.workspace_id == workspace_id,
            QueueEntry.operator_id == operator_id,
            QueueEntry.status == QueueStatus.LOCKED,
            QueueEntry.lock_expires_at > now,
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one() or 0)
