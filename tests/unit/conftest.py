import asyncio
import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

import pytest
from sqlalchemy.exc import IntegrityError

from app.core.config import Settings
from app.core.locks import KeyedLock
from app.domain.enums import (
    ACTIVE_QUEUE_STATUSES,
    Direction,
    EscalationPriority,
    QueueStatus,
)
from app.domain.escalation import EscalationPolicy, completeness_at_least
from app.domain.flow import FlowRegistry
from app.domain.flows import default_retail_table
from app.infra.notifier.audit import InMemoryAuditSink
from app.infra.notifier.memory import InMemoryEventPublisher
from app.services.engine import StateMachineEngine
from app.services.handoff import HandoffService
from app.services.notifications import Notifications
from app.services.queue import HumanQueueService

WORKSPACE_ID = UUID("6f1c2a52-8d1e-4b5f-9a53-0c3f3f2b7a10")


def _duplicate(name: str) -> IntegrityError:
    return IntegrityError("INSERT", {}, Exception(f"duplicate key value violates {name}"))


class FakeClock:
    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2026, 3, 2, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@dataclass(slots=True)
class FakeCustomer:
    id: UUID
    workspace_id: UUID
    address: str
    display_name: str | None = None
    tags: list = field(default_factory=list)
    metadata_json: dict = field(default_factory=dict)


@dataclass(slots=True)
class FakeConversationState:
    id: UUID
    workspace_id: UUID
    customer_id: UUID
    state: str
    context: dict
    version: int
    updated_at: datetime


@dataclass(slots=True)
class FakeInteraction:
    id: UUID
    workspace_id: UUID
    customer_id: UUID
    direction: Direction
    channel: str
    content: dict
    state: str
    operator_id: UUID | None
    external_event_id: str | None
    created_at: datetime


@dataclass(slots=True)
class FakeQueueEntry:
    id: UUID
    workspace_id: UUID
    customer_id: UUID
    status: QueueStatus
    priority: EscalationPriority
    reason: str | None
    metadata_json: dict
    created_at: datetime
    updated_at: datetime
    operator_id: UUID | None = None
    lock_expires_at: datetime | None = None
    resolved_by: UUID | None = None


class FakeStore:
    """Tables plus a copy-on-first-write snapshot that rollback restores."""

    def __init__(self) -> None:
        self.customers: dict[UUID, FakeCustomer] = {}
        self.states: dict[UUID, FakeConversationState] = {}
        self.interactions: list[FakeInteraction] = []
        self.entries: dict[UUID, FakeQueueEntry] = {}
        self._snapshot: tuple | None = None

    def touch(self) -> None:
        if self._snapshot is None:
            self._snapshot = copy.deepcopy(
                (self.customers, self.states, self.interactions, self.entries)
            )

    def commit(self) -> None:
        self._snapshot = None

    def rollback(self) -> None:
        if self._snapshot is not None:
            self.customers, self.states, self.interactions, self.entries = self._snapshot
            self._snapshot = None


class FakeSession:
    def __init__(self, store: FakeStore) -> None:
        self.store = store
        self.commits = 0
        self.rollbacks = 0

    async def commit(self) -> None:
        self.store.commit()
        self.commits += 1

    async def rollback(self) -> None:
        self.store.rollback()
        self.rollbacks += 1

    async def __aenter__(self) -> "FakeSession":
        return self

    async def __aexit__(self, *_: object) -> None:
        return None


class FakeCustomerRepository:
    def __init__(self, store: FakeStore) -> None:
        self.store = store

    async def get_by_id(self, workspace_id: UUID, customer_id: UUID) -> FakeCustomer | None:
        customer = self.store.customers.get(customer_id)
        if customer is None or customer.workspace_id != workspace_id:
            return None
        return customer

    async def get_by_address(self, workspace_id: UUID, address: str) -> FakeCustomer | None:
        for customer in self.store.customers.values():
            if customer.workspace_id == workspace_id and customer.address == address:
                return customer
        return None

    async def create(
        self,
        workspace_id: UUID,
        address: str,
        display_name: str | None = None,
        tags: list[str] | None = None,
        metadata_json: dict | None = None,
    ) -> FakeCustomer:
        if await self.get_by_address(workspace_id, address) is not None:
            raise _duplicate("uq_customers_workspace_address")
        self.store.touch()
        customer = FakeCustomer(
            id=uuid4(),
            workspace_id=workspace_id,
            address=address,
            display_name=display_name,
            tags=tags or [],
            metadata_json=metadata_json or {},
        )
        self.store.customers[customer.id] = customer
        return customer


class FakeConversationStateRepository:
    def __init__(self, store: FakeStore) -> None:
        self.store = store
        self.conflicts_remaining = 0
        self.save_calls = 0

    async def get(self, workspace_id: UUID, customer_id: UUID) -> FakeConversationState | None:
        for record in self.store.states.values():
            if record.workspace_id == workspace_id and record.customer_id == customer_id:
                return record
        return None

    async def create(
        self,
        workspace_id: UUID,
        customer_id: UUID,
        state: str,
        context: dict[str, Any],
        now: datetime,
    ) -> FakeConversationState:
        if await self.get(workspace_id, customer_id) is not None:
            raise _duplicate("uq_conversation_states_workspace_customer")
        self.store.touch()
        record = FakeConversationState(
            id=uuid4(),
            workspace_id=workspace_id,
            customer_id=customer_id,
            state=state,
            context=copy.deepcopy(context),
            version=1,
            updated_at=now,
        )
        self.store.states[record.id] = record
        return record

    async def save(
        self,
        record: FakeConversationState,
        state: str,
        context: dict[str, Any],
        now: datetime,
    ) -> FakeConversationState | None:
        self.save_calls += 1
        if self.conflicts_remaining:
            self.conflicts_remaining -= 1
            return None
        current = self.store.states.get(record.id)
        if current is None or current.version != record.version:
            return None
        self.store.touch()
        current = self.store.states[record.id]
        current.state = state
        current.context = copy.deepcopy(context)
        current.version += 1
        current.updated_at = now
        return current

    async def list_idle(
        self,
        states: list[str],
        idle_before: datetime,
        limit: int = 200,
        after: tuple[datetime, UUID] | None = None,
    ) -> list[FakeConversationState]:
        matches = [
            record
            for record in self.store.states.values()
            if record.state in states
            and record.updated_at < idle_before
            and (after is None or (record.updated_at, record.id) > after)
        ]
        return sorted(matches, key=lambda record: (record.updated_at, record.id))[:limit]


class FakeInteractionRepository:
    def __init__(self, store: FakeStore) -> None:
        self.store = store
        self.fail_with: Exception | None = None

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
    ) -> FakeInteraction:
        if self.fail_with is not None:
            raise self.fail_with
        if external_event_id is not None and await self.find_inbound_by_event(
            workspace_id, customer_id, external_event_id
        ):
            raise _duplicate("uq_interactions_external_event")
        self.store.touch()
        interaction = FakeInteraction(
            id=uuid4(),
            workspace_id=workspace_id,
            customer_id=customer_id,
            direction=direction,
            channel=channel,
            content=copy.deepcopy(content),
            state=state,
            operator_id=operator_id,
            external_event_id=external_event_id,
            created_at=created_at or datetime.now(UTC),
        )
        self.store.interactions.append(interaction)
        return interaction

    async def find_inbound_by_event(
        self, workspace_id: UUID, customer_id: UUID, external_event_id: str
    ) -> FakeInteraction | None:
        for interaction in self.store.interactions:
            if (
                interaction.workspace_id == workspace_id
                and interaction.customer_id == customer_id
                and interaction.direction == Direction.INBOUND
                and interaction.external_event_id == external_event_id
            ):
                return interaction
        return None

    async def list_by_customer(
        self, workspace_id: UUID, customer_id: UUID, limit: int = 100
    ) -> list[FakeInteraction]:
        matches = [
            interaction
            for interaction in self.store.interactions
            if interaction.workspace_id == workspace_id
            and interaction.customer_id == customer_id
        ]
        return sorted(matches, key=lambda interaction: interaction.created_at)[:limit]


class FakeQueueRepository:
    def __init__(self, store: FakeStore) -> None:
        self.store = store

    async def get_by_id(self, workspace_id: UUID, entry_id: UUID) -> FakeQueueEntry | None:
        entry = self.store.entries.get(entry_id)
        if entry is None or entry.workspace_id != workspace_id:
            return None
        return entry

    async def get_active_for_customer(
        self, workspace_id: UUID, customer_id: UUID
    ) -> FakeQueueEntry | None:
        for entry in self.store.entries.values():
            if (
                entry.workspace_id == workspace_id
                and entry.customer_id == customer_id
                and entry.status in ACTIVE_QUEUE_STATUSES
            ):
                return entry
        return None

    async def create(
        self,
        workspace_id: UUID,
        customer_id: UUID,
        priority: EscalationPriority,
        reason: str | None,
        metadata_json: dict[str, Any],
        now: datetime,
    ) -> FakeQueueEntry:
        if await self.get_active_for_customer(workspace_id, customer_id) is not None:
            raise _duplicate("uq_queue_entries_active_customer")
        self.store.touch()
        entry = FakeQueueEntry(
            id=uuid4(),
            workspace_id=workspace_id,
            customer_id=customer_id,
            status=QueueStatus.WAITING,
            priority=priority,
            reason=reason,
            metadata_json=copy.deepcopy(metadata_json),
            created_at=now,
            updated_at=now,
        )
        self.store.entries[entry.id] = entry
        return entry

    def _update(self, entry_id: UUID, workspace_id: UUID, condition, **values):
        entry = self.store.entries.get(entry_id)
        if entry is None or entry.workspace_id != workspace_id or not condition(entry):
            return None
        self.store.touch()
        entry = self.store.entries[entry_id]
        for key, value in values.items():
            setattr(entry, key, value)
        return entry

    async def try_claim(self, workspace_id, entry_id, operator_id, lock_expires_at, now):
        return self._update(
            entry_id,
            workspace_id,
            lambda entry: entry.status == QueueStatus.WAITING,
            status=QueueStatus.LOCKED,
            operator_id=operator_id,
            lock_expires_at=lock_expires_at,
            updated_at=now,
        )

    async def try_renew(self, workspace_id, entry_id, operator_id, lock_expires_at, now):
        return self._update(
            entry_id,
            workspace_id,
            lambda entry: entry.status == QueueStatus.LOCKED
            and entry.operator_id == operator_id
            and entry.lock_expires_at > now,
            lock_expires_at=lock_expires_at,
            updated_at=now,
        )

    async def try_release(self, workspace_id, entry_id, operator_id, now):
        return self._update(
            entry_id,
            workspace_id,
            lambda entry: entry.status == QueueStatus.LOCKED
            and entry.operator_id == operator_id,
            status=QueueStatus.WAITING,
            operator_id=None,
            lock_expires_at=None,
            updated_at=now,
        )

    async def try_resolve(self, workspace_id, entry_id, operator_id, metadata_json, now):
        return self._update(
            entry_id,
            workspace_id,
            lambda entry: entry.status == QueueStatus.LOCKED
            and entry.operator_id == operator_id
            and entry.lock_expires_at > now,
            status=QueueStatus.DONE,
            operator_id=None,
            lock_expires_at=None,
            resolved_by=operator_id,
            metadata_json=metadata_json,
            updated_at=now,
        )

    async def try_cancel(self, workspace_id, entry_id, metadata_json, now):
        return self._update(
            entry_id,
            workspace_id,
            lambda entry: entry.status in ACTIVE_QUEUE_STATUSES,
            status=QueueStatus.CANCELLED,
            operator_id=None,
            lock_expires_at=None,
            metadata_json=metadata_json,
            updated_at=now,
        )

    async def reclaim_expired(self, now, workspace_id=None, entry_id=None):
        reclaimed = []
        for entry in list(self.store.entries.values()):
            if workspace_id is not None and entry.workspace_id != workspace_id:
                continue
            if entry_id is not None and entry.id != entry_id:
                continue
            updated = self._update(
                entry.id,
                entry.workspace_id,
                lambda item: item.status == QueueStatus.LOCKED and item.lock_expires_at <= now,
                status=QueueStatus.WAITING,
                operator_id=None,
                lock_expires_at=None,
                updated_at=now,
            )
            if updated is not None:
                reclaimed.append(updated)
        return reclaimed

    async def list_waiting(self, workspace_id: UUID, limit: int = 100):
        waiting = [
            entry
            for entry in self.store.entries.values()
            if entry.workspace_id == workspace_id and entry.status == QueueStatus.WAITING
        ]
        waiting.sort(key=lambda entry: (entry.priority.rank, entry.created_at, str(entry.id)))
        return waiting[:limit]

    async def list_active(self, workspace_id: UUID, limit: int = 200):
        active = [
            entry
            for entry in self.store.entries.values()
            if entry.workspace_id == workspace_id and entry.status in ACTIVE_QUEUE_STATUSES
        ]
        active.sort(
            key=lambda entry: (entry.status.value, entry.priority.rank, entry.created_at)
        )
        return active[:limit]

    async def count_active_locks(self, workspace_id: UUID, operator_id: UUID, now: datetime):
        await asyncio.sleep(0)
        return sum(
            1
            for entry in self.store.entries.values()
            if entry.workspace_id == workspace_id
            and entry.operator_id == operator_id
            and entry.status == QueueStatus.LOCKED
            and entry.lock_expires_at > now
        )


@dataclass(slots=True)
class Harness:
    store: FakeStore
    session: FakeSession
    clock: FakeClock
    settings: Settings
    customers: FakeCustomerRepository
    states: FakeConversationStateRepository
    interactions: FakeInteractionRepository
    entries: FakeQueueRepository
    publisher: InMemoryEventPublisher
    audit: InMemoryAuditSink
    engine: StateMachineEngine
    queue: HumanQueueService
    handoff: HandoffService
    policy: EscalationPolicy

    async def add_customer(self, address: str = "+5511999990000") -> FakeCustomer:
        customer = await self.customers.create(WORKSPACE_ID, address)
        self.store.commit()
        return customer


def build_harness(flows: FlowRegistry | None = None, **overrides: Any) -> Harness:
    store = FakeStore()
    session = FakeSession(store)
    clock = FakeClock()
    values: dict[str, Any] = {
        "state_write_max_attempts": 3,
        "state_write_backoff_min_seconds": 0,
        "state_write_backoff_max_seconds": 0,
        "queue_lock_lease_seconds": 900,
        "operator_max_active_locks": 2,
        "escalation_max_cycles": 4,
        "escalation_inactivity_seconds": 300,
    }
    values.update(overrides)
    settings = Settings(_env_file=None, **values)
    customers = FakeCustomerRepository(store)
    states = FakeConversationStateRepository(store)
    interactions = FakeInteractionRepository(store)
    entries = FakeQueueRepository(store)
    publisher = InMemoryEventPublisher()
    audit = InMemoryAuditSink()
    notifications = Notifications(publisher=publisher, audit=audit)
    policy = EscalationPolicy(
        predicate=completeness_at_least(settings.escalation_completeness_threshold),
        max_cycles=settings.escalation_max_cycles,
        inactivity_seconds=settings.escalation_inactivity_seconds,
    )

    engine = StateMachineEngine(
        session=session,
        flows=flows or FlowRegistry(default_retail_table()),
        customers=customers,
        states=states,
        interactions=interactions,
        notifications=notifications,
        locks=KeyedLock(),
        max_attempts=settings.state_write_max_attempts,
        backoff_min=0,
        backoff_max=0,
        clock=clock,
    )
    queue = HumanQueueService(
        session=session,
        entries=entries,
        customers=customers,
        notifications=notifications,
        settings=settings,
        clock=clock,
    )
    handoff = HandoffService(
        session=session,
        engine=engine,
        queue=queue,
        policy=policy,
        customers=customers,
        interactions=interactions,
    )
    return Harness(
        store=store,
        session=session,
        clock=clock,
        settings=settings,
        customers=customers,
        states=states,
        interactions=interactions,
        entries=entries,
        publisher=publisher,
        audit=audit,
        engine=engine,
        queue=queue,
        handoff=handoff,
        policy=policy,
    )


@pytest.fixture
def harness() -> Harness:
    return build_harness()


@pytest.fixture
def workspace_id() -> UUID:
    return WORKSPACE_ID


@pytest.fixture
def harness_factory():
    return build_harness
