from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.locks import KeyedLock
from app.core.retry import store_retrying
from app.domain.enums import ActorType, Direction, DomainEvent, EscalationReason, FlowState
from app.domain.exceptions import ConfigurationError, ConflictError, TransientStoreError
from app.domain.flow import FlowRegistry, TransitionTable, fresh_context
from app.domain.messages import InboundEvent, OutboundAction
from app.infra.db.models import ConversationState, Interaction
from app.infra.db.repositories import (
    ConversationStateRepository,
    CustomerRepository,
    InteractionRepository,
)
from app.infra.db.unit_of_work import atomic
from app.infra.notifier.channels import customer_channel
from app.services.errors import (
    ConversationStateNotFoundError,
    CustomerNotFoundError,
    StateVersionConflictError,
)
from app.services.notifications import Notifications

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class TransitionOutcome:
    workspace_id: UUID
    customer_id: UUID
    previous_state: str
    new_state: FlowState
    intent: str | None
    context: dict[str, Any]
    outbound_actions: list[OutboundAction] = field(default_factory=list)
    version: int = 1
    via: str | None = None
    sink: bool = False
    replayed: bool = False
    session_restarted: bool = False
    entered_escalation: bool = False
    previous_automated: bool = False
    automated: bool = False

    @property
    def changed(self) -> bool:
        return self.new_state.value != self.previous_state


class StateMachineEngine:
    """Applies inbound events to a customer's conversation, one customer at a time.

    Every call holds the customer's in-process lock and runs its
    read-modify-write in a single unit of work whose state write is
    version-checked, so concurrent workers in other processes are
    caught as conflicts and retried up to ``max_attempts``.
    """

    def __init__(
        self,
        session: AsyncSession,
        flows: FlowRegistry,
        customers: CustomerRepository | None = None,
        states: ConversationStateRepository | None = None,
        interactions: InteractionRepository | None = None,
        notifications: Notifications | None = None,
        locks: KeyedLock | None = None,
        max_attempts: int = 5,
        backoff_min: float = 0.05,
        backoff_max: float = 1.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.session = session
        self.flows = flows
        self.customers = customers or CustomerRepository(session)
        self.states = states or ConversationStateRepository(session)
        self.interactions = interactions or InteractionRepository(session)
        self.notifications = notifications or Notifications()
        self.locks = locks or KeyedLock()
        self.max_attempts = max_attempts
        self.backoff_min = backoff_min
        self.backoff_max = backoff_max
        self.clock = clock

    async def apply(
        self, workspace_id: UUID, customer_id: UUID, event: InboundEvent
    ) -> TransitionOutcome:
        table = self.flows.for_workspace(workspace_id)
        async with self.locks.hold((workspace_id, customer_id)):
            async for attempt in self._retrying():
                with attempt:
                    outcome = await self._apply_once(table, workspace_id, customer_id, event)

        logger.info(
            "Inbound event applied",
            workspace_id=str(workspace_id),
            customer_id=str(customer_id),
            intent=event.intent,
            state=outcome.new_state.value,
            previous_state=outcome.previous_state,
            sink=outcome.sink,
            replayed=outcome.replayed,
        )
        if not outcome.sink and not outcome.replayed:
            await self._emit_state_changed(outcome, ActorType.SYSTEM.value)
        return outcome

    async def force_escalate(
        self,
        workspace_id: UUID,
        customer_id: UUID,
        reason: EscalationReason,
        event: InboundEvent | None = None,
    ) -> TransitionOutcome:
        """Compensating transition into the escalated state.

        Works without a usable transition table so that configuration
        defects still hand the customer to a human. When ``event`` is given
        and was not recorded yet, it is logged as the inbound interaction.
        """
        table = self._table_or_none(workspace_id)
        escalated = table.escalated_state if table else FlowState.ESCALATED
        prompt = (
            table.states[escalated].prompt_key(escalated)
            if table
            else f"estado.{escalated.value.lower()}"
        )

        async with self.locks.hold((workspace_id, customer_id)):
            async for attempt in self._retrying():
                with attempt:
                    outcome = await self._force_once(
                        workspace_id, customer_id, escalated, prompt, reason, event
                    )

        if outcome.changed:
            logger.warning(
                "Conversation force-escalated",
                workspace_id=str(workspace_id),
                customer_id=str(customer_id),
                previous_state=outcome.previous_state,
                reason=reason.value,
            )
            await self._emit_state_changed(outcome, ActorType.SYSTEM.value)
        return outcome

    async def reset(
        self, workspace_id: UUID, customer_id: UUID, actor: str = ActorType.SYSTEM.value
    ) -> TransitionOutcome | None:
        """Start a fresh session; used once a human finished with the customer."""
        table = self._table_or_none(workspace_id)
        initial = table.initial_state if table else FlowState.INICIO_SESSAO

        async with self.locks.hold((workspace_id, customer_id)):
            async for attempt in self._retrying():
                with attempt:
                    outcome = await self._reset_once(workspace_id, customer_id, initial)

        if outcome is not None:
            await self._emit_state_changed(outcome, actor)
        return outcome

    async def get_state(self, workspace_id: UUID, customer_id: UUID) -> ConversationState:
        record = await self.states.get(workspace_id, customer_id)
        if record is None:
            if await self.customers.get_by_id(workspace_id, customer_id) is None:
                raise CustomerNotFoundError(customer_id)
            raise ConversationStateNotFoundError(customer_id)
        return record

    async def list_interactions(
        self, workspace_id: UUID, customer_id: UUID, limit: int = 100
    ) -> list[Interaction]:
        if await self.customers.get_by_id(workspace_id, customer_id) is None:
            raise CustomerNotFoundError(customer_id)
        return await self.interactions.list_by_customer(workspace_id, customer_id, limit=limit)

    def _retrying(self):
        return store_retrying(
            (ConflictError, TransientStoreError),
            max_attempts=self.max_attempts,
            backoff_min=self.backoff_min,
            backoff_max=self.backoff_max,
        )

    def _table_or_none(self, workspace_id: UUID) -> TransitionTable | None:
        try:
            return self.flows.for_workspace(workspace_id)
        except ConfigurationError:
            return None

    async def _apply_once(
        self,
        table: TransitionTable,
        workspace_id: UUID,
        customer_id: UUID,
        event: InboundEvent,
    ) -> TransitionOutcome:
        async with atomic(self.session):
            if event.event_id:
                recorded = await self.interactions.find_inbound_by_event(
                    workspace_id, customer_id, event.event_id
                )
                if recorded is not None:
                    record = await self.get_state(workspace_id, customer_id)
                    return self._replayed(workspace_id, customer_id, record, recorded)

            now = self.clock()
            record = await self._load_or_start(table, workspace_id, customer_id, event)
            current = table.resolve_state(record.state, workspace_id)
            plan = table.plan(current, event, record.context)

            if not plan.sink:
                record = await self._write(record, plan.target, plan.context, now)

            replies = [action.template_key for action in plan.outbound]
            await self.interactions.append(
                workspace_id=workspace_id,
                customer_id=customer_id,
                direction=Direction.INBOUND,
                channel=event.channel,
                content={
                    **event.content(),
                    "resolution": {
                        "state": plan.target.value,
                        "via": plan.via,
                        "replies": replies,
                    },
                },
                state=current.value,
                external_event_id=event.event_id,
                created_at=now,
            )
            await self._append_outbound(
                workspace_id, customer_id, event.channel, plan.outbound, now
            )

            return TransitionOutcome(
                workspace_id=workspace_id,
                customer_id=customer_id,
                previous_state=plan.previous_state.value,
                new_state=plan.target,
                intent=event.intent,
                context=dict(record.context),
                outbound_actions=list(plan.outbound),
                version=record.version,
                via=plan.via,
                sink=plan.sink,
                session_restarted=plan.session_restarted,
                entered_escalation=(
                    plan.target == table.escalated_state and plan.changed
                ),
                previous_automated=table.is_automated(plan.previous_state),
                automated=table.is_automated(plan.target),
            )

    async def _force_once(
        self,
        workspace_id: UUID,
        customer_id: UUID,
        escalated: FlowState,
        prompt: str,
        reason: EscalationReason,
        event: InboundEvent | None,
    ) -> TransitionOutcome:
        async with atomic(self.session):
            now = self.clock()
            record = await self.states.get(workspace_id, customer_id)
            if record is None:
                if await self.customers.get_by_id(workspace_id, customer_id) is None:
                    raise CustomerNotFoundError(customer_id)
                record = await self.states.create(
                    workspace_id,
                    customer_id,
                    FlowState.INICIO_SESSAO.value,
                    fresh_context(now),
                    now,
                )
            previous_state = record.state

            outbound: list[OutboundAction] = []
            if previous_state != escalated.value:
                context = {
                    **record.context,
                    "state_entered_at": now.isoformat(),
                    "escalation": {"reason": reason.value, "at": now.isoformat()},
                    "last_transition": {
                        "from": previous_state,
                        "to": escalated.value,
                        "intent": event.intent if event else None,
                        "at": now.isoformat(),
                        "via": "forced",
                    },
                }
                record = await self._write(record, escalated, context, now)
                outbound.append(OutboundAction("send_template", prompt, escalated.value))

            if event is not None and not await self._already_recorded(
                workspace_id, customer_id, event
            ):
                await self.interactions.append(
                    workspace_id=workspace_id,
                    customer_id=customer_id,
                    direction=Direction.INBOUND,
                    channel=event.channel,
                    content={
                        **event.content(),
                        "resolution": {
                            "state": escalated.value,
                            "via": "forced",
                            "replies": [action.template_key for action in outbound],
                        },
                    },
                    state=previous_state,
                    external_event_id=event.event_id,
                    created_at=now,
                )
            channel = event.channel if event else "system"
            await self._append_outbound(workspace_id, customer_id, channel, outbound, now)

            return TransitionOutcome(
                workspace_id=workspace_id,
                customer_id=customer_id,
                previous_state=previous_state,
                new_state=escalated,
                intent=event.intent if event else None,
                context=dict(record.context),
                outbound_actions=outbound,
                version=record.version,
                via="forced",
                sink=not outbound,
                entered_escalation=bool(outbound),
            )

    async def _reset_once(
        self, workspace_id: UUID, customer_id: UUID, initial: FlowState
    ) -> TransitionOutcome | None:
        async with atomic(self.session):
            record = await self.states.get(workspace_id, customer_id)
            if record is None:
                return None
            now = self.clock()
            previous_state = record.state
            context = fresh_context(now)
            context["last_transition"] = {
                "from": previous_state,
                "to": initial.value,
                "intent": None,
                "at": now.isoformat(),
                "via": "reset",
            }
            record = await self._write(record, initial, context, now)
            return TransitionOutcome(
                workspace_id=workspace_id,
                customer_id=customer_id,
                previous_state=previous_state,
                new_state=initial,
                intent=None,
                context=dict(record.context),
                version=record.version,
                via="reset",
                session_restarted=True,
            )

    async def _load_or_start(
        self,
        table: TransitionTable,
        workspace_id: UUID,
        customer_id: UUID,
        event: InboundEvent,
    ) -> ConversationState:
        record = await self.states.get(workspace_id, customer_id)
        if record is not None:
            return record
        if await self.customers.get_by_id(workspace_id, customer_id) is None:
            raise CustomerNotFoundError(customer_id)
        # First contact: a concurrent creator trips the unique constraint and the retry reloads.
        return await self.states.create(
            workspace_id,
            customer_id,
            table.initial_state.value,
            fresh_context(event.timestamp),
            self.clock(),
        )

    async def _write(
        self,
        record: ConversationState,
        state: FlowState,
        context: dict[str, Any],
        now: datetime,
    ) -> ConversationState:
        expected_version = record.version
        saved = await self.states.save(record, state.value, context, now)
        if saved is None:
            logger.info(
                "Conversation state version conflict",
                workspace_id=str(record.workspace_id),
                customer_id=str(record.customer_id),
                expected_version=expected_version,
            )
            raise StateVersionConflictError(record.customer_id, expected_version)
        return saved

    async def _already_recorded(
        self, workspace_id: UUID, customer_id: UUID, event: InboundEvent
    ) -> bool:
        if not event.event_id:
            return False
        recorded = await self.interactions.find_inbound_by_event(
            workspace_id, customer_id, event.event_id
        )
        return recorded is not None

    async def _append_outbound(
        self,
        workspace_id: UUID,
        customer_id: UUID,
        channel: str,
        actions: list[OutboundAction],
        now: datetime,
    ) -> None:
        for offset, action in enumerate(actions, start=1):
            # Replies share the commit; a microsecond step keeps them after the inbound row.
            await self.interactions.append(
                workspace_id=workspace_id,
                customer_id=customer_id,
                direction=Direction.OUTBOUND,
                channel=channel,
                content=action.content(),
                state=action.state,
                created_at=now + timedelta(microseconds=offset),
            )

    @staticmethod
    def _replayed(
        workspace_id: UUID,
        customer_id: UUID,
        record: ConversationState,
        recorded: Interaction,
    ) -> TransitionOutcome:
        resolution = recorded.content.get("resolution") or {}
        state = FlowState(resolution.get("state", record.state))
        return TransitionOutcome(
            workspace_id=workspace_id,
            customer_id=customer_id,
            previous_state=recorded.state,
            new_state=state,
            intent=recorded.content.get("intent"),
            context=dict(record.context),
            outbound_actions=[
                OutboundAction("send_template", key, state.value)
                for key in resolution.get("replies", [])
            ],
            version=record.version,
            via=resolution.get("via"),
            replayed=True,
        )

    async def _emit_state_changed(self, outcome: TransitionOutcome, actor: str) -> None:
        await self.notifications.emit(
            channels=[customer_channel(outcome.workspace_id, outcome.customer_id)],
            event=DomainEvent.STATE_CHANGED,
            workspace_id=outcome.workspace_id,
            customer_id=outcome.customer_id,
            actor=actor,
            entity_type="conversation",
            entity_id=outcome.customer_id,
            snapshot={
                "previous_state": outcome.previous_state,
                "state": outcome.new_state.value,
                "intent": outcome.intent,
                "via": outcome.via,
                "version": outcome.version,
            },
        )
