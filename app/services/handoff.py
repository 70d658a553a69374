from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.dossier import build_dossier, suggested_priority
from app.domain.enums import Direction, EscalationPriority, EscalationReason, FlowState
from app.domain.escalation import EscalationDecision, EscalationPolicy
from app.domain.exceptions import ConfigurationError, ConflictError, TransientStoreError
from app.domain.messages import InboundEvent
from app.infra.db.models import Customer, Interaction, QueueEntry
from app.infra.db.repositories import CustomerRepository, InteractionRepository
from app.infra.db.unit_of_work import atomic
from app.services.engine import StateMachineEngine, TransitionOutcome
from app.services.queue import HumanQueueService, operator_actor

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class InboundResult:
    customer: Customer
    outcome: TransitionOutcome
    decision: EscalationDecision
    queue_entry: QueueEntry | None = None
    degraded: bool = False


class HandoffService:
    """Runs the automated flow and hands customers to the human queue when needed."""

    def __init__(
        self,
        session: AsyncSession,
        engine: StateMachineEngine,
        queue: HumanQueueService,
        policy: EscalationPolicy,
        customers: CustomerRepository | None = None,
        interactions: InteractionRepository | None = None,
    ) -> None:
        self.session = session
        self.engine = engine
        self.queue = queue
        self.policy = policy
        self.customers = customers or CustomerRepository(session)
        self.interactions = interactions or InteractionRepository(session)

    async def handle_inbound(
        self,
        workspace_id: UUID,
        address: str,
        event: InboundEvent,
        display_name: str | None = None,
    ) -> InboundResult:
        customer = await self.get_or_create_customer(workspace_id, address, display_name)

        try:
            outcome = await self.engine.apply(workspace_id, customer.id, event)
        except ConfigurationError as exc:
            logger.error(
                "Transition table unusable, routing customer to a human",
                workspace_id=str(workspace_id),
                customer_id=str(customer.id),
                error=str(exc),
            )
            return await self._degrade(
                customer, event, EscalationReason.CONFIGURATION_ERROR, str(exc)
            )
        except (ConflictError, TransientStoreError) as exc:
            logger.error(
                "Automated processing failed, routing customer to a human",
                workspace_id=str(workspace_id),
                customer_id=str(customer.id),
                error=str(exc),
            )
            return await self._degrade(
                customer, event, EscalationReason.PROCESSING_FAILURE, str(exc)
            )
        except Exception as exc:
            logger.exception(
                "Automated processing crashed, routing customer to a human",
                workspace_id=str(workspace_id),
                customer_id=str(customer.id),
            )
            return await self._degrade(
                customer, event, EscalationReason.PROCESSING_FAILURE, repr(exc)
            )

        if outcome.replayed:
            entry = await self.queue.get_active_for_customer(workspace_id, customer.id)
            return InboundResult(customer, outcome, EscalationDecision.none(), entry)

        if outcome.sink:
            return await self._ensure_waiting(customer, outcome)

        decision = self.policy.evaluate(outcome, outcome.context)
        if not decision.escalate:
            return InboundResult(customer, outcome, decision)

        entry = await self._escalate(workspace_id, customer.id, outcome, decision)
        return InboundResult(customer, outcome, decision, entry)

    async def escalate_idle(
        self, workspace_id: UUID, customer_id: UUID, now: datetime
    ) -> QueueEntry | None:
        """Apply the inactivity rule to a conversation that went silent."""
        try:
            table = self.engine.flows.for_workspace(workspace_id)
        except ConfigurationError:
            return None
        record = await self.engine.get_state(workspace_id, customer_id)
        try:
            automated = table.is_automated(FlowState(record.state))
        except ValueError:
            return None
        decision = self.policy.evaluate_idle(automated, record.context, now)
        if not decision.escalate:
            return None

        outcome = await self.engine.force_escalate(workspace_id, customer_id, decision.reason)
        return await self._enqueue(workspace_id, customer_id, outcome, decision)

    async def resolve(
        self,
        workspace_id: UUID,
        entry_id: UUID,
        operator_id: UUID,
        outcome: str | None = None,
    ) -> QueueEntry:
        entry = await self.queue.resolve(workspace_id, entry_id, operator_id, outcome)
        await self.engine.reset(workspace_id, entry.customer_id, actor=operator_actor(operator_id))
        return entry

    async def cancel(
        self,
        workspace_id: UUID,
        entry_id: UUID,
        actor: str,
        reason: str | None = None,
    ) -> QueueEntry:
        entry = await self.queue.cancel(workspace_id, entry_id, actor=actor, reason=reason)
        await self.engine.reset(workspace_id, entry.customer_id, actor=actor)
        return entry

    async def send_operator_message(
        self,
        workspace_id: UUID,
        entry_id: UUID,
        operator_id: UUID,
        text: str,
        channel: str = "whatsapp",
    ) -> Interaction:
        entry = await self.queue.assert_holder(workspace_id, entry_id, operator_id)
        record = await self.engine.get_state(workspace_id, entry.customer_id)
        async with atomic(self.session):
            interaction = await self.interactions.append(
                workspace_id=workspace_id,
                customer_id=entry.customer_id,
                direction=Direction.OUTBOUND,
                channel=channel,
                content={"kind": "operator_message", "text": text.strip()},
                state=record.state,
                operator_id=operator_id,
                created_at=self.engine.clock(),
            )
        return interaction

    async def get_or_create_customer(
        self, workspace_id: UUID, address: str, display_name: str | None = None
    ) -> Customer:
        cleaned_address = address.strip()
        customer = await self.customers.get_by_address(workspace_id, cleaned_address)
        if customer is not None:
            return customer
        try:
            async with atomic(self.session):
                customer = await self.customers.create(
                    workspace_id=workspace_id,
                    address=cleaned_address,
                    display_name=display_name,
                )
        except ConflictError:
            customer = await self.customers.get_by_address(workspace_id, cleaned_address)
            if customer is None:
                raise
            return customer
        logger.info(
            "Customer created on first contact",
            workspace_id=str(workspace_id),
            customer_id=str(customer.id),
        )
        return customer

    async def _degrade(
        self,
        customer: Customer,
        event: InboundEvent,
        reason: EscalationReason,
        detail: str,
    ) -> InboundResult:
        outcome = await self.engine.force_escalate(
            customer.workspace_id, customer.id, reason, event=event
        )
        decision = EscalationDecision.to_queue(reason, EscalationPriority.HIGH)
        entry = await self._enqueue(
            customer.workspace_id, customer.id, outcome, decision, {"error": detail}
        )
        return InboundResult(customer, outcome, decision, entry, degraded=True)

    async def _ensure_waiting(
        self, customer: Customer, outcome: TransitionOutcome
    ) -> InboundResult:
        entry = await self.queue.get_active_for_customer(customer.workspace_id, customer.id)
        if entry is not None:
            return InboundResult(customer, outcome, EscalationDecision.none(), entry)

        decision = EscalationDecision.to_queue(
            EscalationReason.AWAITING_OPERATOR, suggested_priority(outcome.context)
        )
        entry = await self._enqueue(customer.workspace_id, customer.id, outcome, decision)
        return InboundResult(customer, outcome, decision, entry)

    async def _escalate(
        self,
        workspace_id: UUID,
        customer_id: UUID,
        outcome: TransitionOutcome,
        decision: EscalationDecision,
    ) -> QueueEntry:
        escalated = self.engine.flows.for_workspace(workspace_id).escalated_state
        if outcome.new_state != escalated:
            assert decision.reason is not None
            outcome = await self.engine.force_escalate(workspace_id, customer_id, decision.reason)
        return await self._enqueue(workspace_id, customer_id, outcome, decision)

    async def _enqueue(
        self,
        workspace_id: UUID,
        customer_id: UUID,
        outcome: TransitionOutcome,
        decision: EscalationDecision,
        extra: dict[str, Any] | None = None,
    ) -> QueueEntry:
        assert decision.reason is not None and decision.priority is not None
        metadata = {
            "dossier": build_dossier(outcome.previous_state, outcome.context),
            "escalation": {
                "reason": decision.reason.value,
                "priority": decision.priority.value,
                "from_state": outcome.previous_state,
            },
            **(extra or {}),
        }
        result = await self.queue.enqueue(
            workspace_id,
            customer_id,
            decision.priority,
            reason=decision.reason.value,
            metadata=metadata,
        )
        return result.entry
