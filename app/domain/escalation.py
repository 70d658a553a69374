"""Decides whether a conversation must be handed to a human operator.

The policy is pure: it looks at one engine outcome plus the conversation
context and returns a decision. Acting on the decision (queue entry, forced
transition) is the caller's job.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from app.domain.dossier import completeness
from app.domain.enums import EscalationPriority, EscalationReason, Intent

ContextPredicate = Callable[[Mapping[str, Any]], bool]


def completeness_at_least(threshold: float) -> ContextPredicate:
    def predicate(context: Mapping[str, Any]) -> bool:
        return completeness(context) >= threshold

    return predicate


def confidence_at_least(minimum: float) -> ContextPredicate:
    def predicate(context: Mapping[str, Any]) -> bool:
        confidence = context.get("last_confidence")
        return confidence is None or float(confidence) >= minimum

    return predicate


class EngineOutput(Protocol):
    intent: str
    entered_escalation: bool
    previous_automated: bool
    automated: bool


@dataclass(frozen=True, slots=True)
class EscalationDecision:
    escalate: bool
    reason: EscalationReason | None = None
    priority: EscalationPriority | None = None

    @classmethod
    def none(cls) -> "EscalationDecision":
        return cls(escalate=False)

    @classmethod
    def to_queue(
        cls, reason: EscalationReason, priority: EscalationPriority
    ) -> "EscalationDecision":
        return cls(escalate=True, reason=reason, priority=priority)


class EscalationPolicy:
    """Rules in fixed order, first match wins:

    1. explicit human request -> high
    2. predicate on the context still unmet after ``max_cycles`` -> medium
    3. customer idle longer than ``inactivity_seconds`` in an automated state -> low
    4. the transition table itself routed into the escalated state -> medium
    """

    def __init__(
        self,
        predicate: ContextPredicate,
        max_cycles: int,
        inactivity_seconds: float,
    ) -> None:
        self.predicate = predicate
        self.max_cycles = max_cycles
        self.inactivity_seconds = inactivity_seconds

    def evaluate(
        self, output: EngineOutput, context: Mapping[str, Any]
    ) -> EscalationDecision:
        if output.intent == Intent.HUMAN_REQUESTED:
            return EscalationDecision.to_queue(
                EscalationReason.EXPLICIT_REQUEST, EscalationPriority.HIGH
            )

        if (
            output.automated
            and int(context.get("cycles", 0)) >= self.max_cycles
            and not self.predicate(context)
        ):
            return EscalationDecision.to_queue(
                EscalationReason.INCOMPLETE_AFTER_CYCLES, EscalationPriority.MEDIUM
            )

        idle_seconds = context.get("idle_seconds")
        if (
            output.previous_automated
            and idle_seconds is not None
            and float(idle_seconds) > self.inactivity_seconds
        ):
            return EscalationDecision.to_queue(
                EscalationReason.INACTIVITY_TIMEOUT, EscalationPriority.LOW
            )

        if output.entered_escalation:
            return EscalationDecision.to_queue(
                EscalationReason.FLOW_HANDOFF, EscalationPriority.MEDIUM
            )

        return EscalationDecision.none()

    def evaluate_idle(
        self, automated: bool, context: Mapping[str, Any], now: datetime
    ) -> EscalationDecision:
        last_inbound_at = context.get("last_inbound_at")
        if not automated or not last_inbound_at:
            return EscalationDecision.none()
        idle = (now - datetime.fromisoformat(last_inbound_at)).total_seconds()
        if idle > self.inactivity_seconds:
            return EscalationDecision.to_queue(
                EscalationReason.INACTIVITY_TIMEOUT, EscalationPriority.LOW
            )
        return EscalationDecision.none()

    @classmethod
    def from_settings(cls, settings) -> "EscalationPolicy":
        if settings.escalation_predicate == "confidence":
            predicate = confidence_at_least(settings.escalation_min_confidence)
        else:
            predicate = completeness_at_least(settings.escalation_completeness_threshold)
        return cls(
            predicate=predicate,
            max_cycles=settings.escalation_max_cycles,
            inactivity_seconds=settings.escalation_inactivity_seconds,
        )
