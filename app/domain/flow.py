"""Declarative transition tables and their pure evaluation.

A table maps each state to the intents it understands. Guards and actions are
referenced by name (``"slots_complete:VENDA"``) and resolved against the
registries below when the table is loaded, so a broken table is rejected at
startup instead of on the first customer message.
"""

import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import UUID

import structlog
from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from app.domain.dossier import REQUIRED_SLOTS
from app.domain.enums import FlowState, Intent
from app.domain.exceptions import ConfigurationError
from app.domain.messages import InboundEvent, OutboundAction

logger = structlog.get_logger(__name__)

Guard = Callable[[Mapping[str, Any], InboundEvent], bool]
Action = Callable[[Mapping[str, Any], InboundEvent], dict[str, Any]]


def _event_slots(event: InboundEvent) -> dict[str, Any]:
    slots = event.payload.get("slots")
    return dict(slots) if isinstance(slots, Mapping) else {}


def _merged_slots(context: Mapping[str, Any], event: InboundEvent) -> dict[str, Any]:
    return {**(context.get("slots") or {}), **_event_slots(event)}


def _slots_complete(flow: str | None) -> Guard:
    if flow not in REQUIRED_SLOTS:
        raise ValueError(f"slots_complete needs a known flow, got '{flow}'")
    required = REQUIRED_SLOTS[flow]

    def guard(context: Mapping[str, Any], event: InboundEvent) -> bool:
        slots = _merged_slots(context, event)
        return all(slots.get(slot) not in (None, "") for slot in required)

    return guard


def _has_slot(slot: str | None) -> Guard:
    if not slot:
        raise ValueError("has_slot needs a slot name")

    def guard(context: Mapping[str, Any], event: InboundEvent) -> bool:
        return _merged_slots(context, event).get(slot) not in (None, "")

    return guard


def _merge_slots(_: str | None) -> Action:
    def action(context: Mapping[str, Any], event: InboundEvent) -> dict[str, Any]:
        return {**context, "slots": _merged_slots(context, event)}

    return action


def _start_flow(flow: str | None) -> Action:
    if flow not in REQUIRED_SLOTS:
        raise ValueError(f"start_flow needs a known flow, got '{flow}'")

    def action(context: Mapping[str, Any], event: InboundEvent) -> dict[str, Any]:
        slots = _event_slots(event)
        if context.get("flow") == flow:
            slots = _merged_slots(context, event)
        return {**context, "flow": flow, "slots": slots}

    return action


def _clear_slots(_: str | None) -> Action:
    def action(context: Mapping[str, Any], event: InboundEvent) -> dict[str, Any]:
        return {**context, "flow": None, "slots": {}}

    return action


GUARD_FACTORIES: dict[str, Callable[[str | None], Guard]] = {
    "slots_complete": _slots_complete,
    "has_slot": _has_slot,
}

ACTION_FACTORIES: dict[str, Callable[[str | None], Action]] = {
    "merge_slots": _merge_slots,
    "start_flow": _start_flow,
    "clear_slots": _clear_slots,
}


def _resolve(name: str, factories: Mapping[str, Callable[[str | None], Any]], kind: str):
    base, _, argument = name.partition(":")
    factory = factories.get(base)
    if factory is None:
        raise ValueError(f"Unknown {kind} '{name}'")
    return factory(argument or None)


def resolve_guard(name: str) -> Guard:
    return _resolve(name, GUARD_FACTORIES, "guard")


def resolve_action(name: str) -> Action:
    return _resolve(name, ACTION_FACTORIES, "action")


class TransitionSpec(BaseModel):
    target: FlowState
    guard: str | None = None
    on_guard_failure: FlowState | None = None
    action: str | None = None
    reply: str | None = None

    model_config = ConfigDict(frozen=True, extra="forbid")


class StateSpec(BaseModel):
    transitions: dict[str, TransitionSpec] = {}
    fallback: TransitionSpec | None = None
    terminal: bool = False
    on_enter: str | None = None

    model_config = ConfigDict(frozen=True, extra="forbid")

    def prompt_key(self, state: FlowState) -> str:
        return self.on_enter or f"estado.{state.value.lower()}"


@dataclass(frozen=True, slots=True)
class TransitionPlan:
    """Result of evaluating one inbound event; nothing has been persisted."""

    previous_state: FlowState
    target: FlowState
    intent: str
    context: dict[str, Any]
    outbound: list[OutboundAction] = field(default_factory=list)
    via: str | None = None
    guard_passed: bool | None = None
    sink: bool = False
    session_restarted: bool = False

    @property
    def changed(self) -> bool:
        return self.target != self.previous_state


def _iso(value: datetime) -> str:
    return value.isoformat()


def fresh_context(started_at: datetime) -> dict[str, Any]:
    return {
        "session_started_at": _iso(started_at),
        "state_entered_at": _iso(started_at),
        "last_inbound_at": None,
        "cycles": 0,
        "flow": None,
        "slots": {},
    }


class TransitionTable(BaseModel):
    name: str = "default"
    initial_state: FlowState = FlowState.INICIO_SESSAO
    escalated_state: FlowState = FlowState.ESCALATED
    default_fallback: TransitionSpec | None = None
    states: dict[FlowState, StateSpec]

    model_config = ConfigDict(frozen=True, extra="forbid")

    @model_validator(mode="after")
    def _check_consistency(self) -> "TransitionTable":
        for required in (self.initial_state, self.escalated_state):
            if required not in self.states:
                raise ValueError(f"State '{required.value}' is not declared")

        candidates = [self.default_fallback] if self.default_fallback else []
        for state, spec in self.states.items():
            if (
                not spec.terminal
                and state != self.escalated_state
                and spec.fallback is None
                and self.default_fallback is None
            ):
                raise ValueError(f"State '{state.value}' has no fallback transition")
            candidates.extend(spec.transitions.values())
            if spec.fallback is not None:
                candidates.append(spec.fallback)

        for transition in candidates:
            self._check_transition(transition)
        return self

    def _check_transition(self, transition: TransitionSpec) -> None:
        if transition.target not in self.states:
            raise ValueError(f"Target '{transition.target.value}' is not declared")
        if transition.guard is not None:
            resolve_guard(transition.guard)
            if transition.on_guard_failure is None:
                raise ValueError(
                    f"Guard '{transition.guard}' has no on_guard_failure target"
                )
            if transition.on_guard_failure not in self.states:
                raise ValueError(
                    f"Target '{transition.on_guard_failure.value}' is not declared"
                )
        if transition.action is not None:
            resolve_action(transition.action)

    @classmethod
    def from_mapping(
        cls, mapping: Mapping[str, Any], workspace_id: UUID | None = None
    ) -> "TransitionTable":
        try:
            return cls.model_validate(mapping)
        except ValidationError as exc:
            raise ConfigurationError(
                f"Invalid transition table: {exc}", workspace_id=workspace_id
            ) from exc

    def resolve_state(self, name: str, workspace_id: UUID | None = None) -> FlowState:
        try:
            state = FlowState(name)
        except ValueError as exc:
            raise ConfigurationError(
                f"Unknown conversation state '{name}'", workspace_id=workspace_id
            ) from exc
        if state not in self.states:
            raise ConfigurationError(
                f"Table '{self.name}' has no entry for state '{name}'",
                workspace_id=workspace_id,
            )
        return state

    def is_automated(self, state: FlowState) -> bool:
        spec = self.states.get(state)
        return (
            spec is not None
            and not spec.terminal
            and state not in (self.escalated_state, self.initial_state)
        )

    def _select(self, state: FlowState, intent: str) -> tuple[TransitionSpec, str]:
        spec = self.states[state]
        if intent in spec.transitions:
            return spec.transitions[intent], "intent"
        if intent == Intent.HUMAN_REQUESTED:
            return TransitionSpec(target=self.escalated_state), "universal"
        if spec.fallback is not None:
            return spec.fallback, "fallback"
        if self.default_fallback is not None:
            return self.default_fallback, "default_fallback"
        raise ConfigurationError(
            f"Table '{self.name}' has no fallback for state '{state.value}'"
        )

    def plan(
        self,
        current: FlowState,
        event: InboundEvent,
        context: Mapping[str, Any],
    ) -> TransitionPlan:
        if current not in self.states:
            raise ConfigurationError(
                f"Table '{self.name}' has no entry for state '{current.value}'"
            )

        if current == self.escalated_state:
            return TransitionPlan(
                previous_state=current,
                target=current,
                intent=event.intent,
                context=dict(context),
                sink=True,
            )

        previous_state = current
        session_restarted = False
        if self.states[current].terminal:
            context = fresh_context(event.timestamp)
            current = self.initial_state
            session_restarted = True

        transition, via = self._select(current, event.intent)

        target = transition.target
        guard_passed: bool | None = None
        if transition.guard is not None:
            guard_passed = resolve_guard(transition.guard)(context, event)
            if not guard_passed:
                assert transition.on_guard_failure is not None
                target = transition.on_guard_failure

        new_context = dict(context)
        if transition.action is not None:
            new_context = resolve_action(transition.action)(context, event)

        new_context.update(self._bookkeeping(current, target, event, context, via))

        outbound: list[OutboundAction] = []
        if transition.reply:
            outbound.append(
                OutboundAction("send_template", transition.reply, target.value)
            )
        outbound.append(
            OutboundAction(
                "send_template", self.states[target].prompt_key(target), target.value
            )
        )

        return TransitionPlan(
            previous_state=previous_state,
            target=target,
            intent=event.intent,
            context=new_context,
            outbound=outbound,
            via=via,
            guard_passed=guard_passed,
            session_restarted=session_restarted,
        )

    @staticmethod
    def _bookkeeping(
        current: FlowState,
        target: FlowState,
        event: InboundEvent,
        context: Mapping[str, Any],
        via: str,
    ) -> dict[str, Any]:
        idle_seconds: float | None = None
        last_inbound_at = context.get("last_inbound_at")
        if last_inbound_at:
            idle_seconds = (
                event.timestamp - datetime.fromisoformat(last_inbound_at)
            ).total_seconds()

        updates: dict[str, Any] = {
            "cycles": int(context.get("cycles", 0)) + 1,
            "last_inbound_at": _iso(event.timestamp),
            "idle_seconds": idle_seconds,
            "last_intent": event.intent,
            "last_confidence": event.confidence,
        }
        if target != current:
            updates["state_entered_at"] = _iso(event.timestamp)
            updates["last_transition"] = {
                "from": current.value,
                "to": target.value,
                "intent": event.intent,
                "at": _iso(event.timestamp),
                "via": via,
            }
        return updates


class FlowRegistry:
    """Transition tables per workspace, built once at startup."""

    def __init__(
        self,
        default: TransitionTable,
        workspaces: Mapping[UUID, TransitionTable | ConfigurationError] | None = None,
    ) -> None:
        self._default = default
        self._workspaces = dict(workspaces or {})

    def for_workspace(self, workspace_id: UUID) -> TransitionTable:
        table = self._workspaces.get(workspace_id, self._default)
        if isinstance(table, ConfigurationError):
            raise ConfigurationError(str(table), workspace_id=workspace_id)
        return table

    def automated_states(self) -> set[FlowState]:
        """States in which some usable table lets the bot keep talking."""
        tables = [self._default]
        tables.extend(
            table for table in self._workspaces.values() if isinstance(table, TransitionTable)
        )
        return {state for table in tables for state in table.states if table.is_automated(state)}

    @classmethod
    def load(
        cls, default: TransitionTable, tables_dir: str | None = None
    ) -> "FlowRegistry":
        workspaces: dict[UUID, TransitionTable | ConfigurationError] = {}
        if tables_dir:
            for path in sorted(Path(tables_dir).glob("*.json")):
                try:
                    workspace_id = UUID(path.stem)
                except ValueError:
                    logger.warning("Skipping transition table", path=str(path))
                    continue
                try:
                    workspaces[workspace_id] = TransitionTable.from_mapping(
                        json.loads(path.read_text(encoding="utf-8")), workspace_id
                    )
                except (ConfigurationError, json.JSONDecodeError) as exc:
                    logger.error(
                        "Transition table rejected",
                        workspace_id=str(workspace_id),
                        path=str(path),
                        error=str(exc),
                    )
                    workspaces[workspace_id] = ConfigurationError(
                        f"Transition table '{path.name}' rejected: {exc}",
                        workspace_id=workspace_id,
                    )
        return cls(default, workspaces)
