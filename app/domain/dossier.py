"""Operator-facing summary of what the automated flow collected so far."""

from collections.abc import Mapping
from typing import Any

from app.domain.enums import EscalationPriority

REQUIRED_SLOTS: dict[str, tuple[str, ...]] = {
    "VENDA": ("modelo", "capacidade", "cidade", "pagamento"),
    "TECNICO": ("modelo", "defeito"),
    "ACESSORIOS": ("modelo", "tipo_acessorio"),
    "SERVICOS": ("modelo", "servico"),
    "POS_VENDA": ("pedido", "motivo"),
}


def collected_slots(context: Mapping[str, Any]) -> dict[str, Any]:
    slots = context.get("slots") or {}
    return {key: value for key, value in slots.items() if value not in (None, "")}


def pending_slots(context: Mapping[str, Any]) -> list[str]:
    flow = context.get("flow")
    if flow not in REQUIRED_SLOTS:
        return []
    present = collected_slots(context)
    return [slot for slot in REQUIRED_SLOTS[flow] if slot not in present]


def completeness(context: Mapping[str, Any]) -> float:
    """Fraction of the active flow's required slots that were collected.

    A context without a known flow has nothing collected and scores 0.0.
    """
    flow = context.get("flow")
    required = REQUIRED_SLOTS.get(flow or "")
    if not required:
        return 0.0
    present = collected_slots(context)
    return sum(1 for slot in required if slot in present) / len(required)


def suggested_priority(context: Mapping[str, Any]) -> EscalationPriority:
    slots = collected_slots(context)
    if slots.get("urgencia"):
        return EscalationPriority.HIGH
    if slots.get("defeito") or (slots.get("cidade") and slots.get("pagamento")):
        return EscalationPriority.MEDIUM
    return EscalationPriority.LOW


def build_dossier(state: str, context: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "state": state,
        "flow": context.get("flow"),
        "collected": collected_slots(context),
        "pending": pending_slots(context),
        "completeness": round(completeness(context), 4),
        "suggested_priority": suggested_priority(context).value,
        "last_intent": context.get("last_intent"),
        "cycles": context.get("cycles", 0),
    }
