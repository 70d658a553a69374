import json
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from app.domain.enums import FlowState, Intent
from app.domain.exceptions import ConfigurationError
from app.domain.flow import FlowRegistry, TransitionTable, fresh_context
from app.domain.flows import default_retail_table
from app.domain.messages import InboundEvent

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)

MINIMAL_TABLE = {
    "states": {
        "INICIO_SESSAO": {"fallback": {"target": "MENU_PRINCIPAL"}},
        "MENU_PRINCIPAL": {"fallback": {"target": "MENU_PRINCIPAL"}},
        "ESCALATED": {},
    }
}


def _event(intent: str, slots: dict | None = None, at: datetime = T0) -> InboundEvent:
    payload = {"slots": slots} if slots is not None else {}
    return InboundEvent(intent=intent, payload=payload, timestamp=at)


@pytest.fixture
def table() -> TransitionTable:
    return default_retail_table()


def test_default_table_is_valid(table: TransitionTable) -> None:
    assert table.initial_state == FlowState.INICIO_SESSAO
    assert table.escalated_state == FlowState.ESCALATED
    assert table.states[FlowState.ATENDIMENTO_ENCERRADO].terminal


def test_known_intent_moves_to_target(table: TransitionTable) -> None:
    plan = table.plan(FlowState.MENU_PRINCIPAL, _event("CATALOGO_MENU"), fresh_context(T0))

    assert plan.target == FlowState.CATALOGO_MENU
    assert plan.via == "intent"
    assert plan.context["flow"] == "VENDA"
    assert plan.context["last_transition"]["from"] == "MENU_PRINCIPAL"
    assert [action.template_key for action in plan.outbound] == ["estado.catalogo_menu"]


def test_unknown_intent_uses_fallback_and_never_drops(table: TransitionTable) -> None:
    plan = table.plan(FlowState.MENU_PRINCIPAL, _event("QUALQUER_COISA"), fresh_context(T0))

    assert plan.target == FlowState.MENU_PRINCIPAL
    assert plan.via == "fallback"
    assert not plan.changed
    assert [action.template_key for action in plan.outbound] == [
        "sistema.nao_entendi",
        "estado.menu_principal",
    ]
    assert plan.context["cycles"] == 1
    assert "last_transition" not in plan.context


def test_plan_is_deterministic(table: TransitionTable) -> None:
    context = {**fresh_context(T0), "flow": "VENDA", "slots": {"modelo": "iPhone 15"}}
    event = _event("COLETA_DADOS_MINIMOS_VENDA", {"cidade": "Recife"})

    first = table.plan(FlowState.SIMULACAO_PARCELAMENTO, event, context)
    second = table.plan(FlowState.SIMULACAO_PARCELAMENTO, event, context)

    assert first == second
    assert context["slots"] == {"modelo": "iPhone 15"}


def test_guard_failure_routes_to_alternate_target(table: TransitionTable) -> None:
    context = {**fresh_context(T0), "flow": "VENDA", "slots": {"modelo": "iPhone 15"}}

    plan = table.plan(
        FlowState.COLETA_DADOS_MINIMOS_VENDA, _event("GERAR_DOSSIE_VENDA"), context
    )

    assert plan.guard_passed is False
    assert plan.target == FlowState.COLETA_DADOS_MINIMOS_VENDA


def test_guard_sees_slots_carried_by_the_event(table: TransitionTable) -> None:
    context = {
        **fresh_context(T0),
        "flow": "VENDA",
        "slots": {"modelo": "iPhone 15", "capacidade": "128GB"},
    }
    event = _event("GERAR_DOSSIE_VENDA", {"cidade": "Recife", "pagamento": "pix"})

    plan = table.plan(FlowState.COLETA_DADOS_MINIMOS_VENDA, event, context)

    assert plan.guard_passed is True
    assert plan.target == FlowState.ESCALATED
    assert plan.context["slots"]["pagamento"] == "pix"
    assert [action.template_key for action in plan.outbound] == [
        "venda.dossie_gerado",
        "escalamento.humano.confirmacao",
    ]


def test_human_request_is_universal(table: TransitionTable) -> None:
    assert Intent.HUMAN_REQUESTED not in table.states[FlowState.CATALOGO_MENU].transitions

    plan = table.plan(
        FlowState.CATALOGO_MENU, _event(Intent.HUMAN_REQUESTED), fresh_context(T0)
    )

    assert plan.target == FlowState.ESCALATED
    assert plan.via == "universal"


def test_escalated_state_is_a_sink(table: TransitionTable) -> None:
    context = {**fresh_context(T0), "cycles": 3}

    plan = table.plan(FlowState.ESCALATED, _event("MENU_PRINCIPAL"), context)

    assert plan.sink
    assert plan.target == FlowState.ESCALATED
    assert plan.outbound == []
    assert plan.context == context


def test_terminal_state_restarts_session(table: TransitionTable) -> None:
    later = T0 + timedelta(days=1)
    context = {**fresh_context(T0), "cycles": 9, "flow": "SERVICOS", "slots": {"modelo": "x"}}

    plan = table.plan(FlowState.ATENDIMENTO_ENCERRADO, _event("oi", at=later), context)

    assert plan.session_restarted
    assert plan.previous_state == FlowState.ATENDIMENTO_ENCERRADO
    assert plan.target == FlowState.MENU_PRINCIPAL
    assert plan.context["cycles"] == 1
    assert plan.context["slots"] == {}
    assert plan.context["session_started_at"] == later.isoformat()


def test_idle_seconds_come_from_event_timestamps(table: TransitionTable) -> None:
    first = table.plan(FlowState.MENU_PRINCIPAL, _event("MENU_PRINCIPAL"), fresh_context(T0))
    second = table.plan(
        FlowState.MENU_PRINCIPAL,
        _event("MENU_PRINCIPAL", at=T0 + timedelta(seconds=42)),
        first.context,
    )

    assert first.context["idle_seconds"] is None
    assert second.context["idle_seconds"] == 42
    assert second.context["cycles"] == 2


def test_back_to_menu_clears_collected_slots(table: TransitionTable) -> None:
    context = {**fresh_context(T0), "flow": "VENDA", "slots": {"modelo": "iPhone 15"}}

    plan = table.plan(FlowState.CATALOGO_MENU, _event(Intent.BACK_TO_MENU), context)

    assert plan.target == FlowState.MENU_PRINCIPAL
    assert plan.context["flow"] is None
    assert plan.context["slots"] == {}


def test_automated_states_exclude_start_terminal_and_escalated(table: TransitionTable) -> None:
    assert table.is_automated(FlowState.MENU_PRINCIPAL)
    assert not table.is_automated(FlowState.INICIO_SESSAO)
    assert not table.is_automated(FlowState.ATENDIMENTO_ENCERRADO)
    assert not table.is_automated(FlowState.ESCALATED)


def test_state_without_fallback_is_rejected() -> None:
    broken = {"states": {**MINIMAL_TABLE["states"], "MENU_PRINCIPAL": {}}}

    with pytest.raises(ConfigurationError):
        TransitionTable.from_mapping(broken)


def test_default_fallback_covers_states_without_one() -> None:
    table = TransitionTable.from_mapping(
        {
            "default_fallback": {"target": "MENU_PRINCIPAL", "reply": "sistema.nao_entendi"},
            "states": {**MINIMAL_TABLE["states"], "MENU_PRINCIPAL": {}},
        }
    )

    plan = table.plan(FlowState.MENU_PRINCIPAL, _event("x"), fresh_context(T0))

    assert plan.via == "default_fallback"


@pytest.mark.parametrize(
    "transition",
    [
        {"target": "CATALOGO_MENU"},
        {"target": "NAO_EXISTE"},
        {"target": "MENU_PRINCIPAL", "guard": "sorte"},
        {"target": "MENU_PRINCIPAL", "guard": "has_slot:modelo"},
        {"target": "MENU_PRINCIPAL", "action": "apagar_tudo"},
    ],
)
def test_malformed_transitions_are_rejected(transition: dict) -> None:
    mapping = {
        "states": {
            **MINIMAL_TABLE["states"],
            "MENU_PRINCIPAL": {
                "transitions": {"X": transition},
                "fallback": {"target": "MENU_PRINCIPAL"},
            },
        }
    }

    with pytest.raises(ConfigurationError):
        TransitionTable.from_mapping(mapping)


def test_unknown_stored_state_is_a_configuration_error() -> None:
    table = TransitionTable.from_mapping(MINIMAL_TABLE)

    with pytest.raises(ConfigurationError):
        table.resolve_state("ESTADO_FANTASMA")
    with pytest.raises(ConfigurationError):
        table.resolve_state(FlowState.CATALOGO_MENU.value)


def test_registry_loads_workspace_tables_and_keeps_errors(tmp_path) -> None:
    good, bad, other = uuid4(), uuid4(), uuid4()
    (tmp_path / f"{good}.json").write_text(json.dumps(MINIMAL_TABLE), encoding="utf-8")
    (tmp_path / f"{bad}.json").write_text(
        json.dumps({"states": {"INICIO_SESSAO": {}}}), encoding="utf-8"
    )
    (tmp_path / "notes.json").write_text("{}", encoding="utf-8")

    registry = FlowRegistry.load(default_retail_table(), str(tmp_path))

    assert FlowState.CATALOGO_MENU not in registry.for_workspace(good).states
    assert FlowState.CATALOGO_MENU in registry.for_workspace(other).states
    with pytest.raises(ConfigurationError) as exc_info:
        registry.for_workspace(bad)
    assert exc_info.value.workspace_id == bad
