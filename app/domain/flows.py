from typing import Any

from app.domain.flow import TransitionTable

_BACK_TO_MENU = {"target": "MENU_PRINCIPAL", "action": "clear_slots"}
_STAY_MENU = {"target": "MENU_PRINCIPAL"}

DEFAULT_RETAIL_FLOW: dict[str, Any] = {
    "name": "retail-default",
    "initial_state": "INICIO_SESSAO",
    "escalated_state": "ESCALATED",
    "states": {
        "INICIO_SESSAO": {
            "transitions": {"MENU_PRINCIPAL": _STAY_MENU},
            "fallback": _STAY_MENU,
        },
        "MENU_PRINCIPAL": {
            "transitions": {
                "MENU_PRINCIPAL": _STAY_MENU,
                "CATALOGO_MENU": {"target": "CATALOGO_MENU", "action": "start_flow:VENDA"},
                "ACESSORIOS_MENU": {
                    "target": "ACESSORIOS_MENU",
                    "action": "start_flow:ACESSORIOS",
                },
                "TECNICO_MENU": {"target": "TECNICO_MENU", "action": "start_flow:TECNICO"},
                "SERVICOS_MENU": {
                    "target": "SERVICOS_MENU",
                    "action": "start_flow:SERVICOS",
                },
                "POS_VENDA_MENU": {
                    "target": "POS_VENDA_MENU",
                    "action": "start_flow:POS_VENDA",
                },
                "ENCERRAR": {"target": "ATENDIMENTO_ENCERRADO"},
                "HUMANO_SOLICITADO": {"target": "ESCALATED"},
            },
            "fallback": {"target": "MENU_PRINCIPAL", "reply": "sistema.nao_entendi"},
        },
        "CATALOGO_MENU": {
            "transitions": {
                "CATALOGO_LISTA_MODELOS": {
                    "target": "CATALOGO_LISTA_MODELOS",
                    "action": "merge_slots",
                },
                "VOLTAR_MENU_PRINCIPAL": _BACK_TO_MENU,
            },
            "fallback": {"target": "CATALOGO_MENU", "reply": "sistema.nao_entendi"},
        },
        "CATALOGO_LISTA_MODELOS": {
            "transitions": {
                "CATALOGO_DETALHE_MODELO": {
                    "target": "CATALOGO_DETALHE_MODELO",
                    "guard": "has_slot:modelo",
                    "on_guard_failure": "CATALOGO_LISTA_MODELOS",
                    "action": "merge_slots",
                },
                "VOLTAR_CATALOGO_MENU": {"target": "CATALOGO_MENU"},
                "VOLTAR_MENU_PRINCIPAL": _BACK_TO_MENU,
            },
            "fallback": {"target": "CATALOGO_LISTA_MODELOS", "reply": "sistema.nao_entendi"},
        },
        "CATALOGO_DETALHE_MODELO": {
            "transitions": {
                "SIMULACAO_PARCELAMENTO": {
                    "target": "SIMULACAO_PARCELAMENTO",
                    "action": "merge_slots",
                },
                "VOLTAR_CATALOGO_LISTA": {"target": "CATALOGO_LISTA_MODELOS"},
                "VOLTAR_MENU_PRINCIPAL": _BACK_TO_MENU,
            },
            "fallback": {"target": "CATALOGO_DETALHE_MODELO", "reply": "sistema.nao_entendi"},
        },
        "SIMULACAO_PARCELAMENTO": {
            "transitions": {
                "COLETA_DADOS_MINIMOS_VENDA": {
                    "target": "COLETA_DADOS_MINIMOS_VENDA",
                    "action": "merge_slots",
                },
                "VOLTAR_CATALOGO_DETALHE": {"target": "CATALOGO_DETALHE_MODELO"},
                "VOLTAR_MENU_PRINCIPAL": _BACK_TO_MENU,
            },
            "fallback": {"target": "SIMULACAO_PARCELAMENTO", "reply": "sistema.nao_entendi"},
        },
        "COLETA_DADOS_MINIMOS_VENDA": {
            "transitions": {
                "INFORMAR_DADOS": {
                    "target": "COLETA_DADOS_MINIMOS_VENDA",
                    "action": "merge_slots",
                },
                "GERAR_DOSSIE_VENDA": {
                    "target": "ESCALATED",
                    "guard": "slots_complete:VENDA",
                    "on_guard_failure": "COLETA_DADOS_MINIMOS_VENDA",
                    "action": "merge_slots",
                    "reply": "venda.dossie_gerado",
                },
                "CANCELAR_FLUXO": _BACK_TO_MENU,
            },
            "fallback": {
                "target": "COLETA_DADOS_MINIMOS_VENDA",
                "action": "merge_slots",
            },
        },
        "ACESSORIOS_MENU": {
            "transitions": {
                "INFORMAR_DADOS": {"target": "ACESSORIOS_MENU", "action": "merge_slots"},
                "CONFIRMAR_PEDIDO": {
                    "target": "ESCALATED",
                    "guard": "slots_complete:ACESSORIOS",
                    "on_guard_failure": "ACESSORIOS_MENU",
                    "action": "merge_slots",
                },
                "VOLTAR_MENU_PRINCIPAL": _BACK_TO_MENU,
            },
            "fallback": {"target": "ACESSORIOS_MENU", "reply": "sistema.nao_entendi"},
        },
        "TECNICO_MENU": {
            "transitions": {
                "DESCREVER_DEFEITO": {
                    "target": "COLETA_DADOS_TECNICO",
                    "action": "merge_slots",
                },
                "VOLTAR_MENU_PRINCIPAL": _BACK_TO_MENU,
            },
            "fallback": {"target": "TECNICO_MENU", "reply": "sistema.nao_entendi"},
        },
        "COLETA_DADOS_TECNICO": {
            "transitions": {
                "INFORMAR_DADOS": {
                    "target": "COLETA_DADOS_TECNICO",
                    "action": "merge_slots",
                },
                "SOLICITAR_ORCAMENTO": {
                    "target": "ESCALATED",
                    "guard": "slots_complete:TECNICO",
                    "on_guard_failure": "COLETA_DADOS_TECNICO",
                    "action": "merge_slots",
                    "reply": "tecnico.orcamento_solicitado",
                },
                "VOLTAR_MENU_PRINCIPAL": _BACK_TO_MENU,
            },
            "fallback": {"target": "COLETA_DADOS_TECNICO", "action": "merge_slots"},
        },
        "SERVICOS_MENU": {
            "transitions": {
                "INFORMAR_DADOS": {"target": "SERVICOS_MENU", "action": "merge_slots"},
                "AGENDAR_SERVICO": {
                    "target": "ATENDIMENTO_ENCERRADO",
                    "guard": "slots_complete:SERVICOS",
                    "on_guard_failure": "SERVICOS_MENU",
                    "action": "merge_slots",
                    "reply": "servicos.agendado",
                },
                "VOLTAR_MENU_PRINCIPAL": _BACK_TO_MENU,
            },
            "fallback": {"target": "SERVICOS_MENU", "reply": "sistema.nao_entendi"},
        },
        "POS_VENDA_MENU": {
            "transitions": {
                "INFORMAR_DADOS": {"target": "POS_VENDA_MENU", "action": "merge_slots"},
                "REGISTRAR_GARANTIA": {
                    "target": "ATENDIMENTO_ENCERRADO",
                    "guard": "slots_complete:POS_VENDA",
                    "on_guard_failure": "POS_VENDA_MENU",
                    "action": "merge_slots",
                    "reply": "pos_venda.garantia_registrada",
                },
                "VOLTAR_MENU_PRINCIPAL": _BACK_TO_MENU,
            },
            "fallback": {"target": "POS_VENDA_MENU", "reply": "sistema.nao_entendi"},
        },
        "ATENDIMENTO_ENCERRADO": {"terminal": True},
        "ESCALATED": {"on_enter": "escalamento.humano.confirmacao"},
    },
}


def default_retail_table() -> TransitionTable:
    return TransitionTable.from_mapping(DEFAULT_RETAIL_FLOW)
