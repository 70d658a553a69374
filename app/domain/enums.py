from enum import Enum


class FlowState(str, Enum):
    """Closed set of conversation states a workspace table may use."""

    INICIO_SESSAO = "INICIO_SESSAO"
    MENU_PRINCIPAL = "MENU_PRINCIPAL"
    CATALOGO_MENU = "CATALOGO_MENU"
    CATALOGO_LISTA_MODELOS = "CATALOGO_LISTA_MODELOS"
    CATALOGO_DETALHE_MODELO = "CATALOGO_DETALHE_MODELO"
    SIMULACAO_PARCELAMENTO = "SIMULACAO_PARCELAMENTO"
    COLETA_DADOS_MINIMOS_VENDA = "COLETA_DADOS_MINIMOS_VENDA"
    ACESSORIOS_MENU = "ACESSORIOS_MENU"
    TECNICO_MENU = "TECNICO_MENU"
    COLETA_DADOS_TECNICO = "COLETA_DADOS_TECNICO"
    SERVICOS_MENU = "SERVICOS_MENU"
    POS_VENDA_MENU = "POS_VENDA_MENU"
    ATENDIMENTO_ENCERRADO = "ATENDIMENTO_ENCERRADO"
    ESCALATED = "ESCALATED"


class Intent:
    """Intents the engine itself interprets; every other intent is opaque."""

    HUMAN_REQUESTED = "HUMANO_SOLICITADO"
    BACK_TO_MENU = "VOLTAR_MENU_PRINCIPAL"


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class QueueStatus(str, Enum):
    WAITING = "waiting"
    LOCKED = "locked"
    DONE = "done"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (QueueStatus.DONE, QueueStatus.CANCELLED)


ACTIVE_QUEUE_STATUSES = (QueueStatus.WAITING, QueueStatus.LOCKED)


class EscalationPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    EscalationPriority.HIGH: 0,
    EscalationPriority.MEDIUM: 1,
    EscalationPriority.LOW: 2,
}


class EscalationReason(str, Enum):
    EXPLICIT_REQUEST = "explicit_request"
    INCOMPLETE_AFTER_CYCLES = "incomplete_after_cycles"
    INACTIVITY_TIMEOUT = "inactivity_timeout"
    FLOW_HANDOFF = "flow_handoff"
    CONFIGURATION_ERROR = "configuration_error"
    PROCESSING_FAILURE = "processing_failure"
    AWAITING_OPERATOR = "awaiting_operator"


class DomainEvent(str, Enum):
    STATE_CHANGED = "state_changed"
    QUEUE_CREATED = "queue_created"
    QUEUE_CLAIMED = "queue_claimed"
    QUEUE_RENEWED = "queue_renewed"
    QUEUE_RELEASED = "queue_released"
    QUEUE_RESOLVED = "queue_resolved"
    QUEUE_CANCELLED = "queue_cancelled"


class ActorType(str, Enum):
    SYSTEM = "system"
    OPERATOR = "operator"
    ADMIN = "admin"
