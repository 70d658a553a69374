from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


@dataclass(frozen=True, slots=True)
class InboundEvent:
    """One customer message with its intent already resolved upstream."""

    intent: str
    payload: dict[str, Any] = field(default_factory=dict)
    channel: str = "whatsapp"
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    event_id: str | None = None
    confidence: float | None = None

    def content(self) -> dict[str, Any]:
        return {
            "intent": self.intent,
            "payload": self.payload,
            "confidence": self.confidence,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class OutboundAction:
    kind: str
    template_key: str
    state: str

    def content(self) -> dict[str, Any]:
        return {"kind": self.kind, "template_key": self.template_key}
