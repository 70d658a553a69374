from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.core.locks import KeyedLock
from app.domain.escalation import EscalationPolicy
from app.domain.flow import FlowRegistry
from app.domain.flows import default_retail_table
from app.infra.notifier.audit import AuditSink
from app.infra.notifier.publisher import EventPublisher
from app.services.engine import StateMachineEngine
from app.services.handoff import HandoffService
from app.services.notifications import Notifications
from app.services.queue import HumanQueueService


@dataclass(slots=True)
class ServiceRuntime:
    """Process-wide collaborators; services themselves are built per session."""

    settings: Settings
    flows: FlowRegistry
    policy: EscalationPolicy
    notifications: Notifications
    locks: KeyedLock = field(default_factory=KeyedLock)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        publisher: EventPublisher | None = None,
        audit: AuditSink | None = None,
    ) -> "ServiceRuntime":
        return cls(
            settings=settings,
            flows=FlowRegistry.load(default_retail_table(), settings.flow_tables_dir),
            policy=EscalationPolicy.from_settings(settings),
            notifications=Notifications(publisher=publisher, audit=audit),
        )

    def engine(self, session: AsyncSession) -> StateMachineEngine:
        return StateMachineEngine(
            session=session,
            flows=self.flows,
            notifications=self.notifications,
            locks=self.locks,
            max_attempts=self.settings.state_write_max_attempts,
            backoff_min=self.settings.state_write_backoff_min_seconds,
            backoff_max=self.settings.state_write_backoff_max_seconds,
        )

    def queue(self, session: AsyncSession) -> HumanQueueService:
        return HumanQueueService(
            session=session,
            notifications=self.notifications,
            settings=self.settings,
            locks=self.locks,
        )

    def handoff(self, session: AsyncSession) -> HandoffService:
        return HandoffService(
            session=session,
            engine=self.engine(session),
            queue=self.queue(session),
            policy=self.policy,
        )
