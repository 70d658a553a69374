import asyncio
import contextlib
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.domain.exceptions import ConflictError, NotFoundError, TransientStoreError
from app.services.runtime import ServiceRuntime

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class SweepReport:
    reclaimed: int = 0
    escalated: int = 0


class QueueSweeper:
    """Background task that reclaims stale queue locks and escalates silent customers."""

    def __init__(
        self,
        runtime: ServiceRuntime,
        session_factory: async_sessionmaker[AsyncSession],
        interval_seconds: float,
        batch_size: int = 200,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.runtime = runtime
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.clock = clock
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        if self._task is None and self.interval_seconds > 0:
            self._task = asyncio.create_task(self._loop(), name="queue-sweeper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def run_once(self) -> SweepReport:
        report = SweepReport()
        async with self.session_factory() as session:
            reclaimed = await self.runtime.queue(session).sweep_expired()
            report.reclaimed = len(reclaimed)

            now = self.clock()
            idle_before = now - timedelta(
                seconds=self.runtime.settings.escalation_inactivity_seconds
            )
            handoff = self.runtime.handoff(session)
            states = sorted(state.value for state in self.runtime.flows.automated_states())
            after: tuple[datetime, UUID] | None = None
            while True:
                page = await handoff.engine.states.list_idle(
                    states, idle_before, limit=self.batch_size, after=after
                )
                await session.commit()
                if not page:
                    break
                # Escalation rewrites rows in place, so take the cursor first.
                after = (page[-1].updated_at, page[-1].id)
                for record in page:
                    if await self._escalate_one(handoff, record, now):
                        report.escalated += 1
                if len(page) < self.batch_size:
                    break

        if report.reclaimed or report.escalated:
            logger.info("Sweep finished", reclaimed=report.reclaimed, escalated=report.escalated)
        return report

    async def _escalate_one(self, handoff, record, now: datetime) -> bool:
        try:
            entry = await handoff.escalate_idle(record.workspace_id, record.customer_id, now)
        except (ConflictError, NotFoundError, TransientStoreError) as exc:
            logger.warning(
                "Idle escalation skipped",
                workspace_id=str(record.workspace_id),
                customer_id=str(record.customer_id),
                error=str(exc),
            )
            return False
        except Exception:
            logger.exception(
                "Idle escalation failed",
                workspace_id=str(record.workspace_id),
                customer_id=str(record.customer_id),
            )
            return False
        return entry is not None

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Sweep failed")
            await asyncio.sleep(self.interval_seconds)
