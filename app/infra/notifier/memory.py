import asyncio
from collections import defaultdict, deque
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from app.domain.enums import DomainEvent


class InMemoryEventPublisher:
    """In-process channel fan-out for subscribers living in the same process."""

    def __init__(self, history_size: int = 500, queue_size: int = 1000) -> None:
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)
        self._lock = asyncio.Lock()
        self._queue_size = queue_size
        self.history: deque[dict[str, Any]] = deque(maxlen=history_size)

    async def subscribe(self, channel: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        async with self._lock:
            self._subscribers[channel].add(queue)
        return queue

    async def unsubscribe(self, channel: str, queue: asyncio.Queue) -> None:
        async with self._lock:
            subscribers = self._subscribers.get(channel)
            if subscribers is None:
                return
            subscribers.discard(queue)
            if not subscribers:
                self._subscribers.pop(channel, None)

    def subscriber_count(self, channel: str) -> int:
        subscribers = self._subscribers.get(channel)
        if subscribers is None:
            return 0
        return len(subscribers)

    async def publish(
        self,
        channels: Sequence[str],
        event: DomainEvent,
        payload: Mapping[str, Any],
    ) -> None:
        unique_channels = [channel for channel in dict.fromkeys(channels) if channel]
        if not unique_channels:
            return

        envelope = {
            "event": event.value,
            "channels": unique_channels,
            "payload": dict(payload),
            "sent_at": datetime.now(UTC).isoformat(),
        }
        self.history.append(envelope)

        async with self._lock:
            recipients_by_channel = {
                channel: set(self._subscribers.get(channel, set()))
                for channel in unique_channels
            }

        for channel, recipients in recipients_by_channel.items():
            for queue in recipients:
                # Slow subscribers drop their oldest event rather than block publishers.
                if queue.full():
                    queue.get_nowait()
                queue.put_nowait({**envelope, "channel": channel})

    def events(self, event: DomainEvent | None = None) -> list[dict[str, Any]]:
        if event is None:
            return list(self.history)
        return [item for item in self.history if item["event"] == event.value]
