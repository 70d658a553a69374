import asyncio
from uuid import uuid4

import pytest

from app.core.locks import KeyedLock
from app.domain.enums import DomainEvent, EscalationPriority, QueueStatus
from app.infra.notifier.audit import InMemoryAuditSink
from app.infra.notifier.channels import customer_channel, workspace_queue_channel
from app.infra.notifier.memory import InMemoryEventPublisher
from app.services.notifications import Notifications


class BrokenPublisher:
    async def publish(self, channels, event, payload) -> None:
        raise ConnectionError("broker down")


@pytest.mark.asyncio
async def test_subscribers_receive_events_for_their_channel() -> None:
    publisher = InMemoryEventPublisher()
    workspace_id = uuid4()
    queue_channel = workspace_queue_channel(workspace_id)
    queue = await publisher.subscribe(queue_channel)

    await publisher.publish(
        [queue_channel, customer_channel(workspace_id, uuid4())],
        DomainEvent.QUEUE_CREATED,
        {"ok": True},
    )

    message = queue.get_nowait()
    assert message["event"] == "queue_created"
    assert message["channel"] == queue_channel
    assert queue.empty()

    await publisher.unsubscribe(queue_channel, queue)
    assert publisher.subscriber_count(queue_channel) == 0


@pytest.mark.asyncio
async def test_slow_subscriber_drops_oldest_event() -> None:
    publisher = InMemoryEventPublisher(queue_size=1)
    queue = await publisher.subscribe("c")

    await publisher.publish(["c"], DomainEvent.QUEUE_CREATED, {"n": 1})
    await publisher.publish(["c"], DomainEvent.QUEUE_CLAIMED, {"n": 2})

    assert queue.get_nowait()["payload"] == {"n": 2}


@pytest.mark.asyncio
async def test_delivery_failure_does_not_block_audit() -> None:
    audit = InMemoryAuditSink()
    notifications = Notifications(publisher=BrokenPublisher(), audit=audit)

    await notifications.emit(
        channels=["c"],
        event=DomainEvent.STATE_CHANGED,
        workspace_id=uuid4(),
        customer_id=uuid4(),
        actor="system",
        entity_type="conversation",
        entity_id=uuid4(),
        snapshot={"state": "MENU_PRINCIPAL"},
    )

    assert [record.action for record in audit.records] == ["state_changed"]


@pytest.mark.asyncio
async def test_queue_change_survives_broken_publisher(harness, workspace_id) -> None:
    harness.queue.notifications.publisher = BrokenPublisher()
    customer = await harness.add_customer()

    result = await harness.queue.enqueue(workspace_id, customer.id, EscalationPriority.HIGH)

    assert result.created
    assert harness.store.entries[result.entry.id].status == QueueStatus.WAITING
    assert [record.action for record in harness.audit.records] == ["queue_created"]


@pytest.mark.asyncio
async def test_keyed_lock_serializes_one_key_only() -> None:
    locks = KeyedLock()
    order: list[str] = []

    async def worker(key: str, name: str) -> None:
        async with locks.hold(key):
            order.append(f"{name}:in")
            await asyncio.sleep(0.01)
            order.append(f"{name}:out")

    await asyncio.gather(worker("a", "first"), worker("a", "second"), worker("b", "other"))

    assert order.index("first:out") < order.index("second:in")
    assert order.index("other:in") < order.index("first:out")
    assert locks.active_keys() == 0
