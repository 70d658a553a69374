from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import OperationalError

from app.api.dependencies import get_engine, get_handoff_service, get_queue_service
from app.core.db import get_db_session
from app.main import app

ADDRESS = "+5511955554444"


@pytest_asyncio.fixture
async def client(harness):
    app.dependency_overrides[get_engine] = lambda: harness.engine
    app.dependency_overrides[get_queue_service] = lambda: harness.queue
    app.dependency_overrides[get_handoff_service] = lambda: harness.handoff
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def _inbound(client, workspace_id, intent, **extra):
    body = {"address": ADDRESS, "intent": intent, "timestamp": "2026-03-02T12:00:00", **extra}
    return await client.post(f"/api/v1/workspaces/{workspace_id}/inbound", json=body)


class _UnreachableStore:
    async def execute(self, statement):
        raise OperationalError("SELECT 1", {}, ConnectionRefusedError("refused"))


class _ReachableStore:
    async def execute(self, statement):
        return None


@pytest.mark.asyncio
async def test_health(client) -> None:
    response = await client.get("/api/v1/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "retail-handoff"}
    assert response.headers["X-Content-Type-Options"] == "nosniff"


@pytest.mark.asyncio
async def test_store_health_reports_unreachable_database(client) -> None:
    app.dependency_overrides[get_db_session] = lambda: _ReachableStore()
    healthy = await client.get("/api/v1/health/db")
    app.dependency_overrides[get_db_session] = lambda: _UnreachableStore()
    unhealthy = await client.get("/api/v1/health/db")

    assert healthy.status_code == 200
    assert healthy.json() == {"status": "ok", "db": "ok"}
    assert unhealthy.status_code == 503
    assert unhealthy.json()["detail"] == "store unavailable"


@pytest.mark.asyncio
async def test_inbound_event_moves_conversation(client, workspace_id) -> None:
    response = await _inbound(client, workspace_id, "oi", event_id="wamid.1")

    assert response.status_code == 200
    body = response.json()
    assert body["previous_state"] == "INICIO_SESSAO"
    assert body["state"] == "MENU_PRINCIPAL"
    assert body["outbound_actions"][0]["template_key"] == "estado.menu_principal"
    assert body["escalation"] == {"escalate": False, "reason": None, "priority": None}
    assert body["queue_entry"] is None

    replay = await _inbound(client, workspace_id, "oi", event_id="wamid.1")
    assert replay.json()["replayed"] is True


@pytest.mark.asyncio
async def test_human_request_returns_queue_entry(client, workspace_id) -> None:
    await _inbound(client, workspace_id, "oi")

    response = await _inbound(client, workspace_id, "HUMANO_SOLICITADO")

    body = response.json()
    assert body["state"] == "ESCALATED"
    assert body["escalation"]["reason"] == "explicit_request"
    assert body["queue_entry"]["priority"] == "high"
    assert body["queue_entry"]["status"] == "waiting"

    listing = await client.get(f"/api/v1/workspaces/{workspace_id}/queue")
    assert [item["id"] for item in listing.json()["items"]] == [body["queue_entry"]["id"]]


@pytest.mark.asyncio
async def test_second_claim_is_a_conflict(client, workspace_id) -> None:
    await _inbound(client, workspace_id, "oi")
    escalated = await _inbound(client, workspace_id, "HUMANO_SOLICITADO")
    entry_id = escalated.json()["queue_entry"]["id"]
    claim_url = f"/api/v1/workspaces/{workspace_id}/queue/{entry_id}/claim"

    first = await client.post(claim_url, json={"operator_id": str(uuid4())})
    second = await client.post(claim_url, json={"operator_id": str(uuid4())})

    assert first.status_code == 200
    assert first.json()["status"] == "locked"
    assert second.status_code == 409


@pytest.mark.asyncio
async def test_operator_message_requires_lock(client, workspace_id) -> None:
    await _inbound(client, workspace_id, "oi")
    escalated = await _inbound(client, workspace_id, "HUMANO_SOLICITADO")
    entry_id = escalated.json()["queue_entry"]["id"]
    operator_id = str(uuid4())
    base = f"/api/v1/workspaces/{workspace_id}/queue/{entry_id}"

    rejected = await client.post(
        f"{base}/messages", json={"operator_id": operator_id, "content": "Oi!"}
    )
    await client.post(f"{base}/claim", json={"operator_id": operator_id})
    accepted = await client.post(
        f"{base}/messages", json={"operator_id": operator_id, "content": "Oi!"}
    )

    assert rejected.status_code == 409
    assert accepted.status_code == 200
    assert accepted.json()["direction"] == "outbound"


@pytest.mark.asyncio
async def test_unknown_customer_state_is_404(client, workspace_id) -> None:
    response = await client.get(
        f"/api/v1/workspaces/{workspace_id}/customers/{uuid4()}/state"
    )

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_unknown_queue_entry_is_404(client, workspace_id) -> None:
    response = await client.get(f"/api/v1/workspaces/{workspace_id}/queue/{uuid4()}")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_invalid_payload_is_rejected(client, workspace_id) -> None:
    response = await client.post(
        f"/api/v1/workspaces/{workspace_id}/inbound", json={"address": ADDRESS}
    )

    assert response.status_code == 422
