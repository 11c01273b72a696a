from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from remindrelay.apps.api.main import create_app
from remindrelay.services.jobs import JobEngine
from remindrelay.services.resilience import CircuitBreakerConfig
from remindrelay.tests.utils.gateway import ScriptedGateway, ok, server_error


class Upstream:
    # Gateway answer switch: healthy acknowledges, otherwise every request fails with 503.
    def __init__(self) -> None:
        self.healthy = False

    def __call__(self, _request):
        return ok() if self.healthy else server_error(503)


@pytest.fixture
def upstream() -> Upstream:
    return Upstream()


@pytest.fixture
async def client(sessionmaker, upstream):
    engine = JobEngine(
        sessionmaker=sessionmaker,
        gateway_factory=ScriptedGateway(default=upstream).factory(),
        breaker_config=CircuitBreakerConfig(failure_threshold=1, success_threshold=1, queue_redelivery_interval_ms=0),
    )
    app = create_app()
    app.state.job_engine = engine
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    await engine.shutdown()


async def _send(client: AsyncClient, body: str = "Reminder"):
    return await client.post(
        "/v1/messages/send",
        json={"owner_id": "owner-1", "address": "5511987650001", "body": body, "via_circuit": True},
    )


@pytest.mark.asyncio
async def test_circuit_starts_closed(client) -> None:
    response = await client.get("/v1/circuits/owner-1")
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "closed"
    assert data["failure_count"] == 0
    assert data["queue_length"] == 0
    assert data["opened_at"] is None


@pytest.mark.asyncio
async def test_failure_opens_circuit_and_deflects_into_queue(client) -> None:
    failed = await _send(client)
    assert failed.status_code == 502
    assert failed.json()["error"]["code"] == "DELIVERY_FAILED"

    deflected = await _send(client, body="Second reminder")
    assert deflected.status_code == 503
    error = deflected.json()["error"]
    assert error["code"] == "CIRCUIT_OPEN"
    assert error["details"]["owner_id"] == "owner-1"
    queued_id = error["details"]["queued_message_id"]

    status = (await client.get("/v1/circuits/owner-1")).json()["data"]
    assert status["status"] == "open"
    assert status["queue_length"] == 1
    assert status["cooldown_remaining_ms"] > 0

    queue = (await client.get("/v1/circuits/owner-1/queue")).json()["data"]["items"]
    assert [row["id"] for row in queue] == [queued_id]
    assert queue[0]["status"] == "queued"
    assert queue[0]["message_type"] == "direct"


@pytest.mark.asyncio
async def test_processing_is_refused_while_open_then_drains_after_trial(client, upstream) -> None:
    await _send(client)
    await _send(client, body="Second reminder")

    refused = await client.post("/v1/circuits/owner-1/queue/process")
    assert refused.json()["data"]["stopped_reason"] == "circuit_open"
    assert refused.json()["data"]["remaining"] == 1

    trial = await client.post("/v1/circuits/owner-1/trial")
    assert trial.json()["data"]["status"] == "half_open"

    upstream.healthy = True
    drained = await client.post("/v1/circuits/owner-1/queue/process", json={"limit": 5})
    data = drained.json()["data"]
    assert data["attempted"] == 1
    assert data["delivered"] == 1
    assert data["remaining"] == 0

    status = (await client.get("/v1/circuits/owner-1")).json()["data"]
    assert status["status"] == "closed"


@pytest.mark.asyncio
async def test_reset_forces_circuit_closed(client) -> None:
    await _send(client)
    reset = await client.post("/v1/circuits/owner-1/reset")
    assert reset.status_code == 200
    data = reset.json()["data"]
    assert data["status"] == "closed"
    assert data["failure_count"] == 0


@pytest.mark.asyncio
async def test_clearing_queue_requires_confirmation(client) -> None:
    await _send(client)
    await _send(client, body="Second reminder")

    refused = await client.delete("/v1/circuits/owner-1/queue")
    assert refused.status_code == 400
    assert refused.json()["error"]["code"] == "CONFIRMATION_REQUIRED"

    cleared = await client.delete("/v1/circuits/owner-1/queue", params={"confirm": "true"})
    assert cleared.status_code == 200
    assert cleared.json()["data"] == {"owner_id": "owner-1", "deleted": 1}
    queue = (await client.get("/v1/circuits/owner-1/queue")).json()["data"]["items"]
    assert queue == []
