from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from fleetcore.apps.api.deps import get_db, get_queue
from fleetcore.apps.api.main import create_app
from fleetcore.services.queue import RUN_DIRECTIVE_JOB
from fleetcore.tests.utils.factories import create_installation


@pytest.fixture
async def client(session_factory, queue):
    app = create_app()

    async def _db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_queue] = lambda: queue
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http


TENANT = {"X-Tenant-Id": "t1"}


@pytest.mark.asyncio
async def test_health_is_unversioned(client) -> None:
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_emit_signal_then_dedupe(client, queue) -> None:
    body = {"name": "ticket.created", "payload": {"ticket": 42}, "dedupe_key": "ticket-42"}

    created = await client.post("/v1/signals", json=body, headers={**TENANT, "X-Request-Id": "req-1"})
    repeated = await client.post("/v1/signals", json={**body, "payload": {"ticket": 1}}, headers=TENANT)

    assert created.status_code == 201
    assert created.json()["meta"] == {"request_id": "req-1", "api_version": "v1"}
    assert created.headers["X-Request-Id"] == "req-1"
    assert created.json()["data"]["outcome"] == "created"
    assert repeated.status_code == 200
    assert repeated.json()["data"]["outcome"] == "existing"
    assert repeated.json()["data"]["signal"]["id"] == created.json()["data"]["signal"]["id"]
    assert repeated.json()["data"]["signal"]["payload"] == {"ticket": 42}
    assert len(queue.jobs) == 1


@pytest.mark.asyncio
async def test_signals_require_tenant_header(client) -> None:
    response = await client.get("/v1/signals")

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "TENANT_REQUIRED"


@pytest.mark.asyncio
async def test_signals_are_invisible_across_tenants(client) -> None:
    created = await client.post("/v1/signals", json={"name": "ticket.created"}, headers=TENANT)
    signal_id = created.json()["data"]["signal"]["id"]

    own = await client.get(f"/v1/signals/{signal_id}", headers=TENANT)
    foreign = await client.get(f"/v1/signals/{signal_id}", headers={"X-Tenant-Id": "t2"})
    listed = await client.get("/v1/signals", headers={"X-Tenant-Id": "t2"})

    assert own.status_code == 200
    assert foreign.status_code == 404
    assert foreign.json()["error"]["code"] == "NOT_FOUND"
    assert listed.json()["data"] == []


@pytest.mark.asyncio
async def test_emit_rejects_bad_input(client) -> None:
    bad_name = await client.post("/v1/signals", json={"name": "Ticket Created"}, headers=TENANT)
    secret = await client.post(
        "/v1/signals",
        json={"name": "integration.connected", "payload": {"password": "hunter2"}},
        headers=TENANT,
    )
    smuggled = await client.post("/v1/signals", json={"name": "ticket.created", "tenant_id": "t2"}, headers=TENANT)

    assert bad_name.status_code == 422
    assert bad_name.json()["error"]["code"] == "VALIDATION_ERROR"
    assert secret.status_code == 422
    assert smuggled.status_code == 422
    assert smuggled.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_directive_create_enqueues_once(client, queue) -> None:
    body = {"name": "package.install", "payload": {"slug": "support-kit"}, "idempotency_key": "install-1"}

    created = await client.post("/v1/directives", json=body, headers=TENANT)
    repeated = await client.post("/v1/directives", json=body, headers=TENANT)

    assert created.status_code == 201
    data = created.json()["data"]
    assert data["outcome"] == "created"
    assert data["enqueued"] is True
    assert data["directive"]["status"] == "requested"
    assert repeated.status_code == 200
    assert repeated.json()["data"]["enqueued"] is False
    jobs = queue.of(RUN_DIRECTIVE_JOB)
    assert [job.kwargs for job in jobs] == [{"tenant": "t1", "directive_id": data["directive"]["id"]}]


@pytest.mark.asyncio
async def test_directive_list_filters_by_status(client) -> None:
    await client.post("/v1/directives", json={"name": "package.install"}, headers=TENANT)

    requested = await client.get("/v1/directives", params={"status": "requested"}, headers=TENANT)
    succeeded = await client.get("/v1/directives", params={"status": "succeeded"}, headers=TENANT)
    unknown = await client.get("/v1/directives", params={"status": "paused"}, headers=TENANT)

    assert len(requested.json()["data"]) == 1
    assert succeeded.json()["data"] == []
    assert unknown.status_code == 422


@pytest.mark.asyncio
async def test_cancel_then_cancel_again_conflicts(client) -> None:
    created = await client.post("/v1/directives", json={"name": "package.install"}, headers=TENANT)
    directive_id = created.json()["data"]["directive"]["id"]

    first = await client.post(f"/v1/directives/{directive_id}/cancel", headers=TENANT)
    second = await client.post(f"/v1/directives/{directive_id}/cancel", headers=TENANT)
    rerun = await client.post(f"/v1/directives/{directive_id}/rerun", headers=TENANT)

    assert first.status_code == 200
    assert first.json()["data"]["status"] == "canceled"
    assert second.status_code == 409
    assert second.json()["error"]["code"] == "ILLEGAL_TRANSITION"
    assert second.json()["error"]["details"] == {"current": "canceled", "transition": "cancel"}
    assert rerun.status_code == 422


@pytest.mark.asyncio
async def test_rerun_enqueues_with_override(client, queue) -> None:
    created = await client.post("/v1/directives", json={"name": "package.install"}, headers=TENANT)
    directive_id = created.json()["data"]["directive"]["id"]

    response = await client.post(f"/v1/directives/{directive_id}/rerun", headers=TENANT)

    assert response.status_code == 202
    assert queue.of(RUN_DIRECTIVE_JOB)[-1].kwargs == {"tenant": "t1", "directive_id": directive_id, "rerun": True}


@pytest.mark.asyncio
async def test_installations_disable_and_enable(client, session_factory) -> None:
    installation = await create_installation(session_factory, tenant_id="t1")

    listed = await client.get("/v1/installations", headers=TENANT)
    disabled = await client.post(f"/v1/installations/{installation.id}/disable", headers=TENANT)
    enabled = await client.post(f"/v1/installations/{installation.id}/enable", headers=TENANT)
    foreign = await client.post(f"/v1/installations/{installation.id}/disable", headers={"X-Tenant-Id": "t2"})

    assert [row["id"] for row in listed.json()["data"]] == [installation.id]
    assert disabled.json()["data"]["status"] == "disabled"
    assert disabled.json()["data"]["enabled"] is False
    assert enabled.json()["data"]["status"] == "requested"
    assert enabled.json()["data"]["enabled"] is True
    assert foreign.status_code == 404


@pytest.mark.asyncio
async def test_replay_endpoint(client, queue) -> None:
    for ticket in range(3):
        await client.post("/v1/signals", json={"name": "ticket.created", "payload": {"n": ticket}}, headers=TENANT)
    queue.jobs.clear()

    recent = await client.post("/v1/signals/replay", json={"mode": "recent", "limit": 2}, headers=TENANT)
    by_ids = await client.post(
        "/v1/signals/replay",
        json={"mode": "by_ids", "signal_ids": ["missing"]},
        headers=TENANT,
    )
    missing_name = await client.post("/v1/signals/replay", json={"mode": "by_name"}, headers=TENANT)

    assert recent.json()["data"] == {"enqueued": 2, "skipped": 0}
    assert by_ids.json()["data"] == {"enqueued": 0, "skipped": 1}
    assert missing_name.status_code == 422
    assert all(job.kwargs["replay"] is True for job in queue.jobs)
