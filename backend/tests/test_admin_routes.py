"""API tests for the admin console endpoints."""

from datetime import timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update

from genqueue.app import create_app
from genqueue.core.timezone import utc_now
from genqueue.models.queue_item import QueueItem
from genqueue.services.admission import AdmissionController, SubmitRequest
from genqueue.services.lifecycle import JobLifecycleManager


@pytest_asyncio.fixture
async def client(settings, uow_factory):
    app = create_app(settings)
    app.state.uow_factory = uow_factory
    app.state.provider = None

    headers = {"X-Admin-Token": settings.admin_api_token}
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test", headers=headers
    ) as ac:
        yield ac


@pytest.fixture
def submit(uow_factory, settings):
    admission = AdmissionController(uow_factory, settings)

    async def _submit(user_id: int = 1, priority: int = 0):
        return await admission.submit(
            SubmitRequest(
                user_id=user_id,
                model_id="kling-o3",
                parameters={"prompt": "city lights", "duration": 3},
                priority=priority,
            )
        )

    return _submit


@pytest.mark.asyncio
async def test_missing_or_wrong_token_is_401(settings, uow_factory):
    app = create_app(settings)
    app.state.uow_factory = uow_factory

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        assert (await ac.get("/api/admin/queue/stats")).status_code == 401
        wrong = await ac.get("/api/admin/queue/stats", headers={"X-Admin-Token": "nope"})
        assert wrong.status_code == 401


@pytest.mark.asyncio
async def test_grant_tickets(client):
    response = await client.post("/api/admin/tickets/grant", json={"user_id": 5, "amount": 40})
    assert response.status_code == 200
    assert response.json()["balance"] == 40

    response = await client.post("/api/admin/tickets/grant", json={"user_id": 5, "amount": 2})
    assert response.json()["total_bought"] == 42


@pytest.mark.asyncio
async def test_list_items_with_filters_and_positions(client, submit, grant, set_limit):
    await grant(1, 100)
    await grant(2, 100)
    await set_limit("kling-o3", 1)
    running = await submit(1)
    queued = await submit(2)

    data = (await client.get("/api/admin/queue/items")).json()
    assert [item["id"] for item in data["items"]] == [running.queue_id, queued.queue_id]
    assert data["items"][1]["position"] == 1
    assert (data["limit"], data["offset"]) == (100, 0)

    queued_only = (await client.get("/api/admin/queue/items", params={"status": "queued"})).json()
    assert [item["id"] for item in queued_only["items"]] == [queued.queue_id]

    by_user = (await client.get("/api/admin/queue/items", params={"user_id": 1})).json()
    assert [item["id"] for item in by_user["items"]] == [running.queue_id]


@pytest.mark.asyncio
async def test_cancel_and_retry(client, submit, grant):
    await grant(1, 15)
    job = await submit()

    cancelled = await client.delete(f"/api/admin/queue/items/{job.queue_id}")
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"

    retried = await client.post(f"/api/admin/queue/items/{job.queue_id}/retry")
    assert retried.status_code == 200
    assert retried.json()["status"] == "queued"
    assert retried.json()["position"] == 1

    # Already queued again: a second retry is a conflict
    again = await client.post(f"/api/admin/queue/items/{job.queue_id}/retry")
    assert again.status_code == 409


@pytest.mark.asyncio
async def test_retry_without_tickets_is_402(client, submit, grant, uow_factory):
    await grant(1, 15)
    job = await submit()
    await client.delete(f"/api/admin/queue/items/{job.queue_id}")
    async with await uow_factory() as uow:
        await uow.ticket_accounts.reserve(1, 10)

    response = await client.post(f"/api/admin/queue/items/{job.queue_id}/retry")
    assert response.status_code == 402


@pytest.mark.asyncio
async def test_unknown_item_actions_are_404(client):
    assert (await client.delete("/api/admin/queue/items/12345")).status_code == 404
    assert (await client.post("/api/admin/queue/items/12345/retry")).status_code == 404


@pytest.mark.asyncio
async def test_clear_completed(client, submit, grant, uow_factory, settings):
    await grant(1, 100)
    lifecycle = JobLifecycleManager(uow_factory, settings)
    done = await submit()
    failed = await submit()
    await lifecycle.complete(done.queue_id, "https://cdn.example/c.mp4")
    await lifecycle.fail(failed.queue_id, "boom")

    first = await client.post("/api/admin/queue/clear-completed")
    assert first.json() == {"deleted": 1}

    second = await client.post("/api/admin/queue/clear-completed", json={"include_failed": True})
    assert second.json() == {"deleted": 1}


@pytest.mark.asyncio
async def test_reset_stale_and_stats(client, submit, grant, set_limit, uow_factory):
    await grant(1, 100)
    await set_limit("kling-o3", 2)
    stuck = await submit()
    await submit()
    async with await uow_factory() as uow:
        await uow.session.execute(
            update(QueueItem)
            .where(QueueItem.id == stuck.queue_id)
            .values(started_at=utc_now() - timedelta(minutes=90))
        )

    stats = (await client.get("/api/admin/queue/stats")).json()
    assert stats["reaped_count"] == 1
    assert stats["counts"]["failed"] == 1
    assert stats["counts"]["processing"] == 1
    kling = next(m for m in stats["models"] if m["model_id"] == "kling-o3")
    assert (kling["max_concurrent"], kling["current_active"]) == (2, 1)

    assert (await client.post("/api/admin/queue/reset-stale")).json() == {"reaped_count": 0}


@pytest.mark.asyncio
async def test_limit_crud(client):
    created = await client.post(
        "/api/admin/queue/limits",
        json={"model_id": "custom-upscaler", "model_type": "image", "max_concurrent": 4},
    )
    assert created.status_code == 201
    assert created.json()["available_slots"] == 4

    duplicate = await client.post(
        "/api/admin/queue/limits",
        json={"model_id": "custom-upscaler", "model_type": "image", "max_concurrent": 4},
    )
    assert duplicate.status_code == 409

    updated = await client.put(
        "/api/admin/queue/limits", json={"model_id": "custom-upscaler", "max_concurrent": 9}
    )
    assert updated.status_code == 200
    assert updated.json()["max_concurrent"] == 9

    out_of_range = await client.put(
        "/api/admin/queue/limits", json={"model_id": "custom-upscaler", "max_concurrent": 1000}
    )
    assert out_of_range.status_code == 400

    listed = (await client.get("/api/admin/queue/limits")).json()
    model_ids = {limit["model_id"] for limit in listed}
    assert "custom-upscaler" in model_ids
    assert "kling-v3" in model_ids

    deleted = await client.delete("/api/admin/queue/limits/custom-upscaler")
    assert deleted.json()["success"] is True
    deleted_again = await client.delete("/api/admin/queue/limits/custom-upscaler")
    assert deleted_again.json()["success"] is False
