import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from bulkqueue.main import app
from bulkqueue.services.scheduler import get_scheduler

from tests.conftest import ADMIN_TOKEN

AUTH = {"Authorization": f"Bearer {ADMIN_TOKEN}"}


@pytest_asyncio.fixture
async def client(scheduler):
    app.dependency_overrides[get_scheduler] = lambda: scheduler
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


def _payload(names, **overrides):
    payload = {
        "category": "product",
        "names": names,
        "delay_between_batches_ms": 0,
        "delay_between_items_ms": 0,
    }
    payload.update(overrides)
    return payload


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


async def test_requires_admin_token(client):
    assert (await client.get("/api/jobs")).status_code == 401
    bad = {"Authorization": "Bearer wrong"}
    assert (await client.get("/api/jobs", headers=bad)).status_code == 401
    assert (await client.post("/api/jobs", json=_payload(["A"]))).status_code == 401


async def test_admin_token_cookie(client):
    client.cookies.set("admin_token", ADMIN_TOKEN)
    response = await client.get("/api/jobs/stats")
    assert response.status_code == 200


async def test_submit_and_poll(client, scheduler):
    response = await client.post("/api/jobs", json=_payload(["Steam Deck", "Switch 2"]), headers=AUTH)
    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Job started"
    assert body["total"] == 2
    assert body["category"] == "product"
    assert response.headers["X-Correlation-ID"]

    await scheduler.wait(body["job_id"], timeout=5)

    status = (await client.get(f"/api/jobs/{body['job_id']}", headers=AUTH)).json()
    assert status["status"] == "completed"
    assert status["progress"] == 100
    assert (status["processed"], status["successful"]) == (2, 2)
    assert [r["slug"] for r in status["reviews"]] == ["steam-deck", "switch-2"]
    assert [item["status"] for item in status["items"]] == ["completed", "completed"]


async def test_submit_rejects_bad_requests(client):
    response = await client.post("/api/jobs", json=_payload(["A", "A"]), headers=AUTH)
    assert response.status_code == 400

    response = await client.post("/api/jobs", json=_payload(["A"], category="movie"), headers=AUTH)
    assert response.status_code == 400

    response = await client.post("/api/jobs", json=_payload(["A"], category="vinyl"), headers=AUTH)
    assert response.status_code == 422

    response = await client.post("/api/jobs", json=_payload(["A"], batch_size=0), headers=AUTH)
    assert response.status_code == 422


async def test_unknown_job(client):
    assert (await client.get("/api/jobs/nope", headers=AUTH)).status_code == 404
    assert (await client.post("/api/jobs/nope/cancel", headers=AUTH)).status_code == 404
    assert (await client.delete("/api/jobs/nope", headers=AUTH)).status_code == 404


async def test_cancel_and_delete(client, scheduler, producer):
    gate = producer.block("A")
    job_id = (await client.post("/api/jobs", json=_payload(["A", "B"]), headers=AUTH)).json()["job_id"]

    assert (await client.delete(f"/api/jobs/{job_id}", headers=AUTH)).status_code == 409

    response = await client.post(f"/api/jobs/{job_id}/cancel", headers=AUTH)
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"

    gate.set()
    await scheduler.wait(job_id, timeout=5)
    assert producer.calls == ["A"]

    assert (await client.post(f"/api/jobs/{job_id}/cancel", headers=AUTH)).status_code == 409
    assert (await client.delete(f"/api/jobs/{job_id}", headers=AUTH)).status_code == 200
    assert (await client.get(f"/api/jobs/{job_id}", headers=AUTH)).status_code == 404


async def test_list_and_stats(client, scheduler):
    job_id = (await client.post("/api/jobs", json=_payload(["A"]), headers=AUTH)).json()["job_id"]
    await scheduler.wait(job_id, timeout=5)

    listing = (await client.get("/api/jobs", headers=AUTH)).json()
    assert [job["job_id"] for job in listing["jobs"]] == [job_id]
    assert "items" not in listing["jobs"][0]

    filtered = (await client.get("/api/jobs?status=failed", headers=AUTH)).json()
    assert filtered["jobs"] == []
    assert (await client.get("/api/jobs?status=bogus", headers=AUTH)).status_code == 400

    stats = (await client.get("/api/jobs/stats", headers=AUTH)).json()["stats"]
    assert stats["completed"] == 1
    assert stats["total"] == 1


async def test_metrics_snapshot(client, scheduler):
    job_id = (await client.post("/api/jobs", json=_payload(["A"]), headers=AUTH)).json()["job_id"]
    await scheduler.wait(job_id, timeout=5)

    snapshot = (await client.get("/metrics")).json()
    assert snapshot["counters"]["jobs.submitted"] == 1
    assert snapshot["counters"]["items.completed"] == 1
    assert "producer.product.duration_ms" in snapshot["histograms"]
