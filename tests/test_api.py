from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from radar.main import app
from radar.schemas.strategy import Posting
from radar.services.runtime import Runtime, get_runtime
from tests.fakes import STRONG_OUTREACH, FakeDiscovery, make_runtime


@pytest.fixture
def runtime() -> Runtime:
    discovery = FakeDiscovery(
        postings={
            "indeed": [
                Posting(platform="indeed", company="Acme", title="SDR", description=STRONG_OUTREACH, external_id="1")
            ]
        }
    )
    return make_runtime(discovery=discovery)


@pytest.fixture
def client(runtime: Runtime) -> Iterator[TestClient]:
    app.dependency_overrides[get_runtime] = lambda: runtime
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_healthz(client: TestClient) -> None:
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_enqueue_and_fetch_job(client: TestClient) -> None:
    response = client.post("/jobs", json={"kind": "discover", "payload": {"search_term": "Revenue Operations"}})

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "pending"
    assert body["priority"] == 80

    fetched = client.get(f"/jobs/{body['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["payload"]["search_term"] == "Revenue Operations"
    assert [row["id"] for row in client.get("/jobs", params={"status_filter": "pending"}).json()] == [body["id"]]


def test_enqueue_rejects_invalid_payload(client: TestClient) -> None:
    response = client.post("/jobs", json={"kind": "discover", "payload": {}})
    assert response.status_code == 422
    assert "invalid payload for job kind discover" in response.json()["detail"]

    assert client.post("/jobs", json={"kind": "scrape"}).status_code == 422


def test_enqueue_when_queue_is_full() -> None:
    runtime = make_runtime(queue_max_size=1)
    app.dependency_overrides[get_runtime] = lambda: runtime
    try:
        client = TestClient(app)
        assert client.post("/jobs", json={"kind": "export"}).status_code == 202
        response = client.post("/jobs", json={"kind": "export"})
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 503
    assert response.json()["detail"] == {"code": "QUEUE_FULL", "current_size": 1, "max_size": 1}


def test_missing_job_and_cancel_conflict(client: TestClient) -> None:
    assert client.get("/jobs/does-not-exist").status_code == 404
    assert client.post("/jobs/does-not-exist/cancel").status_code == 404

    job_id = client.post("/jobs", json={"kind": "export"}).json()["id"]
    cancelled = client.post(f"/jobs/{job_id}/cancel")
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert client.post(f"/jobs/{job_id}/cancel").status_code == 409


def test_queue_stats(client: TestClient) -> None:
    client.post("/jobs", json={"kind": "export"})
    stats = client.get("/jobs/stats").json()
    assert stats["pending"] == 1
    assert stats["queue_depth"] == 0.001


def test_process_term_runs_pipeline(client: TestClient, runtime: Runtime) -> None:
    response = client.post("/automation/process-term", json={"term": "SDR", "force_refresh": True})

    assert response.status_code == 200
    body = response.json()
    assert body["scraped"] == 1
    assert body["high_value_found"] == 1
    assert len(runtime.store.companies) == 1

    events = client.get("/automation/events").json()
    assert events[-1]["kind"] == "pipeline:completed"


def test_status_and_metrics(client: TestClient) -> None:
    status = client.get("/automation/status").json()
    assert status["continuous_running"] is False
    assert status["classifier_degraded"] is False
    assert {limiter["name"] for limiter in status["rate_limiters"]} == {"discovery", "classification"}

    metrics = client.get("/automation/metrics").json()
    assert set(metrics) == {"engine", "scheduler", "deduplication", "queue"}
    assert client.get("/automation/insights").json() == {"insights": []}


def test_uninitialised_runtime_returns_503() -> None:
    app.state.runtime = None
    response = TestClient(app).get("/jobs/stats")
    assert response.status_code == 503
