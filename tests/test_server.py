import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import SCRAPER_URL, VERDICT_ACTIVE, FakeAnthropic, FakeRawResponse, FakeSleep
from engine import build_engine
from errors import StorageTransientError
from models import FETCHING, URL_COMPLETE, ScrapedResult
from server import create_app
from task_queue import ANALYZE_JOB, DISPATCH_URL
from worker import Worker

SERPAPI_RESULTS = {
    "organic_results": [
        {"link": "https://shop.example/p1", "title": "ZX-100 | Shop", "snippet": "In stock"},
        {"link": "https://maker.example/zx-100", "title": "ZX-100", "snippet": "Spec sheet"},
    ]
}


@pytest.fixture
def engine(db_path, scraper_service):
    search_http = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(200, json=SERPAPI_RESULTS)))
    engine = build_engine(
        db_path=db_path,
        scraper_http=httpx.Client(transport=httpx.MockTransport(scraper_service.handler)),
        search_http=search_http,
        llm_client=FakeAnthropic(answers=[FakeRawResponse(VERDICT_ACTIVE)]),
        sleep=FakeSleep(),
    )
    engine.scraper.base_url = SCRAPER_URL
    engine.planner.api_key = "test-key"
    return engine


@pytest.fixture
def client(engine):
    return TestClient(create_app(engine))


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_submit_job_plans_and_starts(client, engine):
    response = client.post("/jobs", json={"maker": "Acme", "model": "ZX-100"})

    body = response.json()
    assert response.status_code == 200
    assert body["status"] == FETCHING
    assert body["urlCount"] == 2
    assert [t.payload["urlIndex"] for t in engine.queue.pending(DISPATCH_URL)] == [0]


def test_submit_job_requires_fields(client):
    assert client.post("/jobs", json={"maker": " ", "model": "ZX-100"}).status_code == 400
    assert client.post("/jobs", json={"maker": "Acme"}).status_code == 422


def test_job_status_view(client):
    job_id = client.post("/jobs", json={"maker": "Acme", "model": "ZX-100"}).json()["jobId"]

    body = client.get(f"/jobs/{job_id}").json()

    assert body["jobId"] == job_id
    assert body["urlCount"] == 2
    assert body["completedUrls"] == 0
    assert body["isDailyLimit"] is False
    assert "result" not in body
    assert client.get("/jobs/job_0_000000000000").status_code == 404


def test_callback_endpoint(client, engine):
    job_id = client.post("/jobs", json={"maker": "Acme", "model": "ZX-100"}).json()["jobId"]
    callback = {"jobId": job_id, "urlIndex": 0, "content": "ZX-100 in stock", "url": "https://shop.example/p1"}

    first = client.post("/callbacks/scrape", json=callback)
    second = client.post("/callbacks/scrape", json=callback)

    assert first.json() == {"success": True, "allDone": False, "duplicate": False}
    assert second.json()["duplicate"] is True
    assert engine.controller.get(job_id).urls[0].status == URL_COMPLETE


def test_callback_unknown_job_or_index(client):
    job_id = client.post("/jobs", json={"maker": "Acme", "model": "ZX-100"}).json()["jobId"]

    assert client.post("/callbacks/scrape", json={"jobId": job_id, "urlIndex": 9}).status_code == 404
    assert client.post("/callbacks/scrape", json={"jobId": "job_0_000000000000", "urlIndex": 0}).status_code == 404


def test_callback_storage_failure_is_503(client, engine):
    def locked(payload):
        raise StorageTransientError("database is locked")

    engine.receiver.receive = locked
    response = client.post("/callbacks/scrape", json={"jobId": "j", "urlIndex": 0})
    assert response.status_code == 503


def test_analyze_endpoint_is_guarded(client, engine):
    job_id = client.post("/jobs", json={"maker": "Acme", "model": "ZX-100"}).json()["jobId"]

    assert client.post(f"/jobs/{job_id}/analyze").json()["triggered"] is False

    for index in (0, 1):
        engine.controller.save_url_result(job_id, index, ScrapedResult(url=f"u{index}", content="ZX-100"))
    assert client.post(f"/jobs/{job_id}/analyze").json()["triggered"] is True
    assert len(engine.queue.pending(ANALYZE_JOB)) == 1


def test_auto_check_state_endpoints(client):
    assert client.get("/auto-check/state").json()["enabled"] is False

    updated = client.post("/auto-check/state", json={"enabled": True, "dailyCounter": 4}).json()
    assert updated["enabled"] is True
    assert updated["dailyCounter"] == 4

    assert client.post("/auto-check/state", json={}).status_code == 400


def test_auto_check_start_endpoint(client):
    assert client.post("/auto-check/start").json() == {"started": False, "reason": "disabled"}

    client.post("/auto-check/state", json={"enabled": True})
    assert client.post("/auto-check/start").json() == {"started": True, "reason": "started"}


def test_dead_letters_endpoint(client, engine):
    task_id = engine.queue.enqueue(DISPATCH_URL, {"jobId": "j", "urlIndex": 0}, max_attempts=1)
    engine.queue.claim([DISPATCH_URL])
    engine.queue.fail(task_id, "RecordNotFoundError: Record job:j not found")

    [dead] = client.get("/tasks/dead-letters").json()
    assert dead["id"] == task_id
    assert dead["lastError"].startswith("RecordNotFoundError")


def test_manual_check_runs_to_completion_through_workers(client, engine):
    job_id = client.post("/jobs", json={"maker": "Acme", "model": "ZX-100"}).json()["jobId"]
    pipeline_worker = Worker(engine, "pipeline")
    analysis_worker = Worker(engine, "analysis")

    for index in (0, 1):
        assert pipeline_worker.run_once() is True
        client.post("/callbacks/scrape", json={
            "jobId": job_id, "urlIndex": index, "content": "ZX-100 price 9,800 yen",
            "url": f"https://shop.example/p{index}",
        })
    assert analysis_worker.run_once() is True
    assert analysis_worker.run_once() is False

    body = client.get(f"/jobs/{job_id}").json()
    assert body["status"] == "complete"
    assert body["completedUrls"] == 2
    assert body["result"]["status"] == "ACTIVE"
