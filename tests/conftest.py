"""
Shared fixtures: a throwaway SQLite database, a fake scraping service behind
httpx.MockTransport, and a fake Anthropic client. Nothing touches the network.
"""

import json
from types import SimpleNamespace

import anthropic
import httpx
import pytest

from callbacks import CallbackReceiver
from cleanup import CleanupSweeper
from database import Catalog, RecordStore
from dispatcher import FetchDispatcher
from job_controller import JobController
from models import UrlTask
from pipeline import Pipeline
from scrapers.base import ScraperClient
from task_queue import TaskQueue

SCRAPER_URL = "http://scraper.test"
CALLBACK_URL = "http://eol.test/callbacks/scrape"

QUOTA_OK = {
    "anthropic-ratelimit-tokens-remaining": "40000",
    "anthropic-ratelimit-tokens-limit": "50000",
    "anthropic-ratelimit-tokens-reset": "7.66s",
}

VERDICT_ACTIVE = json.dumps({
    "status": "ACTIVE",
    "explanation": "Result #1: listed with price on the maker's site",
    "successor": {"status": "UNKNOWN", "model": None, "explanation": "Product is active, no successor needed"},
})


class FakeSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


class FakeScraperService:
    """
    Stand-in for the scraping service. Each endpoint answers with the next
    queued response (an int status or an exception class); 200 once the queue is empty.
    """

    def __init__(self):
        self.responses = {}
        self.healthy = True
        self.requests = []

    def queue(self, path, *responses):
        self.responses.setdefault(path, []).extend(responses)

    def posted(self, path=None):
        return [
            json.loads(r.content) for r in self.requests
            if r.method == "POST" and (path is None or r.url.path == path)
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/health":
            return httpx.Response(200 if self.healthy else 503, json={"status": "ok"})

        pending = self.responses.get(request.url.path) or []
        answer = pending.pop(0) if pending else 200
        if isinstance(answer, type) and issubclass(answer, Exception):
            raise answer("simulated", request=request)
        return httpx.Response(answer, json={"success": answer < 400})

    def client(self) -> ScraperClient:
        return ScraperClient(
            base_url=SCRAPER_URL,
            client=httpx.Client(transport=httpx.MockTransport(self.handler)),
        )


class FakeRawResponse:
    def __init__(self, text="", headers=None):
        self.headers = httpx.Headers(headers or QUOTA_OK)
        self._text = text

    def parse(self):
        return SimpleNamespace(content=[SimpleNamespace(type="text", text=self._text)])


class FakeMessages:
    """
    Mimics client.messages.with_raw_response. One-token quota probes answer
    with `quota`; analysis calls consume `answers` in order (an exception is raised).
    """

    def __init__(self, answers=None, quota=None):
        self.answers = list(answers or [])
        self.quota = quota
        self.calls = []

    @property
    def with_raw_response(self):
        return self

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if kwargs.get("max_tokens") == 1:
            if isinstance(self.quota, Exception):
                raise self.quota
            return FakeRawResponse(headers=self.quota or QUOTA_OK)
        answer = self.answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer

    def analysis_calls(self):
        return [c for c in self.calls if c.get("max_tokens") != 1]


class FakeAnthropic:
    def __init__(self, answers=None, quota=None):
        self.messages = FakeMessages(answers, quota)


def rate_limit_error(message, headers=None):
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    response = httpx.Response(429, headers=headers or {}, request=request)
    return anthropic.RateLimitError(message, response=response, body=None)


def server_error(message="overloaded"):
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    response = httpx.Response(500, request=request)
    return anthropic.InternalServerError(message, response=response, body=None)


def make_urls(count):
    return [
        UrlTask(index=i, url=f"https://example.com/p{i}", title=f"Page {i}", snippet=f"snippet {i}")
        for i in range(count)
    ]


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "eol_test.db"


@pytest.fixture
def store(db_path):
    return RecordStore(db_path)


@pytest.fixture
def catalog(db_path):
    return Catalog(db_path)


@pytest.fixture
def queue(db_path):
    return TaskQueue(db_path)


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def sweeper(store):
    return CleanupSweeper(store)


@pytest.fixture
def controller(store, sweeper):
    return JobController(store, sweeper=sweeper)


@pytest.fixture
def pipeline(controller, queue):
    return Pipeline(controller, queue)


@pytest.fixture
def scraper_service():
    return FakeScraperService()


@pytest.fixture
def scraper(scraper_service):
    return scraper_service.client()


@pytest.fixture
def dispatcher(controller, pipeline, scraper, fake_sleep):
    return FetchDispatcher(
        controller, pipeline, scraper,
        callback=CALLBACK_URL,
        max_retries=3,
        base_delay=1.0,
        restart_delays=(15, 30),
        recovery_wait=10,
        save_retries=3,
        save_base_delay=0.5,
        sleep=fake_sleep,
    )


@pytest.fixture
def receiver(controller, pipeline, fake_sleep):
    return CallbackReceiver(controller, pipeline, max_retries=3, base_delay=0.5, sleep=fake_sleep)


@pytest.fixture
def fetching_job(controller, pipeline):
    """A two-URL job that has been started; URL 0 is queued for dispatch."""
    def make(count=2, maker="SMC", model="CDQ2B20-10DZ"):
        job_id = controller.create(maker, model)
        controller.set_urls(job_id, make_urls(count))
        pipeline.start(job_id)
        return job_id
    return make
