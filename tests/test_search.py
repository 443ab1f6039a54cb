import httpx
import pytest

from errors import SearchError
from search import SERPAPI_URL, UrlPlanner, normalize_maker

RULES = [
    {"maker": "SMC", "url": "https://www.smcworld.com/detail/?partNumber={model}", "strategy": "generic"},
    {
        "maker": "キーエンス",
        "url": "https://www.keyence.co.jp/search/?q={model}",
        "strategy": "keyence_interactive",
        "params": {"model": "{raw_model}"},
    },
]


def serpapi(payload, status=200, seen=None):
    def handler(request):
        if seen is not None:
            seen.append(request)
        return httpx.Response(status, json=payload)
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_normalize_maker():
    assert normalize_maker("ＳＭＣ株式会社") == "smc"
    assert normalize_maker("Omron Corp.") == "omron"
    assert normalize_maker("  IDEC Co., Ltd. ") == "idec"


def test_direct_rule_builds_single_task():
    planner = UrlPlanner(client=None, api_key="", rules=RULES, sites=[])

    [task] = planner.plan("SMC株式会社", "CDQ2B20/10DZ")

    assert task.index == 0
    assert task.url == "https://www.smcworld.com/detail/?partNumber=CDQ2B20%2F10DZ"
    assert task.title == "SMC株式会社 CDQ2B20/10DZ Product Page"
    assert task.dispatch_strategy == "generic"


def test_direct_rule_params_use_raw_model():
    planner = UrlPlanner(client=None, api_key="", rules=RULES, sites=[])

    [task] = planner.plan("キーエンス", "LR-TB5000 C")

    assert task.dispatch_strategy == "keyence_interactive"
    assert task.params == {"model": "LR-TB5000 C"}
    assert task.url.endswith("LR-TB5000%20C")


def test_search_returns_top_results():
    seen = []
    client = serpapi({
        "organic_results": [
            {"link": "https://a.example/1", "title": "A", "snippet": "first"},
            {"title": "no link"},
            {"link": "https://b.example/2", "title": "B", "snippet": "second"},
            {"link": "https://c.example/3", "title": "C", "snippet": "third"},
        ]
    }, seen=seen)
    planner = UrlPlanner(client=client, api_key="k", rules=[], sites=["omron.co.jp", "monotaro.com"], max_urls=2)

    tasks = planner.plan("Acme", "ZX-100")

    assert [(t.index, t.url) for t in tasks] == [(0, "https://a.example/1"), (1, "https://b.example/2")]
    assert all(t.dispatch_strategy == "generic" for t in tasks)

    [request] = seen
    assert str(request.url).startswith(SERPAPI_URL)
    assert request.url.params["engine"] == "google"
    assert request.url.params["q"] == "Acme ZX-100 (site:omron.co.jp OR site:monotaro.com)"


def test_search_with_no_results_is_empty():
    client = serpapi({"error": "Google hasn't returned any results for this query."})
    planner = UrlPlanner(client=client, api_key="k", rules=[], sites=[])

    assert planner.plan("Acme", "ZX-100") == []


def test_search_errors_raise():
    planner = UrlPlanner(client=serpapi({}, status=500), api_key="k", rules=[], sites=[])
    with pytest.raises(SearchError):
        planner.plan("Acme", "ZX-100")

    planner = UrlPlanner(client=serpapi({"error": "Invalid API key."}), api_key="k", rules=[], sites=[])
    with pytest.raises(SearchError):
        planner.plan("Acme", "ZX-100")


def test_search_without_key_raises():
    planner = UrlPlanner(client=None, api_key="", rules=[], sites=[])
    with pytest.raises(SearchError):
        planner.plan("Acme", "ZX-100")
