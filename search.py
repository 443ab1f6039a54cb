"""
search.py — Builds the scrape plan for a subject.
Makers with a known product page (or a vendor-specific scraper) get a direct URL;
everything else goes through a SerpAPI Google search restricted to trusted sites.
"""

import re
import unicodedata
from typing import Optional
from urllib.parse import quote

import httpx
from rapidfuzz import fuzz

from config import DIRECT_URL_RULES, SEARCH, SEARCH_SITES, SERPAPI_KEY
from errors import SearchError
from models import GENERIC_STRATEGY, UrlTask
from monitoring import get_logger

logger = get_logger("search")

SERPAPI_URL = "https://serpapi.com/search.json"

MAKER_MATCH_THRESHOLD = 85

# Corporate suffixes stripped before comparing maker names
MAKER_SUFFIXES = [
    "株式会社", "㈱", "inc", "llc", "corp", "corporation",
    "ltd", "limited", "co", "company", "kk",
]


def normalize_maker(name: str) -> str:
    """Normalize a maker name for comparison (width, case, punctuation, suffixes)."""
    name = unicodedata.normalize("NFKC", name).lower().strip()
    for suffix in ("株式会社", "(株)"):
        name = name.replace(suffix, " ")
    name = re.sub(r'[^\w\s]', '', name)
    words = [w for w in name.split() if w not in MAKER_SUFFIXES]
    return " ".join(words).strip()


def _expand(template: str, model: str) -> str:
    return template.replace("{model}", quote(model, safe="")).replace("{raw_model}", model)


class UrlPlanner:
    def __init__(
        self,
        client: Optional[httpx.Client] = None,
        api_key: str = SERPAPI_KEY,
        rules: Optional[list] = None,
        sites: Optional[list] = None,
        max_urls: int = SEARCH["max_urls"],
        num_results: int = SEARCH["num_results"],
    ):
        self.client = client
        self.api_key = api_key
        self.rules = rules if rules is not None else DIRECT_URL_RULES
        self.sites = sites if sites is not None else SEARCH_SITES
        self.max_urls = max_urls
        self.num_results = num_results

    def find_rule(self, maker: str) -> Optional[dict]:
        """Return the direct-URL rule whose maker best matches, if any clears the threshold."""
        target = normalize_maker(maker)
        if not target:
            return None

        best_rule = None
        best_score = 0.0
        for rule in self.rules:
            score = fuzz.ratio(target, normalize_maker(rule["maker"]))
            if score >= MAKER_MATCH_THRESHOLD and score > best_score:
                best_rule = rule
                best_score = score
        return best_rule

    def plan(self, maker: str, model: str) -> list[UrlTask]:
        """Candidate pages for a subject. An empty list means nothing was found."""
        maker = maker.strip()
        model = model.strip()

        rule = self.find_rule(maker)
        if rule:
            task = self._direct_task(rule, maker, model)
            logger.info(
                f"Using direct URL for {maker} {model}: {task.url} "
                f"(strategy: {task.dispatch_strategy})"
            )
            return [task]

        return self._search(maker, model)

    def _direct_task(self, rule: dict, maker: str, model: str) -> UrlTask:
        params = {
            name: _expand(str(value), model)
            for name, value in (rule.get("params") or {}).items()
        }
        return UrlTask(
            index=0,
            url=_expand(rule["url"], model),
            title=f"{maker} {model} Product Page",
            snippet=f"Direct product page for {maker} {model}",
            dispatch_strategy=rule.get("strategy") or GENERIC_STRATEGY,
            params=params,
        )

    def _search(self, maker: str, model: str) -> list[UrlTask]:
        """Execute a single SerpAPI search."""
        if not self.api_key:
            raise SearchError("SERPAPI_KEY not set, cannot search for candidate URLs")

        query = f"{maker} {model}"
        if self.sites:
            query += " (" + " OR ".join(f"site:{site}" for site in self.sites) + ")"

        params = {
            "engine": "google",
            "q": query,
            "num": self.num_results,
            "hl": "ja",
            "gl": "jp",
            "api_key": self.api_key,
        }

        try:
            if self.client is not None:
                response = self.client.get(SERPAPI_URL, params=params)
            else:
                with httpx.Client(timeout=30.0) as client:
                    response = client.get(SERPAPI_URL, params=params)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise SearchError(f"SerpAPI request failed for {maker} {model}: {e}") from e

        if data.get("error") and not data.get("organic_results"):
            # SerpAPI reports "no results" as an error string with a 200
            if "hasn't returned any results" in data["error"]:
                logger.info(f"SerpAPI found nothing for {maker} {model}")
                return []
            raise SearchError(f"SerpAPI error for {maker} {model}: {data['error']}")

        tasks = []
        for result in data.get("organic_results", []):
            link = result.get("link")
            if not link:
                continue
            tasks.append(UrlTask(
                index=len(tasks),
                url=link,
                title=result.get("title", ""),
                snippet=result.get("snippet", ""),
            ))
            if len(tasks) >= self.max_urls:
                break

        logger.info(f"SerpAPI '{maker} {model}': {len(tasks)} URLs")
        return tasks
