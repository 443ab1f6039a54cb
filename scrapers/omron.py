"""
omron.py — OMRON product page with a search-page fallback.
The Japanese site is only reachable through the JP proxy.
"""

from config import IDEC_JP_PROXY
from errors import DispatchConfigError
from models import Subject, UrlTask
from scrapers.base import DispatchStrategy


class OmronStrategy(DispatchStrategy):
    name = "omron_dual"
    endpoint = "/scrape-omron-dual"

    def __init__(self, jp_proxy: str = IDEC_JP_PROXY):
        self.jp_proxy = jp_proxy

    def build_payload(self, task: UrlTask, subject: Subject) -> dict:
        if not self.jp_proxy:
            raise DispatchConfigError(
                "[OMRON proxy configuration error - IDEC_JP_PROXY not set]"
            )
        return {
            "primaryUrl": task.url,
            "fallbackUrl": task.params.get("fallbackUrl") or task.url,
            "jpProxyUrl": self.jp_proxy,
            "title": task.title,
            "snippet": task.snippet,
        }
