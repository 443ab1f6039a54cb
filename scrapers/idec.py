"""
idec.py — IDEC dual-site search (Japanese site first, then the US site).
Both sites are reached through region-specific proxies configured in .env.
"""

from config import IDEC_JP_PROXY, IDEC_US_PROXY
from errors import DispatchConfigError
from models import Subject, UrlTask
from scrapers.base import DispatchStrategy


class IdecStrategy(DispatchStrategy):
    name = "idec_dual_site"
    endpoint = "/scrape-idec-dual"

    def __init__(self, jp_proxy: str = IDEC_JP_PROXY, us_proxy: str = IDEC_US_PROXY):
        self.jp_proxy = jp_proxy
        self.us_proxy = us_proxy

    def build_payload(self, task: UrlTask, subject: Subject) -> dict:
        if not self.jp_proxy or not self.us_proxy:
            raise DispatchConfigError(
                "[IDEC proxy configuration error - environment variables not set]"
            )
        return {
            "model": task.params.get("model") or subject.model,
            "jpUrl": task.params.get("jpUrl") or task.url,
            "usUrl": task.params.get("usUrl", ""),
            "jpProxyUrl": self.jp_proxy,
            "usProxyUrl": self.us_proxy,
        }
