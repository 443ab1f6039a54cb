"""
generic.py — Default strategy: the scraping service renders one page with a headless browser.
"""

from models import Subject, UrlTask
from scrapers.base import DispatchStrategy


class GenericStrategy(DispatchStrategy):
    name = "generic"
    endpoint = "/scrape"
    check_health_first = True

    def build_payload(self, task: UrlTask, subject: Subject) -> dict:
        return {
            "url": task.url,
            "title": task.title,
            "snippet": task.snippet,
        }
