"""
keyence.py — KEYENCE interactive search.
The service types the model into the site's search box, so it needs the raw model, not a URL.
"""

from models import Subject, UrlTask
from scrapers.base import DispatchStrategy


class KeyenceStrategy(DispatchStrategy):
    name = "keyence_interactive"
    endpoint = "/scrape-keyence"

    def build_payload(self, task: UrlTask, subject: Subject) -> dict:
        return {"model": task.params.get("model") or subject.model}
