"""
base.py — Client for the external scraping service and the dispatch strategy interface.
The service acknowledges a request quickly and posts the scraped content back later.
"""

from abc import ABC, abstractmethod
from typing import Optional

import httpx

from config import DISPATCH, SCRAPING_SERVICE_URL
from errors import ServiceRestartingError, TransientNetworkError
from models import Subject, UrlTask
from monitoring import get_logger
from retry_helpers import OperationTimeout

logger = get_logger("scrapers.base")


class ScraperClient:
    """
    Thin httpx wrapper around the scraping service.
    A read timeout after the request went out is reported as OperationTimeout:
    the service is busy with the page and will call back on its own.
    """

    def __init__(
        self,
        base_url: str = SCRAPING_SERVICE_URL,
        client: Optional[httpx.Client] = None,
        ack_timeout: float = DISPATCH["ack_timeout_seconds"],
        health_timeout: float = DISPATCH["health_timeout_seconds"],
    ):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.Client()
        self.ack_timeout = ack_timeout
        self.health_timeout = health_timeout

    def post(self, path: str, payload: dict) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            response = self.client.post(url, json=payload, timeout=self.ack_timeout)
        except httpx.ReadTimeout as e:
            raise OperationTimeout(f"No answer from {path} within {self.ack_timeout}s") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{path} request failed: {e}") from e

        if response.status_code == 503:
            raise ServiceRestartingError(
                f"{path} returned 503 - {response.text[:200]}", status_code=503
            )
        if response.status_code >= 400:
            raise TransientNetworkError(
                f"{path} returned {response.status_code} - {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    def is_healthy(self, timeout: Optional[float] = None) -> bool:
        try:
            response = self.client.get(
                f"{self.base_url}/health", timeout=timeout or self.health_timeout
            )
            return response.status_code < 400
        except httpx.HTTPError as e:
            logger.warning(f"Scraping service health check failed: {e}")
            return False

    def close(self):
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


class DispatchStrategy(ABC):
    """How one kind of URL task is handed to the scraping service."""

    name: str = ""
    endpoint: str = ""
    # Probe /health before dispatching and skip the URL if the service stays down
    check_health_first: bool = False

    @abstractmethod
    def build_payload(self, task: UrlTask, subject: Subject) -> dict:
        """Strategy-specific request fields; the dispatcher adds the callback routing."""

    def label(self, task: UrlTask) -> str:
        return f"{self.name} scrape of URL {task.index}"
