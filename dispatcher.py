"""
dispatcher.py — Hands one URL task to the scraping service.
The service answers fast (or not at all) and delivers content later through the
callback endpoint. When every attempt fails, a placeholder result is written so
the job can still move on to analysis.
"""

import time
from typing import Callable, Optional

from config import CALLBACKS, DISPATCH, callback_url
from errors import DispatchConfigError, RecordNotFoundError, StorageTransientError
from job_controller import JobController
from models import GENERIC_STRATEGY, TERMINAL_STATUSES, URL_FETCHING, URL_PENDING, ScrapedResult, UrlTask
from monitoring import get_logger
from pipeline import Pipeline
from retry_helpers import retry_with_backoff, simple_retry
from scrapers.base import DispatchStrategy, ScraperClient
from scrapers.generic import GenericStrategy
from scrapers.idec import IdecStrategy
from scrapers.keyence import KeyenceStrategy
from scrapers.omron import OmronStrategy

logger = get_logger("dispatcher")

UNAVAILABLE_PLACEHOLDER = "[Scraping service unavailable - will retry later]"
RESTARTING_PLACEHOLDER = "[Scraping service was restarting - this URL will be retried on next check]"


def failed_placeholder(attempts: int, cause) -> str:
    return f"[Scraping failed after {attempts} attempts: {cause}]"


def get_strategies() -> dict[str, DispatchStrategy]:
    """Return every registered dispatch strategy keyed by its tag."""
    strategies = [
        GenericStrategy(),
        KeyenceStrategy(),
        IdecStrategy(),
        OmronStrategy(),
    ]
    return {strategy.name: strategy for strategy in strategies}


class FetchDispatcher:
    def __init__(
        self,
        controller: JobController,
        pipeline: Pipeline,
        scraper: ScraperClient,
        strategies: Optional[dict[str, DispatchStrategy]] = None,
        callback: Optional[str] = None,
        max_retries: int = DISPATCH["max_retries"],
        base_delay: float = DISPATCH["retry_base_seconds"],
        restart_delays: tuple = tuple(DISPATCH["restart_backoff_seconds"]),
        recovery_wait: float = DISPATCH["health_recovery_wait_seconds"],
        save_retries: int = CALLBACKS["max_retries"],
        save_base_delay: float = CALLBACKS["retry_base_seconds"],
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.controller = controller
        self.pipeline = pipeline
        self.scraper = scraper
        self.strategies = strategies if strategies is not None else get_strategies()
        self.callback = callback or callback_url()
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.restart_delays = restart_delays
        self.recovery_wait = recovery_wait
        self.save_retries = save_retries
        self.save_base_delay = save_base_delay
        self.sleep = sleep

    def get_strategy(self, tag: str) -> DispatchStrategy:
        strategy = self.strategies.get(tag)
        if strategy is None:
            logger.warning(f"Unknown dispatch strategy '{tag}', falling back to {GENERIC_STRATEGY}")
            strategy = self.strategies[GENERIC_STRATEGY]
        return strategy

    def dispatch(self, job_id: str, url_index: int, redelivered: bool = False) -> str:
        """
        Send one URL to the scraping service. Returns what happened:
        "accepted", "skipped", "unavailable", "config_error" or "failed".

        A redelivered task (an earlier attempt raised or its worker died) may
        find its URL stuck in fetching; it is sent again instead of skipped.
        """
        job = self.controller.require(job_id)
        task = job.task(url_index)
        if task is None:
            logger.error(f"Job {job_id} has no URL {url_index}, nothing to dispatch")
            return "skipped"
        if job.status in TERMINAL_STATUSES:
            logger.info(f"Job {job_id} already {job.status}, not dispatching URL {url_index}")
            return "skipped"
        if redelivered and task.status == URL_FETCHING:
            logger.warning(f"URL {url_index} of job {job_id} left fetching by an earlier attempt, dispatching again")
        elif task.status != URL_PENDING:
            logger.info(f"URL {url_index} of job {job_id} is already {task.status}, skipping duplicate dispatch")
            return "skipped"
        elif not self.controller.mark_url_fetching(job_id, url_index):
            return "skipped"

        strategy = self.get_strategy(task.dispatch_strategy)
        logger.info(
            f"Dispatching URL {url_index + 1}/{len(job.urls)} of job {job_id} "
            f"via {strategy.name}: {task.url}"
        )

        if strategy.check_health_first and not self._wait_for_service():
            self._finish_with_placeholder(job_id, task, UNAVAILABLE_PLACEHOLDER)
            return "unavailable"

        try:
            payload = strategy.build_payload(task, job.subject)
        except DispatchConfigError as e:
            logger.error(f"Job {job_id} URL {url_index}: {e}")
            self._finish_with_placeholder(job_id, task, str(e))
            return "config_error"

        payload.update({
            "callbackUrl": self.callback,
            "jobId": job_id,
            "urlIndex": url_index,
        })

        outcome = retry_with_backoff(
            lambda: self.scraper.post(strategy.endpoint, payload),
            operation_name=strategy.label(task),
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            restart_delays=self.restart_delays,
            sleep=self.sleep,
        )

        if outcome.success or outcome.timed_out:
            logger.info(f"Job {job_id} URL {url_index} accepted by scraping service")
            return "accepted"

        if outcome.restarting:
            placeholder = RESTARTING_PLACEHOLDER
        else:
            placeholder = failed_placeholder(self.max_retries, outcome.error)
        self._finish_with_placeholder(job_id, task, placeholder)
        return "failed"

    def _wait_for_service(self) -> bool:
        if self.scraper.is_healthy():
            return True
        logger.warning(f"Scraping service unhealthy, waiting {self.recovery_wait}s for recovery")
        self.sleep(self.recovery_wait)
        if self.scraper.is_healthy():
            logger.info("Scraping service recovered")
            return True
        logger.error("Scraping service still unavailable after recovery wait")
        return False

    def _finish_with_placeholder(self, job_id: str, task: UrlTask, placeholder: str):
        """Record why a URL has no content and keep the job moving."""
        result = ScrapedResult(url=task.url, content=placeholder, title=None, snippet=task.snippet)
        outcome = simple_retry(
            lambda: self.controller.save_url_result(job_id, task.index, result, overwrite=False),
            max_retries=self.save_retries,
            operation_name=f"save placeholder({job_id}, {task.index})",
            base_delay=self.save_base_delay,
            retry_on=(StorageTransientError, RecordNotFoundError),
            sleep=self.sleep,
        )
        logger.info(f"Placeholder saved for URL {task.index} of job {job_id}. All done: {outcome.all_done}")
        if outcome.newly_completed:
            self.pipeline.advance(job_id)
