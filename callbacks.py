"""
callbacks.py — Receives scraped content posted back by the scraping service.
Saving is retried because the callback can land before the job's latest write is
visible. Only a save that newly completes a URL moves the pipeline forward, so a
duplicate delivery is acknowledged and otherwise ignored.
"""

import time
from typing import Callable

from config import CALLBACKS
from errors import RecordNotFoundError, StorageTransientError
from job_controller import JobController
from models import ScrapedResult
from monitoring import get_logger
from pipeline import Pipeline
from retry_helpers import simple_retry

logger = get_logger("callbacks")


class CallbackReceiver:
    def __init__(
        self,
        controller: JobController,
        pipeline: Pipeline,
        max_retries: int = CALLBACKS["max_retries"],
        base_delay: float = CALLBACKS["retry_base_seconds"],
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.controller = controller
        self.pipeline = pipeline
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.sleep = sleep

    def receive(self, payload: dict) -> dict:
        """
        Store one scraped result and trigger whatever comes next.
        Raises UnknownUrlIndexError for an index the job lacks, and
        RecordNotFoundError / StorageTransientError once retries are used up.
        """
        job_id = payload["jobId"]
        url_index = int(payload["urlIndex"])
        content = payload.get("content")
        logger.info(f"Callback for job {job_id}, URL {url_index} ({len(content or '')} chars)")

        result = ScrapedResult(
            url=payload.get("url") or "",
            content=content,
            title=payload.get("title"),
            snippet=payload.get("snippet"),
        )

        outcome = simple_retry(
            lambda: self.controller.save_url_result(job_id, url_index, result),
            max_retries=self.max_retries,
            operation_name=f"save_url_result({job_id}, {url_index})",
            base_delay=self.base_delay,
            retry_on=(StorageTransientError, RecordNotFoundError),
            sleep=self.sleep,
        )

        if not outcome.newly_completed:
            logger.info(f"Duplicate callback for job {job_id} URL {url_index}, not triggering anything")
            return {"success": True, "allDone": outcome.all_done, "duplicate": True}

        # advance() re-reads the job, so a stale all_done still ends in analysis when everything is complete
        step = self.pipeline.advance(job_id)
        if step == "waiting":
            logger.warning(f"Job {job_id}: URL {url_index} complete but another URL is still fetching")
        logger.info(f"Callback for job {job_id} URL {url_index} handled (next: {step})")
        return {"success": True, "allDone": outcome.all_done, "duplicate": False}
