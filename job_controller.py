"""
job_controller.py — Job state machine on top of the record store.
Every mutation is a single-key atomic update, so concurrent callbacks for the
same job never lose each other's writes.
"""

import time
import uuid
from typing import Optional

from database import RecordStore
from errors import InvalidTransitionError, RecordNotFoundError, UnknownUrlIndexError
from models import (
    ANALYZING, COMPLETE, CREATED, ERROR, FETCHING, TERMINAL_STATUSES, URLS_READY,
    URL_COMPLETE, URL_FETCHING, URL_PENDING,
    AnalysisResult, Job, SaveOutcome, ScrapedResult, Subject, UrlTask, utc_now_iso,
)
from monitoring import get_logger, log_transition

logger = get_logger("job_controller")

JOB_KEY_PREFIX = "job:"

ALLOWED_TRANSITIONS = {
    CREATED: {URLS_READY, ERROR},
    URLS_READY: {FETCHING, ERROR},
    FETCHING: {ANALYZING, ERROR},
    ANALYZING: {COMPLETE, ERROR},
    COMPLETE: set(),
    ERROR: set(),
}


def job_key(job_id: str) -> str:
    return f"{JOB_KEY_PREFIX}{job_id}"


def new_job_id() -> str:
    return f"job_{int(time.time() * 1000)}_{uuid.uuid4().hex[:12]}"


def check_transition(job_id: str, old_status: str, new_status: str) -> bool:
    """
    Validate a status change. Returns False for a same-status no-op,
    True for a legal move, raises InvalidTransitionError otherwise.
    """
    if old_status == new_status:
        return False
    if new_status not in ALLOWED_TRANSITIONS.get(old_status, set()):
        raise InvalidTransitionError(job_id, old_status, new_status)
    return True


class JobController:
    def __init__(self, store: RecordStore, sweeper=None):
        self.store = store
        self.sweeper = sweeper

    # --- Reads ---

    def get(self, job_id: str) -> Optional[Job]:
        data = self.store.get(job_key(job_id))
        return Job.from_dict(data) if data else None

    def require(self, job_id: str) -> Job:
        job = self.get(job_id)
        if job is None:
            raise RecordNotFoundError(job_key(job_id))
        return job

    def list_job_ids(self) -> list[str]:
        return [key[len(JOB_KEY_PREFIX):] for key in self.store.list(JOB_KEY_PREFIX)]

    # --- Lifecycle ---

    def create(self, maker: str, model: str) -> str:
        """Create a job. Old terminal jobs are swept first; a failed sweep never blocks creation."""
        if self.sweeper is not None:
            try:
                self.sweeper.sweep()
            except Exception as e:
                logger.error(f"Job cleanup failed (non-fatal): {e}")

        job = Job(job_id=new_job_id(), subject=Subject(maker=maker, model=model))
        self.store.set(job_key(job.job_id), job.to_dict())
        logger.info(f"Created job {job.job_id} for {maker} {model}")
        return job.job_id

    def set_urls(self, job_id: str, urls: list[UrlTask]):
        """Install the scrape plan. Tasks are reindexed 0..n-1 and reset to pending."""
        def mutate(data: dict):
            job = Job.from_dict(data)
            check_transition(job_id, job.status, URLS_READY)
            job.urls = [
                UrlTask(
                    index=i,
                    url=task.url,
                    title=task.title,
                    snippet=task.snippet,
                    dispatch_strategy=task.dispatch_strategy,
                    params=dict(task.params),
                    status=URL_PENDING,
                )
                for i, task in enumerate(urls)
            ]
            job.url_results = {}
            old_status = job.status
            job.status = URLS_READY
            data.clear()
            data.update(job.to_dict())
            return old_status

        old_status = self.store.update(job_key(job_id), mutate)
        logger.info(f"Saved {len(urls)} URLs to job {job_id}")
        if old_status != URLS_READY:
            log_transition(logger, job_id, old_status, URLS_READY)

    def set_status(
        self,
        job_id: str,
        status: str,
        error: Optional[str] = None,
        metadata: Optional[dict] = None,
    ):
        """Move a job to `status`. Re-setting the current status is a no-op."""
        def mutate(data: dict):
            job = Job.from_dict(data)
            old_status = job.status
            if not check_transition(job_id, old_status, status):
                return None
            job.status = status
            if error:
                job.error = error
            if status in TERMINAL_STATUSES and not job.completed_at:
                job.completed_at = utc_now_iso()
            for name, value in (metadata or {}).items():
                if name == "isDailyLimit":
                    job.is_daily_limit = bool(value)
                elif name == "retrySeconds":
                    job.retry_seconds = value
                else:
                    job.metadata[name] = value
            data.clear()
            data.update(job.to_dict())
            return old_status

        old_status = self.store.update(job_key(job_id), mutate)
        if old_status is not None:
            log_transition(logger, job_id, old_status, status)

    def mark_url_fetching(self, job_id: str, index: int) -> bool:
        """pending → fetching. Returns False if the task was not pending."""
        def mutate(data: dict):
            job = Job.from_dict(data)
            task = job.task(index)
            if task is None:
                raise UnknownUrlIndexError(f"Job {job_id} has no URL {index}")
            if task.status != URL_PENDING:
                return False
            task.status = URL_FETCHING
            data.clear()
            data.update(job.to_dict())
            return True

        marked = self.store.update(job_key(job_id), mutate)
        if marked:
            logger.info(f"Marked URL {index} as fetching for job {job_id}")
        return marked

    def save_url_result(
        self,
        job_id: str,
        index: int,
        result: ScrapedResult,
        overwrite: bool = True,
    ) -> SaveOutcome:
        """
        Store one URL's content and mark its task complete.
        A repeat save overwrites the stored result (unless overwrite=False) but
        reports newly_completed=False; that flag is what keeps duplicate
        callbacks from triggering anything. Terminal jobs are left untouched.
        """
        def mutate(data: dict):
            job = Job.from_dict(data)
            task = job.task(index)
            if task is None:
                raise UnknownUrlIndexError(f"Job {job_id} has no URL {index}")
            if job.status in TERMINAL_STATUSES:
                return SaveOutcome(all_done=job.all_urls_complete(), newly_completed=False)

            newly_completed = task.status != URL_COMPLETE
            if not newly_completed and not overwrite:
                return SaveOutcome(all_done=job.all_urls_complete(), newly_completed=False)
            task.status = URL_COMPLETE
            job.url_results[index] = result
            data.clear()
            data.update(job.to_dict())
            return SaveOutcome(all_done=job.all_urls_complete(), newly_completed=newly_completed)

        outcome = self.store.update(job_key(job_id), mutate)
        logger.info(
            f"Saved result for URL {index} of job {job_id} "
            f"(all done: {outcome.all_done}, new: {outcome.newly_completed})"
        )
        return outcome

    def begin_analysis(self, job_id: str) -> bool:
        """
        Claim the job for analysis. False if analysis already started or ended,
        or if some URL is still outstanding.
        """
        def mutate(data: dict):
            job = Job.from_dict(data)
            if job.status != FETCHING or not job.all_urls_complete():
                return False
            job.status = ANALYZING
            data.clear()
            data.update(job.to_dict())
            return True

        began = self.store.update(job_key(job_id), mutate)
        if began:
            log_transition(logger, job_id, FETCHING, ANALYZING)
        else:
            logger.info(f"Job {job_id}: analysis not started (already running, finished, or URLs outstanding)")
        return began

    def save_final_result(self, job_id: str, result: AnalysisResult):
        """analyzing → complete with the verdict attached."""
        def mutate(data: dict):
            job = Job.from_dict(data)
            check_transition(job_id, job.status, COMPLETE)
            job.status = COMPLETE
            job.final_result = result
            job.error = None
            if not job.completed_at:
                job.completed_at = utc_now_iso()
            data.clear()
            data.update(job.to_dict())

        self.store.update(job_key(job_id), mutate)
        log_transition(logger, job_id, ANALYZING, COMPLETE)
        logger.info(f"Job {job_id} verdict: {result.status}")

    def delete(self, job_id: str) -> bool:
        deleted = self.store.delete(job_key(job_id))
        if deleted:
            logger.info(f"Deleted job {job_id}")
        return deleted
