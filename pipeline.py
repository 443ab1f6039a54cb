"""
pipeline.py — Decides and enqueues the next step of a job.
URL fetches are strictly sequential: at most one task per job is in flight.
"""

from job_controller import JobController
from models import ANALYZING, COMPLETE, ERROR, FETCHING, URL_FETCHING
from monitoring import get_logger
from task_queue import ANALYZE_JOB, DISPATCH_URL, TaskQueue

logger = get_logger("pipeline")


def dispatch_key(job_id: str, index: int) -> str:
    return f"dispatch:{job_id}:{index}"


def analyze_key(job_id: str) -> str:
    return f"analyze:{job_id}"


class Pipeline:
    def __init__(self, controller: JobController, queue: TaskQueue):
        self.controller = controller
        self.queue = queue

    def start(self, job_id: str):
        """Begin fetching a job whose URLs are in place."""
        self.controller.set_status(job_id, FETCHING)
        self.advance(job_id)

    def advance(self, job_id: str) -> str:
        """
        Enqueue whatever comes next for the job and return what was done:
        "analyze", "dispatch", "waiting" (a fetch is in flight) or "idle".
        """
        job = self.controller.require(job_id)

        if job.status in (ANALYZING, COMPLETE, ERROR):
            return "idle"

        if job.all_urls_complete():
            self.trigger_analysis(job_id)
            return "analyze"

        if any(task.status == URL_FETCHING for task in job.urls):
            return "waiting"

        task = job.next_pending()
        if task is None:
            return "idle"

        self.queue.enqueue(
            DISPATCH_URL,
            {"jobId": job_id, "urlIndex": task.index},
            dedup_key=dispatch_key(job_id, task.index),
        )
        logger.info(f"Job {job_id}: queued fetch of URL {task.index + 1}/{len(job.urls)}")
        return "dispatch"

    def trigger_analysis(self, job_id: str):
        task_id = self.queue.enqueue(ANALYZE_JOB, {"jobId": job_id}, dedup_key=analyze_key(job_id))
        if task_id is not None:
            logger.info(f"Job {job_id}: all URLs complete, analysis queued")
