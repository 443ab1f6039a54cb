"""
cleanup.py — Deletes finished jobs once they are older than the retention window.
Active jobs are never touched. Failures on one record are logged and skipped.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from config import JOB_CLEANUP_RETENTION_MINUTES
from database import RecordStore
from errors import CleanupError
from job_controller import JOB_KEY_PREFIX
from models import ACTIVE_STATUSES, TERMINAL_STATUSES, parse_iso
from monitoring import get_logger

logger = get_logger("cleanup")


def should_delete(job: dict, now: datetime, retention: timedelta) -> bool:
    status = job.get("status")
    if status in ACTIVE_STATUSES or status not in TERMINAL_STATUSES:
        return False

    completed_at = parse_iso(job.get("completedAt"))
    if completed_at is None:
        return False

    return now - completed_at > retention


class CleanupSweeper:
    def __init__(
        self,
        store: RecordStore,
        retention_minutes: float = JOB_CLEANUP_RETENTION_MINUTES,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.retention = timedelta(minutes=retention_minutes)
        self.clock = clock

    def sweep(self) -> int:
        """Delete expired terminal jobs. Returns how many were deleted."""
        try:
            keys = self.store.list(JOB_KEY_PREFIX)
        except Exception as e:
            raise CleanupError(f"Could not list jobs: {e}") from e

        now = self.clock()
        deleted = 0
        for key in keys:
            try:
                if self._sweep_one(key, now):
                    deleted += 1
            except Exception as e:
                logger.error(f"Error processing {key} during cleanup: {e}")

        if deleted:
            logger.info(f"Cleanup complete: deleted {deleted} old job(s)")
        return deleted

    def _sweep_one(self, key: str, now: datetime) -> bool:
        job: Optional[dict] = self.store.get(key)
        if not job or not should_delete(job, now, self.retention):
            return False

        if not self.store.delete(key):
            logger.info(f"{key} was already deleted by another process")
            return False

        age_minutes = round((now - parse_iso(job["completedAt"])).total_seconds() / 60)
        logger.info(f"Cleaned up old job {key} (completed {age_minutes}m ago)")
        return True
