"""
scheduler.py — Auto-check chain.
Each tick checks one catalog item end to end, counts it against the daily cap,
and queues the next tick. All chain state lives in the record store; nothing is
carried in memory from one tick to the next.
"""

import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from config import AUTO_CHECK, DAILY_CHECK_CAP, QUOTA_TIMEZONE
from database import Catalog, RecordStore
from errors import EolCheckerError, InvalidTransitionError, SearchError
from job_controller import JobController
from models import (
    COMPLETE, ERROR, FETCHING, TERMINAL_STATUSES,
    AnalysisResult, AutoCheckState, CatalogItem, Successor, parse_iso,
)
from monitoring import get_logger, log_chain_summary
from pipeline import Pipeline
from scrapers.base import ScraperClient
from search import UrlPlanner
from task_queue import AUTO_CHECK as AUTO_CHECK_TASK, TaskQueue

logger = get_logger("scheduler")

STATE_KEY = "auto-check:state"

# Fields callers may change through update_state
UPDATABLE_FIELDS = {"enabled", "is_running", "daily_counter", "last_reset_date", "last_activity_time"}


def timed_out_result(attempts: int, interval: float) -> AnalysisResult:
    minutes = attempts * interval / 60
    return AnalysisResult(
        status="UNKNOWN",
        explanation=f"EOL check timed out after {attempts} polling attempts ({minutes:g} minutes).",
        successor=Successor(status="UNKNOWN", model=None, explanation=""),
    )


class AutoCheckScheduler:
    def __init__(
        self,
        store: RecordStore,
        catalog: Catalog,
        controller: JobController,
        planner: UrlPlanner,
        pipeline: Pipeline,
        invoker,
        scraper: ScraperClient,
        queue: TaskQueue,
        daily_cap: int = DAILY_CHECK_CAP,
        tz: str = QUOTA_TIMEZONE,
        chain_delay: float = AUTO_CHECK["chain_delay_seconds"],
        wake_timeout: float = AUTO_CHECK["wake_timeout_seconds"],
        poll_interval: float = AUTO_CHECK["poll_interval_seconds"],
        poll_max_attempts: int = AUTO_CHECK["poll_max_attempts"],
        health_probe_attempt: int = AUTO_CHECK["health_probe_attempt"],
        stale_running_minutes: float = AUTO_CHECK["stale_running_minutes"],
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.catalog = catalog
        self.controller = controller
        self.planner = planner
        self.pipeline = pipeline
        self.invoker = invoker
        self.scraper = scraper
        self.queue = queue
        self.daily_cap = daily_cap
        self.tz = ZoneInfo(tz)
        self.chain_delay = chain_delay
        self.wake_timeout = wake_timeout
        self.poll_interval = poll_interval
        self.poll_max_attempts = poll_max_attempts
        self.health_probe_attempt = health_probe_attempt
        self.stale_running = timedelta(minutes=stale_running_minutes)
        self.sleep = sleep
        self.clock = clock

    # --- State ---

    def today(self) -> str:
        return self.clock().astimezone(self.tz).date().isoformat()

    def default_state(self) -> AutoCheckState:
        return AutoCheckState(last_reset_date=self.today())

    def get_state(self) -> AutoCheckState:
        data = self.store.get(STATE_KEY)
        return AutoCheckState.from_dict(data) if data else self.default_state()

    def update_state(self, **fields) -> AutoCheckState:
        """Change whitelisted state fields. Setting is_running=True stamps last_activity_time."""
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update auto-check fields: {', '.join(sorted(unknown))}")

        def mutate(data: dict):
            state = AutoCheckState.from_dict(data)
            for name, value in fields.items():
                setattr(state, name, value)
            if fields.get("is_running"):
                state.last_activity_time = self.clock().isoformat()
            data.clear()
            data.update(state.to_dict())
            return state

        state = self.store.update(STATE_KEY, mutate, default=self.default_state().to_dict())
        logger.info(f"Auto-check state updated: {state.to_dict()}")
        return state

    def _apply_day_reset(self, state: AutoCheckState) -> bool:
        today = self.today()
        if state.last_reset_date == today:
            return False
        logger.info(f"New day detected ({today}), resetting counter from {state.daily_counter}")
        state.daily_counter = 0
        state.last_reset_date = today
        return True

    def _is_stale(self, state: AutoCheckState) -> bool:
        last = parse_iso(state.last_activity_time)
        return last is None or self.clock() - last > self.stale_running

    def _set_running(self, running: bool):
        self.update_state(is_running=running)

    # --- Chain ---

    def start(self, triggered_by: str = "manual") -> dict:
        """
        Begin a chain if auto-check is enabled, idle and under today's cap.
        Returns {"started": bool, "reason": str}.
        """
        def mutate(data: dict):
            state = AutoCheckState.from_dict(data)
            if not state.enabled:
                return "disabled"
            if state.is_running and not self._is_stale(state):
                return "already_running"
            if state.is_running:
                logger.warning(f"Auto-check chain silent since {state.last_activity_time}, taking over")
            self._apply_day_reset(state)
            if state.daily_counter >= self.daily_cap:
                state.is_running = False
                reason = "cap_reached"
            else:
                state.is_running = True
                state.last_activity_time = self.clock().isoformat()
                reason = "started"
            data.clear()
            data.update(state.to_dict())
            return reason

        reason = self.store.update(STATE_KEY, mutate, default=self.default_state().to_dict())
        logger.info(f"Auto-check start ({triggered_by}): {reason}")

        if reason == "started":
            self.queue.enqueue(AUTO_CHECK_TASK, {"triggeredBy": triggered_by}, max_attempts=1)
        return {"started": reason == "started", "reason": reason}

    def tick(self) -> str:
        """One link of the chain. Returns why it stopped or "continued"."""
        started = time.monotonic()
        logger.info("=" * 60)
        logger.info(f"Auto-check tick started: {self.clock().isoformat()}")
        logger.info("=" * 60)

        try:
            return self._tick(started)
        except Exception:
            try:
                self._set_running(False)
            except Exception as cleanup_error:
                logger.error(f"Failed to clear isRunning after tick error: {cleanup_error}")
            raise

    def _tick(self, started: float) -> str:
        def load(data: dict):
            state = AutoCheckState.from_dict(data)
            if self._apply_day_reset(state):
                data.clear()
                data.update(state.to_dict())
            data["lastActivityTime"] = self.clock().isoformat()
            return AutoCheckState.from_dict(data)

        state = self.store.update(STATE_KEY, load, default=self.default_state().to_dict())

        if not state.enabled:
            logger.info("Auto-check disabled, stopping")
            self._set_running(False)
            return "disabled"

        if state.daily_counter >= self.daily_cap:
            logger.info(f"Daily limit reached ({self.daily_cap} checks)")
            self._set_running(False)
            return "cap_reached"

        logger.info(f"Current progress: {state.daily_counter}/{self.daily_cap} checks today")

        if state.daily_counter == 0:
            logger.info("First check of the day, waking scraping service")
            if not self.scraper.is_healthy(timeout=self.wake_timeout):
                logger.warning("Scraping service not ready, will retry on the next trigger")
                self._set_running(False)
                return "scraper_down"

        self.invoker.wait_for_quota()

        item = self.catalog.next_item()
        if item is None:
            logger.info("No catalog items to check")
            self._set_running(False)
            return "no_items"

        success = self.check_item(item)

        def count(data: dict):
            state = AutoCheckState.from_dict(data)
            state.daily_counter += 1
            data.clear()
            data.update(state.to_dict())
            return state

        state = self.store.update(STATE_KEY, count, default=self.default_state().to_dict())
        log_chain_summary(logger, state.daily_counter, self.daily_cap, success, time.monotonic() - started)

        if state.enabled and state.daily_counter < self.daily_cap:
            self.queue.enqueue(
                AUTO_CHECK_TASK, {"triggeredBy": "chain"},
                delay=self.chain_delay, max_attempts=1,
            )
            return "continued"

        logger.info("Chain complete or disabled, stopping")
        self._set_running(False)
        return "stopped"

    # --- One item ---

    def check_item(self, item: CatalogItem) -> bool:
        """
        Run one job for a catalog item and record its verdict. Returns True on a
        real verdict. Never raises: a failed check still counts against the cap.
        """
        logger.info(f"Executing EOL check for: {item.maker} {item.model} (SAP: {item.sap_number})")
        job_id = None
        try:
            job_id = self.controller.create(item.maker, item.model)
            result = self.run_job(job_id, item.maker, item.model)
            if result is None:
                logger.error(f"EOL check failed for {item.maker} {item.model} (job {job_id})")
                return False

            self.catalog.record_result(item.id, result)
            job = self.controller.get(job_id)
            return job is not None and job.status == COMPLETE
        except Exception as e:
            logger.exception(f"EOL check for {item.maker} {item.model} raised: {e}")
            if job_id is not None:
                try:
                    self._abandon(job_id, f"Auto-check failed: {e}")
                except EolCheckerError as abandon_error:
                    logger.error(f"Could not mark job {job_id} as failed: {abandon_error}")
            return False

    def run_job(self, job_id: str, maker: str, model: str) -> Optional[AnalysisResult]:
        """Plan and start a created job, then poll it to the end."""
        try:
            urls = self.planner.plan(maker, model)
        except SearchError as e:
            logger.error(f"URL planning failed for job {job_id}: {e}")
            self.controller.set_status(job_id, ERROR, str(e))
            return None

        self.controller.set_urls(job_id, urls)
        self.pipeline.start(job_id)
        return self.poll(job_id)

    def poll(self, job_id: str) -> Optional[AnalysisResult]:
        """
        Wait for a job to finish. Returns its verdict, None when it ended in error
        or the scraper died mid-job, or an UNKNOWN fallback on timeout.
        """
        for attempt in range(1, self.poll_max_attempts + 1):
            self.sleep(self.poll_interval)
            try:
                job = self.controller.get(job_id)
            except EolCheckerError as e:
                logger.warning(f"Poll {attempt} for job {job_id} failed, continuing: {e}")
                continue
            if job is None:
                logger.error(f"Job {job_id} disappeared while polling")
                return None

            if job.status == COMPLETE:
                logger.info(f"Job {job_id} complete after {attempt} polls")
                return job.final_result
            if job.status == ERROR:
                logger.error(f"Job {job_id} failed: {job.error}")
                return None

            if attempt == self.health_probe_attempt and job.status == FETCHING:
                if not self.scraper.is_healthy():
                    logger.error(f"Scraping service down while job {job_id} was fetching, failing fast")
                    self._abandon(job_id, "Scraping service stopped responding during the check")
                    return None

        logger.warning(f"Job {job_id} timed out after {self.poll_max_attempts} polls")
        self._abandon(job_id, "Timed out waiting for the job to finish")
        return timed_out_result(self.poll_max_attempts, self.poll_interval)

    def _abandon(self, job_id: str, reason: str):
        """Mark a job the chain gave up on as failed, unless it finished in the meantime."""
        try:
            job = self.controller.get(job_id)
            if job is not None and job.status not in TERMINAL_STATUSES:
                self.controller.set_status(job_id, ERROR, reason)
        except InvalidTransitionError as e:
            logger.info(f"Job {job_id} finished while being abandoned: {e}")
