"""
engine.py — Builds every component once and wires them together.
Nothing else constructs stores or clients; entry points ask for an Engine.
"""

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import anthropic
import httpx

from analyzer import AnalysisInvoker
from callbacks import CallbackReceiver
from cleanup import CleanupSweeper
from config import DB_PATH
from database import Catalog, RecordStore
from dispatcher import FetchDispatcher
from errors import SearchError
from job_controller import JobController
from models import ERROR, Task
from monitoring import get_logger
from pipeline import Pipeline
from scheduler import AutoCheckScheduler
from scrapers.base import ScraperClient
from search import UrlPlanner
from task_queue import ANALYZE_JOB, AUTO_CHECK, CLEANUP, DISPATCH_URL, TaskQueue

logger = get_logger("engine")


@dataclass
class Engine:
    store: RecordStore
    catalog: Catalog
    queue: TaskQueue
    sweeper: CleanupSweeper
    controller: JobController
    pipeline: Pipeline
    planner: UrlPlanner
    scraper: ScraperClient
    dispatcher: FetchDispatcher
    receiver: CallbackReceiver
    invoker: AnalysisInvoker
    scheduler: AutoCheckScheduler

    def handlers(self) -> dict[str, Callable[[Task], object]]:
        """Task kind → handler taking the claimed task."""
        return {
            DISPATCH_URL: lambda t: self.dispatcher.dispatch(
                t.payload["jobId"], int(t.payload["urlIndex"]), redelivered=t.attempts > 1,
            ),
            ANALYZE_JOB: lambda t: self.invoker.run(t.payload["jobId"]),
            AUTO_CHECK: lambda t: self.scheduler.tick(),
            CLEANUP: lambda t: self.sweeper.sweep(),
        }

    def submit_check(self, maker: str, model: str) -> dict:
        """Manual check: create a job, plan its URLs and start fetching."""
        job_id = self.controller.create(maker, model)
        try:
            urls = self.planner.plan(maker, model)
        except SearchError as e:
            logger.error(f"URL planning failed for job {job_id}: {e}")
            self.controller.set_status(job_id, ERROR, str(e))
            return {"jobId": job_id, "status": ERROR, "urlCount": 0, "error": str(e)}

        self.controller.set_urls(job_id, urls)
        self.pipeline.start(job_id)
        job = self.controller.require(job_id)
        return {"jobId": job_id, "status": job.status, "urlCount": len(urls)}


def build_engine(
    db_path: Path = DB_PATH,
    scraper_http: Optional[httpx.Client] = None,
    search_http: Optional[httpx.Client] = None,
    llm_client: Optional[anthropic.Anthropic] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Engine:
    store = RecordStore(db_path)
    catalog = Catalog(db_path)
    queue = TaskQueue(db_path)

    sweeper = CleanupSweeper(store)
    controller = JobController(store, sweeper=sweeper)
    pipeline = Pipeline(controller, queue)
    planner = UrlPlanner(client=search_http)
    scraper = ScraperClient(client=scraper_http)

    dispatcher = FetchDispatcher(controller, pipeline, scraper, sleep=sleep)
    receiver = CallbackReceiver(controller, pipeline, sleep=sleep)
    invoker = AnalysisInvoker(controller, client=llm_client, sleep=sleep)
    scheduler = AutoCheckScheduler(
        store, catalog, controller, planner, pipeline, invoker, scraper, queue, sleep=sleep,
    )

    logger.info(f"Engine ready (db: {db_path})")
    return Engine(
        store=store,
        catalog=catalog,
        queue=queue,
        sweeper=sweeper,
        controller=controller,
        pipeline=pipeline,
        planner=planner,
        scraper=scraper,
        dispatcher=dispatcher,
        receiver=receiver,
        invoker=invoker,
        scheduler=scheduler,
    )
