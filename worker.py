"""
worker.py — Runs queued pipeline tasks.
One thread per lane; each lane works through its task kinds one at a time, so
analysis waiting on LLM quota never holds up scrape dispatch.
"""

import threading
import time
from typing import Optional

from config import QUEUE
from engine import Engine
from models import Task
from monitoring import get_logger
from task_queue import ANALYZE_JOB, AUTO_CHECK, CLEANUP, DISPATCH_URL

logger = get_logger("worker")

LANES = {
    "pipeline": (DISPATCH_URL,),
    "analysis": (ANALYZE_JOB,),
    "scheduler": (AUTO_CHECK, CLEANUP),
}


class Worker:
    def __init__(
        self,
        engine: Engine,
        lane: str,
        poll_interval: float = QUEUE["poll_interval_seconds"],
        retry_delay: float = QUEUE["retry_delay_seconds"],
        stop_event: Optional[threading.Event] = None,
    ):
        self.engine = engine
        self.lane = lane
        self.kinds = LANES[lane]
        self.handlers = engine.handlers()
        self.poll_interval = poll_interval
        self.retry_delay = retry_delay
        self.stop_event = stop_event or threading.Event()

    def run(self):
        logger.info(f"Worker lane '{self.lane}' started ({', '.join(self.kinds)})")
        while not self.stop_event.is_set():
            if not self.run_once():
                self.stop_event.wait(self.poll_interval)
        logger.info(f"Worker lane '{self.lane}' stopped")

    def run_once(self) -> bool:
        """Claim and process one task. Returns False when nothing was due."""
        task = self.engine.queue.claim(self.kinds)
        if task is None:
            return False
        self.process(task)
        return True

    def process(self, task: Task):
        started = time.monotonic()
        try:
            result = self.handlers[task.kind](task)
        except Exception as e:
            logger.exception(f"{task.kind} task #{task.id} raised: {e}")
            self.engine.queue.fail(task.id, f"{type(e).__name__}: {e}", retry_delay=self.retry_delay)
            return

        self.engine.queue.ack(task.id)
        logger.info(
            f"{task.kind} task #{task.id} done in {time.monotonic() - started:.1f}s"
            + (f" ({result})" if isinstance(result, (str, int)) else "")
        )


def run_workers(engine: Engine, lanes=None, stop_event: Optional[threading.Event] = None):
    """Start one thread per lane and block until stop_event is set."""
    stop_event = stop_event or threading.Event()
    released = engine.queue.release_stale()
    if released:
        logger.info(f"Requeued {released} tasks left running by a previous worker")

    threads = []
    for lane in lanes or LANES:
        worker = Worker(engine, lane, stop_event=stop_event)
        thread = threading.Thread(target=worker.run, name=f"worker-{lane}", daemon=True)
        thread.start()
        threads.append(thread)

    try:
        while any(t.is_alive() for t in threads):
            for thread in threads:
                thread.join(timeout=0.5)
    except KeyboardInterrupt:
        logger.info("Shutting down workers...")
        stop_event.set()
        for thread in threads:
            thread.join()
