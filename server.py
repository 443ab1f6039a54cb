"""
server.py — HTTP surface of the EOL Checker (FastAPI).
Receives scraper callbacks, accepts manual checks, and exposes job and
auto-check state. Every route delegates to the engine; nothing here holds state.
"""

from typing import Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from engine import Engine
from errors import RecordNotFoundError, StorageTransientError, UnknownUrlIndexError
from models import FETCHING, COMPLETE
from monitoring import get_logger

logger = get_logger("server")

# camelCase request fields → AutoCheckScheduler.update_state keyword
STATE_FIELDS = {
    "enabled": "enabled",
    "isRunning": "is_running",
    "dailyCounter": "daily_counter",
}


class ScrapeCallback(BaseModel):
    jobId: str
    urlIndex: int
    content: Optional[str] = None
    title: Optional[str] = None
    snippet: Optional[str] = None
    url: Optional[str] = None


class CheckRequest(BaseModel):
    maker: str
    model: str


class AutoCheckUpdate(BaseModel):
    enabled: Optional[bool] = None
    isRunning: Optional[bool] = None
    dailyCounter: Optional[int] = None


def job_view(job) -> dict:
    """Public status view of a job, without the scraped content."""
    view = {
        "jobId": job.job_id,
        "status": job.status,
        "maker": job.subject.maker,
        "model": job.subject.model,
        "urlCount": len(job.urls),
        "completedUrls": job.completed_count(),
        "urls": [task.to_dict() for task in job.urls],
        "error": job.error,
        "createdAt": job.created_at,
        "completedAt": job.completed_at,
        "isDailyLimit": job.is_daily_limit,
        "retrySeconds": job.retry_seconds,
    }
    if job.status == COMPLETE and job.final_result:
        view["result"] = job.final_result.to_dict()
    return view


def create_app(engine: Engine) -> FastAPI:
    app = FastAPI(title="EOL Checker")

    @app.post("/callbacks/scrape")
    def scrape_callback(body: ScrapeCallback):
        try:
            return engine.receiver.receive(body.model_dump())
        except (RecordNotFoundError, UnknownUrlIndexError) as e:
            logger.error(f"Callback rejected: {e}")
            raise HTTPException(status_code=404, detail=str(e))
        except StorageTransientError as e:
            logger.error(f"Callback could not be stored: {e}")
            raise HTTPException(status_code=503, detail=str(e))

    @app.post("/jobs")
    def submit_job(body: CheckRequest):
        if not body.maker.strip() or not body.model.strip():
            raise HTTPException(status_code=400, detail="maker and model are required")
        return engine.submit_check(body.maker.strip(), body.model.strip())

    @app.get("/jobs/{job_id}")
    def job_status(job_id: str):
        job = engine.controller.get(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
        return job_view(job)

    @app.post("/jobs/{job_id}/analyze")
    def analyze_job(job_id: str):
        job = engine.controller.get(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
        if job.status != FETCHING or not job.all_urls_complete():
            logger.info(f"Analyze request for job {job_id} ignored (status {job.status})")
            return {"triggered": False, "status": job.status}
        engine.pipeline.trigger_analysis(job_id)
        return {"triggered": True, "status": job.status}

    @app.get("/auto-check/state")
    def get_auto_check_state():
        return engine.scheduler.get_state().to_dict()

    @app.post("/auto-check/state")
    def update_auto_check_state(body: AutoCheckUpdate):
        fields = {
            STATE_FIELDS[name]: value
            for name, value in body.model_dump().items()
            if value is not None
        }
        if not fields:
            raise HTTPException(status_code=400, detail="No state fields given")
        state = engine.scheduler.update_state(**fields)
        return state.to_dict()

    @app.post("/auto-check/start")
    def start_auto_check():
        return engine.scheduler.start(triggered_by="api")

    @app.get("/tasks/dead-letters")
    def dead_letters():
        return [
            {
                "id": task.id,
                "kind": task.kind,
                "payload": task.payload,
                "attempts": task.attempts,
                "lastError": task.last_error,
            }
            for task in engine.queue.dead_letters()
        ]

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app
