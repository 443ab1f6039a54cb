from datetime import datetime, timedelta, timezone

import pytest

from cleanup import CleanupSweeper, should_delete
from errors import CleanupError
from job_controller import JobController, job_key
from models import ERROR, FETCHING

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
RETENTION = timedelta(minutes=1440)


def finished_job(status="complete", age=timedelta(days=2)):
    return {"jobId": "j", "status": status, "completedAt": (NOW - age).isoformat()}


def test_should_delete():
    assert should_delete(finished_job(), NOW, RETENTION) is True
    assert should_delete(finished_job(status=ERROR), NOW, RETENTION) is True
    assert should_delete(finished_job(age=timedelta(hours=1)), NOW, RETENTION) is False
    assert should_delete(finished_job(status=FETCHING), NOW, RETENTION) is False
    assert should_delete({"jobId": "j", "status": "complete"}, NOW, RETENTION) is False


def test_sweep_deletes_only_expired_terminal_jobs(store):
    store.set(job_key("old"), finished_job())
    store.set(job_key("recent"), finished_job(age=timedelta(minutes=5)))
    store.set(job_key("active"), {"jobId": "active", "status": FETCHING, "completedAt": None})
    store.set("auto-check:state", {"enabled": True})

    sweeper = CleanupSweeper(store, retention_minutes=1440, clock=lambda: NOW)

    assert sweeper.sweep() == 1
    assert store.list("job:") == [job_key("active"), job_key("recent")]
    assert store.get("auto-check:state") is not None


def test_sweep_skips_broken_records(store):
    store.set(job_key("old"), finished_job())
    store.set(job_key("bad"), {"jobId": "bad", "status": "complete", "completedAt": "not a date"})

    sweeper = CleanupSweeper(store, clock=lambda: NOW)

    assert sweeper.sweep() == 1
    assert store.get(job_key("bad")) is not None


def test_sweep_list_failure_raises_cleanup_error(store):
    def broken_list(prefix=""):
        raise RuntimeError("no such table")

    store.list = broken_list
    with pytest.raises(CleanupError):
        CleanupSweeper(store).sweep()


def test_job_creation_sweeps_old_jobs(store):
    store.set(job_key("old"), finished_job(age=timedelta(days=30)))
    controller = JobController(store, sweeper=CleanupSweeper(store))

    job_id = controller.create("SMC", "CDQ2B20")

    assert controller.list_job_ids() == [job_id]
