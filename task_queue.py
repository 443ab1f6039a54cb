"""
task_queue.py — Durable at-least-once task queue on SQLite.
Replaces fire-and-forget self-invocation: every "do the next step" edge of the
pipeline is a row here, claimed and acknowledged by the worker.
"""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Optional

from config import DB_PATH, QUEUE
from database import connect, translate_errors
from models import Task
from monitoring import get_logger

logger = get_logger("task_queue")

# Task kinds
DISPATCH_URL = "dispatch_url"
ANALYZE_JOB = "analyze_job"
AUTO_CHECK = "auto_check"
CLEANUP = "cleanup"

# Task status values
QUEUED = "queued"
RUNNING = "running"
DONE = "done"
DEAD = "dead"


def _iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat()


class TaskQueue:
    def __init__(self, db_path: Path = DB_PATH):
        self.db_path = Path(db_path)
        self.init_db()

    def init_db(self):
        conn = connect(self.db_path)
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    kind TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'queued',
                    attempts INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL DEFAULT 3,
                    run_after TEXT NOT NULL,
                    dedup_key TEXT,
                    last_error TEXT,
                    claimed_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_tasks_status_run_after ON tasks(status, run_after);
                CREATE INDEX IF NOT EXISTS idx_tasks_dedup ON tasks(dedup_key);
            """)
            conn.commit()
        finally:
            conn.close()

    def enqueue(
        self,
        kind: str,
        payload: dict,
        dedup_key: Optional[str] = None,
        delay: float = 0,
        max_attempts: Optional[int] = None,
    ) -> Optional[int]:
        """
        Add a task. Returns its ID, or None when a queued or running task
        with the same dedup_key already exists.
        """
        now = datetime.now(timezone.utc)
        run_after = now + timedelta(seconds=delay)
        attempts_allowed = max_attempts if max_attempts is not None else QUEUE["max_attempts"]

        with translate_errors(f"enqueue({kind})"):
            conn = connect(self.db_path)
            try:
                conn.execute("BEGIN IMMEDIATE")
                if dedup_key:
                    existing = conn.execute(
                        "SELECT id FROM tasks WHERE dedup_key = ? AND status IN (?, ?)",
                        (dedup_key, QUEUED, RUNNING)
                    ).fetchone()
                    if existing:
                        conn.rollback()
                        logger.debug(f"Skipped duplicate {kind} task ({dedup_key})")
                        return None

                cursor = conn.execute(
                    """INSERT INTO tasks (kind, payload, status, attempts, max_attempts,
                                          run_after, dedup_key, created_at, updated_at)
                       VALUES (?, ?, ?, 0, ?, ?, ?, ?, ?)""",
                    (kind, json.dumps(payload), QUEUED, attempts_allowed,
                     _iso(run_after), dedup_key, _iso(now), _iso(now))
                )
                conn.commit()
                task_id = cursor.lastrowid
            finally:
                conn.close()

        logger.info(f"Enqueued {kind} task #{task_id}" + (f" ({dedup_key})" if dedup_key else ""))
        return task_id

    def claim(self, kinds: Iterable[str], now: Optional[datetime] = None) -> Optional[Task]:
        """Atomically take the oldest due task of the given kinds."""
        kinds = list(kinds)
        moment = _iso(now or datetime.now(timezone.utc))
        placeholders = ", ".join("?" for _ in kinds)

        with translate_errors("claim"):
            conn = connect(self.db_path)
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    f"""SELECT * FROM tasks
                        WHERE status = ? AND run_after <= ? AND kind IN ({placeholders})
                        ORDER BY run_after ASC, id ASC
                        LIMIT 1""",
                    (QUEUED, moment, *kinds)
                ).fetchone()
                if not row:
                    conn.rollback()
                    return None

                conn.execute(
                    """UPDATE tasks SET status = ?, attempts = attempts + 1,
                                        claimed_at = ?, updated_at = ?
                       WHERE id = ?""",
                    (RUNNING, moment, moment, row["id"])
                )
                conn.commit()
                claimed = conn.execute("SELECT * FROM tasks WHERE id = ?", (row["id"],)).fetchone()
            finally:
                conn.close()

        task = _row_to_task(claimed)
        logger.debug(f"Claimed {task.kind} task #{task.id} (attempt {task.attempts}/{task.max_attempts})")
        return task

    def ack(self, task_id: int):
        self._set_status(task_id, DONE)

    def fail(self, task_id: int, error: str, retry_delay: Optional[float] = None):
        """Requeue a failed task, or dead-letter it once its attempts are used up."""
        delay = retry_delay if retry_delay is not None else QUEUE["retry_delay_seconds"]
        now = datetime.now(timezone.utc)

        with translate_errors(f"fail(#{task_id})"):
            conn = connect(self.db_path)
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
                if not row:
                    conn.rollback()
                    return
                if row["attempts"] >= row["max_attempts"]:
                    new_status = DEAD
                    run_after = row["run_after"]
                else:
                    new_status = QUEUED
                    run_after = _iso(now + timedelta(seconds=delay))
                conn.execute(
                    """UPDATE tasks SET status = ?, run_after = ?, last_error = ?, updated_at = ?
                       WHERE id = ?""",
                    (new_status, run_after, error[:2000], _iso(now), task_id)
                )
                conn.commit()
            finally:
                conn.close()

        if new_status == DEAD:
            logger.error(
                f"{row['kind']} task #{task_id} dead-lettered after "
                f"{row['attempts']} attempts: {error}"
            )
        else:
            logger.warning(f"{row['kind']} task #{task_id} failed, retrying in {delay}s: {error}")

    def get(self, task_id: int) -> Optional[Task]:
        conn = connect(self.db_path)
        try:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        finally:
            conn.close()
        return _row_to_task(row) if row else None

    def pending(self, kind: Optional[str] = None) -> list[Task]:
        """Queued tasks, oldest first."""
        conn = connect(self.db_path)
        try:
            if kind:
                rows = conn.execute(
                    "SELECT * FROM tasks WHERE status = ? AND kind = ? ORDER BY run_after, id",
                    (QUEUED, kind)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM tasks WHERE status = ? ORDER BY run_after, id", (QUEUED,)
                ).fetchall()
        finally:
            conn.close()
        return [_row_to_task(row) for row in rows]

    def dead_letters(self) -> list[Task]:
        conn = connect(self.db_path)
        try:
            rows = conn.execute(
                "SELECT * FROM tasks WHERE status = ? ORDER BY updated_at DESC", (DEAD,)
            ).fetchall()
        finally:
            conn.close()
        return [_row_to_task(row) for row in rows]

    def release_stale(self, older_than_seconds: Optional[float] = None) -> int:
        """Put tasks left running by a crashed worker back in the queue."""
        age = older_than_seconds if older_than_seconds is not None else QUEUE["stale_after_seconds"]
        now = datetime.now(timezone.utc)
        cutoff = _iso(now - timedelta(seconds=age))

        conn = connect(self.db_path)
        try:
            cursor = conn.execute(
                """UPDATE tasks SET status = ?, updated_at = ?
                   WHERE status = ? AND claimed_at <= ?""",
                (QUEUED, _iso(now), RUNNING, cutoff)
            )
            conn.commit()
            released = cursor.rowcount
        finally:
            conn.close()

        if released:
            logger.warning(f"Released {released} stale running tasks")
        return released

    def _set_status(self, task_id: int, status: str):
        now = _iso(datetime.now(timezone.utc))
        with translate_errors(f"set status #{task_id}"):
            conn = connect(self.db_path)
            try:
                conn.execute(
                    "UPDATE tasks SET status = ?, updated_at = ? WHERE id = ?",
                    (status, now, task_id)
                )
                conn.commit()
            finally:
                conn.close()


def _row_to_task(row) -> Task:
    return Task(
        id=row["id"],
        kind=row["kind"],
        payload=json.loads(row["payload"]),
        status=row["status"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        run_after=row["run_after"],
        dedup_key=row["dedup_key"],
        last_error=row["last_error"],
    )
