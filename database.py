"""
database.py — SQLite-backed record store and catalog.
The record store is the single source of truth for jobs and scheduler state;
every pipeline step reads and writes it instead of sharing memory.
"""

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Optional

from config import DB_PATH
from errors import RecordNotFoundError, StorageTransientError
from models import AnalysisResult, CatalogItem, utc_now_iso
from monitoring import get_logger

logger = get_logger("database")

# sqlite3 messages that mean "try again shortly"
_TRANSIENT_MARKERS = ("locked", "busy", "disk i/o error", "unable to open")


def connect(db_path: Path) -> sqlite3.Connection:
    """Open a connection, creating the DB file if needed."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=5.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


@contextmanager
def translate_errors(operation: str):
    """Re-raise transient sqlite failures as StorageTransientError."""
    try:
        yield
    except sqlite3.OperationalError as e:
        message = str(e).lower()
        if any(marker in message for marker in _TRANSIENT_MARKERS):
            raise StorageTransientError(f"{operation}: {e}") from e
        raise


class RecordStore:
    """
    Key/value store of JSON documents.
    Single-key operations are atomic; `update` is a read-modify-write inside
    one IMMEDIATE transaction so concurrent writers to the same key serialize.
    """

    def __init__(self, db_path: Path = DB_PATH):
        self.db_path = Path(db_path)
        self.init_db()

    def init_db(self):
        conn = connect(self.db_path)
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS records (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
            """)
            conn.commit()
        finally:
            conn.close()

    def get(self, key: str) -> Optional[dict]:
        with translate_errors(f"get({key})"):
            conn = connect(self.db_path)
            try:
                row = conn.execute("SELECT value FROM records WHERE key = ?", (key,)).fetchone()
            finally:
                conn.close()
        return json.loads(row["value"]) if row else None

    def set(self, key: str, value: dict):
        with translate_errors(f"set({key})"):
            conn = connect(self.db_path)
            try:
                conn.execute(
                    """INSERT INTO records (key, value, updated_at) VALUES (?, ?, ?)
                       ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                                      updated_at = excluded.updated_at""",
                    (key, json.dumps(value, ensure_ascii=False), utc_now_iso())
                )
                conn.commit()
            finally:
                conn.close()

    def delete(self, key: str) -> bool:
        """Delete a key. Returns False if it was already gone."""
        with translate_errors(f"delete({key})"):
            conn = connect(self.db_path)
            try:
                cursor = conn.execute("DELETE FROM records WHERE key = ?", (key,))
                conn.commit()
                return cursor.rowcount > 0
            finally:
                conn.close()

    def list(self, prefix: str = "") -> list[str]:
        with translate_errors(f"list({prefix})"):
            conn = connect(self.db_path)
            try:
                rows = conn.execute(
                    "SELECT key FROM records WHERE substr(key, 1, ?) = ? ORDER BY key",
                    (len(prefix), prefix)
                ).fetchall()
            finally:
                conn.close()
        return [row["key"] for row in rows]

    def update(
        self,
        key: str,
        mutate: Callable[[dict], Any],
        default: Optional[dict] = None,
    ) -> Any:
        """
        Atomically mutate one record in place and return whatever `mutate` returns.
        Raises RecordNotFoundError when the key is missing and no default is given.
        If `mutate` raises, nothing is written.
        """
        with translate_errors(f"update({key})"):
            conn = connect(self.db_path)
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute("SELECT value FROM records WHERE key = ?", (key,)).fetchone()
                if row:
                    value = json.loads(row["value"])
                elif default is not None:
                    value = json.loads(json.dumps(default))
                else:
                    conn.rollback()
                    raise RecordNotFoundError(key)

                try:
                    result = mutate(value)
                except Exception:
                    conn.rollback()
                    raise

                conn.execute(
                    """INSERT INTO records (key, value, updated_at) VALUES (?, ?, ?)
                       ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                                      updated_at = excluded.updated_at""",
                    (key, json.dumps(value, ensure_ascii=False), utc_now_iso())
                )
                conn.commit()
                return result
            finally:
                conn.close()


class Catalog:
    """Catalog of parts whose lifecycle status is tracked."""

    def __init__(self, db_path: Path = DB_PATH):
        self.db_path = Path(db_path)
        self.init_db()

    def init_db(self):
        conn = connect(self.db_path)
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS catalog_items (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    sap_number TEXT UNIQUE NOT NULL,
                    maker TEXT NOT NULL,
                    model TEXT NOT NULL,
                    status TEXT,
                    status_comment TEXT,
                    successor_model TEXT,
                    successor_comment TEXT,
                    checked_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_catalog_checked_at ON catalog_items(checked_at);
            """)
            conn.commit()
        finally:
            conn.close()

    def upsert_item(self, sap_number: str, maker: str, model: str) -> int:
        """Insert a part or update its maker/model. Returns the row ID."""
        conn = connect(self.db_path)
        try:
            conn.execute(
                """INSERT INTO catalog_items (sap_number, maker, model) VALUES (?, ?, ?)
                   ON CONFLICT(sap_number) DO UPDATE SET maker = excluded.maker,
                                                         model = excluded.model""",
                (sap_number, maker.strip(), model.strip())
            )
            conn.commit()
            row = conn.execute(
                "SELECT id FROM catalog_items WHERE sap_number = ?", (sap_number,)
            ).fetchone()
            return row["id"]
        finally:
            conn.close()

    def get(self, item_id: int) -> Optional[CatalogItem]:
        conn = connect(self.db_path)
        try:
            row = conn.execute("SELECT * FROM catalog_items WHERE id = ?", (item_id,)).fetchone()
        finally:
            conn.close()
        return _row_to_item(row) if row else None

    def list_items(self) -> list[CatalogItem]:
        conn = connect(self.db_path)
        try:
            rows = conn.execute("SELECT * FROM catalog_items ORDER BY id").fetchall()
        finally:
            conn.close()
        return [_row_to_item(row) for row in rows]

    def next_item(self) -> Optional[CatalogItem]:
        """
        Pick the next part to check.
        Never-checked parts come first (in insertion order), then the part
        whose last check is oldest. Parts without maker or model are skipped.
        """
        conn = connect(self.db_path)
        try:
            row = conn.execute(
                """SELECT * FROM catalog_items
                   WHERE maker != '' AND model != ''
                   ORDER BY checked_at IS NOT NULL, checked_at ASC, id ASC
                   LIMIT 1"""
            ).fetchone()
        finally:
            conn.close()
        return _row_to_item(row) if row else None

    def record_result(self, item_id: int, result: AnalysisResult, checked_at: Optional[str] = None):
        """Write a verdict onto a catalog part and stamp the check time."""
        conn = connect(self.db_path)
        try:
            conn.execute(
                """UPDATE catalog_items
                   SET status = ?, status_comment = ?, successor_model = ?,
                       successor_comment = ?, checked_at = ?
                   WHERE id = ?""",
                (
                    result.status or "UNKNOWN",
                    result.explanation,
                    result.successor.model or "",
                    result.successor.explanation,
                    checked_at or utc_now_iso(),
                    item_id,
                )
            )
            conn.commit()
        finally:
            conn.close()
        logger.info(f"Catalog item {item_id} updated: {result.status}")


def _row_to_item(row: sqlite3.Row) -> CatalogItem:
    return CatalogItem(
        id=row["id"],
        sap_number=row["sap_number"],
        maker=row["maker"],
        model=row["model"],
        status=row["status"],
        status_comment=row["status_comment"],
        successor_model=row["successor_model"],
        successor_comment=row["successor_comment"],
        checked_at=row["checked_at"],
    )
