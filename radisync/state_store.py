from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator


CALDAV_SYNC_TOKEN_KEY = "caldav_sync_token"
GOOGLE_SYNC_TOKEN_KEY = "google_sync_token"
GOOGLE_OAUTH_TOKEN_KEY = "google_oauth_token"
GOOGLE_CALENDAR_ID_KEY = "google_calendar_id"

SCHEMA = """
CREATE TABLE IF NOT EXISTS checkpoints (
    name TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    saved_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pass_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    started_at TEXT NOT NULL,
    direction TEXT NOT NULL,
    trigger TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'running',
    message TEXT NOT NULL DEFAULT '',
    duration_ms INTEGER NOT NULL DEFAULT 0,
    deleted INTEGER NOT NULL DEFAULT 0,
    updated INTEGER NOT NULL DEFAULT 0,
    created INTEGER NOT NULL DEFAULT 0,
    error_count INTEGER NOT NULL DEFAULT 0,
    checkpoint_saved INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS pass_errors (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id INTEGER NOT NULL REFERENCES pass_runs(id),
    position INTEGER NOT NULL,
    error TEXT NOT NULL
);
"""

RUN_COLUMNS = (
    "id, started_at, direction, trigger, status, message, duration_ms, "
    "deleted, updated, created, error_count, checkpoint_saved"
)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class StateStore:
    """sqlite file holding sync checkpoints, the OAuth blob and pass history.

    Checkpoint values are opaque strings; callers own their meaning.
    """

    def __init__(self, db_path: str) -> None:
        self.path = Path(db_path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        with self._transaction() as conn:
            conn.executescript(SCHEMA)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = sqlite3.connect(self.path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            try:
                with conn:
                    yield conn
            finally:
                conn.close()

    def get(self, key: str) -> str | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT value FROM checkpoints WHERE name = ?", (key,)).fetchone()
        return None if row is None else str(row["value"])

    def put(self, key: str, value: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO checkpoints(name, value, saved_at) VALUES (?, ?, ?)",
                (key, str(value), _timestamp()),
            )

    def delete(self, key: str) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM checkpoints WHERE name = ?", (key,))

    def start_pass(self, *, direction: str, trigger: str) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO pass_runs(started_at, direction, trigger) VALUES (?, ?, ?)",
                (_timestamp(), direction, trigger),
            )
            return int(cursor.lastrowid)

    def finish_pass(
        self,
        run_id: int,
        *,
        status: str,
        message: str,
        duration_ms: int,
        deleted: int = 0,
        updated: int = 0,
        created: int = 0,
        errors: list[str] | None = None,
        checkpoint_saved: bool = False,
    ) -> None:
        """Close a pass row and attach its per-item errors in order."""
        errors = errors or []
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE pass_runs
                   SET status = ?, message = ?, duration_ms = ?, deleted = ?, updated = ?,
                       created = ?, error_count = ?, checkpoint_saved = ?
                 WHERE id = ?
                """,
                (
                    status,
                    message,
                    int(duration_ms),
                    deleted,
                    updated,
                    created,
                    len(errors),
                    int(checkpoint_saved),
                    run_id,
                ),
            )
            conn.executemany(
                "INSERT INTO pass_errors(run_id, position, error) VALUES (?, ?, ?)",
                [(run_id, position, error) for position, error in enumerate(errors)],
            )

    def recent_passes(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT {RUN_COLUMNS} FROM pass_runs ORDER BY id DESC LIMIT ?",
                (max(1, limit),),
            ).fetchall()
        return [{**dict(row), "checkpoint_saved": bool(row["checkpoint_saved"])} for row in rows]

    def pass_errors(self, run_id: int) -> list[str]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT error FROM pass_errors WHERE run_id = ? ORDER BY position",
                (run_id,),
            ).fetchall()
        return [str(row["error"]) for row in rows]
