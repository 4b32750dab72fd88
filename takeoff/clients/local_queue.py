"""SQLite continuation queue for running the job driver without SQS."""

from __future__ import annotations

import json
import sqlite3
import time
from pathlib import Path
from typing import Any, Dict, Optional


class SQLiteQueueClient:
    """Hold at most one pending continuation per job, delivered oldest first.

    Re-enqueueing a job that already has a pending message replaces that
    message's payload in place, so it keeps its position in the queue.
    """

    def __init__(self, db_path: str) -> None:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = path
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS continuation_messages (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL UNIQUE,
                    body TEXT NOT NULL,
                    visible_at REAL NOT NULL
                )
                """
            )

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self._db_path, check_same_thread=False, timeout=30)

    def enqueue_continuation(self, payload: Dict[str, Any], *, delay_seconds: float = 0.0) -> str:
        job_id = str(payload.get("job_id") or "")
        body = json.dumps(payload)
        visible_at = time.time() + max(delay_seconds, 0.0)
        with self._connect() as conn:
            existing = conn.execute(
                "SELECT seq FROM continuation_messages WHERE job_id = ?", (job_id,)
            ).fetchone()
            if existing is not None:
                conn.execute(
                    "UPDATE continuation_messages SET body = ?, visible_at = ? WHERE seq = ?",
                    (body, visible_at, existing[0]),
                )
                return str(existing[0])
            cursor = conn.execute(
                "INSERT INTO continuation_messages (job_id, body, visible_at) VALUES (?, ?, ?)",
                (job_id, body, visible_at),
            )
            return str(cursor.lastrowid)

    def dequeue_continuation(self) -> Optional[Dict[str, Any]]:
        """Remove and return the oldest visible message, or ``None``."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT seq, body FROM continuation_messages WHERE visible_at <= ? "
                "ORDER BY seq LIMIT 1",
                (time.time(),),
            ).fetchone()
            if row is None:
                return None
            conn.execute("DELETE FROM continuation_messages WHERE seq = ?", (row[0],))
        return json.loads(row[1])


__all__ = ["SQLiteQueueClient"]
