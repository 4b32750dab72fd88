"""SQLite-backed substitute for DynamoDB-style record storage."""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any, Dict, Optional, Protocol


class VersionConflictError(Exception):
    """Raised when a conditional write finds a different record version."""


class RecordStore(Protocol):
    """Operations shared by the SQLite and DynamoDB record stores."""

    def put_item(
        self, item: Dict[str, Any], *, expected_version: Optional[int] = None
    ) -> None: ...

    def get_item(
        self, *, partition_key: str, sort_key: str
    ) -> Optional[Dict[str, Any]]: ...

    def list_items_with_prefix(
        self, *, partition_key: str, sort_key_prefix: str
    ) -> list[Dict[str, Any]]: ...


class SQLiteStore:
    """Key-value store using a table keyed by (pk, sk) with an optional version guard."""

    def __init__(self, db_path: str) -> None:
        self._db_path = Path(db_path)
        if self._db_path.parent and not self._db_path.parent.exists():
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv_records (
                    pk TEXT NOT NULL,
                    sk TEXT NOT NULL,
                    data TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (pk, sk)
                )
                """
            )

    def put_item(
        self, item: Dict[str, Any], *, expected_version: Optional[int] = None
    ) -> None:
        """Upsert ``item``.

        With ``expected_version`` the write only succeeds when the stored
        record carries that version (``0`` meaning "must not exist yet"); the
        item's own ``version`` field is persisted alongside.
        """
        pk = item.get("pk")
        sk = item.get("sk")
        if not pk or not sk:
            raise ValueError("Item must include 'pk' and 'sk' keys")

        data_json = json.dumps(item)
        version = int(item.get("version") or 0)
        with self._connect() as conn:
            if expected_version is None:
                conn.execute(
                    """
                    INSERT INTO kv_records (pk, sk, data, version)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(pk, sk) DO UPDATE SET
                        data = excluded.data,
                        version = excluded.version
                    """,
                    (pk, sk, data_json, version),
                )
                return
            if expected_version == 0:
                cursor = conn.execute(
                    """
                    INSERT INTO kv_records (pk, sk, data, version)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(pk, sk) DO NOTHING
                    """,
                    (pk, sk, data_json, version),
                )
            else:
                cursor = conn.execute(
                    """
                    UPDATE kv_records SET data = ?, version = ?
                    WHERE pk = ? AND sk = ? AND version = ?
                    """,
                    (data_json, version, pk, sk, expected_version),
                )
            if cursor.rowcount != 1:
                raise VersionConflictError(
                    f"Record {pk}/{sk} is not at version {expected_version}"
                )

    def get_item(
        self, *, partition_key: str, sort_key: str
    ) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data FROM kv_records WHERE pk = ? AND sk = ?",
                (partition_key, sort_key),
            ).fetchone()
        if not row:
            return None
        return json.loads(row["data"])

    def list_items_with_prefix(
        self, *, partition_key: str, sort_key_prefix: str
    ) -> list[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT data FROM kv_records WHERE pk = ? AND substr(sk, 1, ?) = ? ORDER BY sk",
                (partition_key, len(sort_key_prefix), sort_key_prefix),
            ).fetchall()
        return [json.loads(row["data"]) for row in rows]


__all__ = ["RecordStore", "SQLiteStore", "VersionConflictError"]
