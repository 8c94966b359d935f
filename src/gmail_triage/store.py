"""SQLite-backed durable key-value store for JSON records."""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from .constants import STORE_DB_PATH
from .errors import StoreError

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS objects (
    key TEXT PRIMARY KEY,
    value_json TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class ObjectStore:
    """Persistent JSON object store keyed by string.

    One connection is shared between threads; every access goes through an
    re-entrant lock so callers can group a read and a write with
    :meth:`transaction`.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = Path(db_path or STORE_DB_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._create_tables()

    def _create_tables(self) -> None:
        with self._lock:
            self._conn.executescript(_CREATE_TABLES_SQL)

    # --- public API ---

    @contextmanager
    def transaction(self) -> Iterator[ObjectStore]:
        """Hold the store lock and commit (or roll back) on exit."""
        with self._lock:
            with self._conn:
                yield self

    def get(self, key: str) -> dict | None:
        """Return the record stored under key, or None."""
        with self._lock:
            row = self._conn.execute(
                "SELECT value_json FROM objects WHERE key = ?", (key,)
            ).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row["value_json"])
        except json.JSONDecodeError as exc:
            raise StoreError(f"Corrupt record under {key!r}: {exc}") from exc

    def put(self, key: str, value: dict) -> None:
        """Insert or overwrite the record under key."""
        payload = json.dumps(value)
        now = datetime.now(timezone.utc).isoformat()
        with self.transaction():
            self._conn.execute(
                "INSERT INTO objects (key, value_json, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json, "
                "updated_at = excluded.updated_at",
                (key, payload, now),
            )

    def delete(self, key: str) -> bool:
        """Delete the record under key. Returns True if something was removed."""
        with self.transaction():
            cursor = self._conn.execute("DELETE FROM objects WHERE key = ?", (key,))
        return cursor.rowcount > 0

    def keys(self, prefix: str = "") -> list[str]:
        """Return all keys starting with prefix, sorted."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT key FROM objects WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
                (_escape_like(prefix) + "%",),
            ).fetchall()
        return [r["key"] for r in rows]

    def get_info(self) -> dict:
        """Return store statistics."""
        file_size = self.db_path.stat().st_size if self.db_path.exists() else 0
        with self._lock:
            count = self._conn.execute("SELECT COUNT(*) AS c FROM objects").fetchone()["c"]
        return {"db_file_size": file_size, "record_count": count}

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    # --- context manager ---

    def __enter__(self) -> ObjectStore:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        self.close()


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
