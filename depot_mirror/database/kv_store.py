"""Generic key-value document store on SQLite."""

from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger()


class KeyValueStore:
    """JSON documents keyed by (collection, key).

    Writes are single-document upserts. The connection is shared across
    threads and guarded by a lock, so the scheduler thread and on-demand
    callers can use one store.

    Args:
        db_path: SQLite database file, or ":memory:"
    """

    def __init__(self, db_path: Path | str):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._init_db()

    @property
    def conn(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            if isinstance(self.db_path, Path):
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._lock, self.conn:
            self.conn.executescript("""
                CREATE TABLE IF NOT EXISTS documents (
                    collection TEXT NOT NULL,
                    key TEXT NOT NULL,
                    body TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (collection, key)
                );

                CREATE INDEX IF NOT EXISTS idx_documents_collection ON documents(collection);
            """)

        logger.debug("kv_store_initialized", path=str(self.db_path))

    def get(self, collection: str, key: str) -> dict[str, Any] | None:
        """Fetch one document.

        Returns:
            The decoded document, or None if absent
        """
        with self._lock:
            row = self.conn.execute(
                "SELECT body FROM documents WHERE collection = ? AND key = ?",
                (collection, key),
            ).fetchone()

        if row is None:
            return None
        return json.loads(row["body"])

    def put(self, collection: str, key: str, document: dict[str, Any]) -> None:
        """Insert or replace one document."""
        body = json.dumps(document, default=str, sort_keys=True)
        with self._lock, self.conn:
            self.conn.execute("""
                INSERT INTO documents (collection, key, body)
                VALUES (?, ?, ?)
                ON CONFLICT(collection, key) DO UPDATE SET
                    body = excluded.body,
                    updated_at = CURRENT_TIMESTAMP
            """, (collection, key, body))

    def delete(self, collection: str, key: str) -> bool:
        """Remove one document.

        Returns:
            True if a document was removed
        """
        with self._lock, self.conn:
            cursor = self.conn.execute(
                "DELETE FROM documents WHERE collection = ? AND key = ?",
                (collection, key),
            )
        return cursor.rowcount > 0

    def keys(self, collection: str) -> list[str]:
        """All keys in a collection, in insertion order."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT key FROM documents WHERE collection = ? ORDER BY rowid",
                (collection,),
            ).fetchall()
        return [row["key"] for row in rows]

    def items(self, collection: str) -> Iterator[tuple[str, dict[str, Any]]]:
        """Iterate (key, document) pairs of a collection."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT key, body FROM documents WHERE collection = ? ORDER BY rowid",
                (collection,),
            ).fetchall()
        for row in rows:
            yield row["key"], json.loads(row["body"])

    def count(self, collection: str) -> int:
        """Number of documents in a collection."""
        with self._lock:
            row = self.conn.execute(
                "SELECT COUNT(*) AS cnt FROM documents WHERE collection = ?",
                (collection,),
            ).fetchone()
        return row["cnt"]

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
