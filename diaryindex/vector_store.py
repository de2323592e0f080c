"""
Vector store using SQLite.

Holds one VectorRecord per (user_id, entry_id). Vectors are stored as
JSON arrays. This store is the only writer of vector records; the index
builder reads and writes through it.

Every write is a single statement inside its own transaction, so a
reader never sees a half-written vector. SQLite errors surface as
StorageUnavailable and every operation may be retried.
"""

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Optional

from .errors import StorageUnavailable
from .types import VectorRecord

logger = logging.getLogger(__name__)


class VectorStore:
    """
    SQLite-backed per-user table of embedding records.

    Safe for concurrent use from multiple threads: one connection,
    serialised by a lock.
    """

    def __init__(self, store_path: Path):
        """
        Args:
            store_path: Path to SQLite database file
        """
        self._db_path = store_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        try:
            self._init_db()
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Cannot open vector store {store_path}: {e}") from e

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row

        # WAL lets readers in other processes see a consistent snapshot
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS vectors (
                user_id TEXT NOT NULL,
                entry_id TEXT NOT NULL,
                content_hash TEXT NOT NULL,
                vector_json TEXT NOT NULL,
                model TEXT NOT NULL DEFAULT '',
                updated_at TEXT NOT NULL,
                PRIMARY KEY (user_id, entry_id)
            )
        """)
        self._conn.commit()

    def _row_to_record(self, row: sqlite3.Row) -> VectorRecord:
        return VectorRecord(
            user_id=row["user_id"],
            entry_id=row["entry_id"],
            content_hash=row["content_hash"],
            vector=json.loads(row["vector_json"]),
            updated_at=row["updated_at"],
            model=row["model"],
        )

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get(self, user_id: str, entry_id: str) -> Optional[VectorRecord]:
        """Get the record for one entry, or None."""
        try:
            with self._lock:
                row = self._connection().execute("""
                    SELECT * FROM vectors WHERE user_id = ? AND entry_id = ?
                """, (user_id, entry_id)).fetchone()
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Vector lookup failed: {e}") from e
        return self._row_to_record(row) if row else None

    def list_by_user(self, user_id: str) -> list[VectorRecord]:
        """All records for a user, ordered by entry id."""
        try:
            with self._lock:
                rows = self._connection().execute("""
                    SELECT * FROM vectors WHERE user_id = ? ORDER BY entry_id
                """, (user_id,)).fetchall()
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Vector listing failed: {e}") from e
        return [self._row_to_record(r) for r in rows]

    def count(self, user_id: Optional[str] = None) -> int:
        """Number of records, for one user or overall."""
        try:
            with self._lock:
                if user_id is None:
                    row = self._connection().execute("SELECT COUNT(*) FROM vectors").fetchone()
                else:
                    row = self._connection().execute(
                        "SELECT COUNT(*) FROM vectors WHERE user_id = ?", (user_id,)
                    ).fetchone()
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Vector count failed: {e}") from e
        return row[0]

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def upsert(self, record: VectorRecord) -> None:
        """Insert or replace the record for (user_id, entry_id)."""
        vector_json = json.dumps(record.vector)
        try:
            with self._lock:
                conn = self._connection()
                with conn:
                    conn.execute("""
                        INSERT OR REPLACE INTO vectors
                        (user_id, entry_id, content_hash, vector_json, model, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                    """, (
                        record.user_id, record.entry_id, record.content_hash,
                        vector_json, record.model, record.updated_at,
                    ))
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Vector upsert failed: {e}") from e

    def delete(self, user_id: str, entry_id: str) -> bool:
        """
        Remove the record for an entry if present.

        Returns:
            True if a record was deleted, False if there was none
        """
        try:
            with self._lock:
                conn = self._connection()
                with conn:
                    cursor = conn.execute("""
                        DELETE FROM vectors WHERE user_id = ? AND entry_id = ?
                    """, (user_id, entry_id))
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Vector delete failed: {e}") from e
        return cursor.rowcount > 0

    def delete_user(self, user_id: str) -> int:
        """Remove every record for a user. Returns the number removed."""
        try:
            with self._lock:
                conn = self._connection()
                with conn:
                    cursor = conn.execute(
                        "DELETE FROM vectors WHERE user_id = ?", (user_id,)
                    )
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Vector delete failed: {e}") from e
        logger.debug("Deleted %d vectors for user %s", cursor.rowcount, user_id)
        return cursor.rowcount

    def _connection(self) -> sqlite3.Connection:
        """The open connection. Call with _lock held."""
        if self._conn is None:
            raise StorageUnavailable("Vector store is closed")
        return self._conn

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
