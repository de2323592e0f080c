"""
Diary entry store using SQLite.

A minimal record layer for diary entries: create/update, delete, and
list by owner. After each durable write it notifies registered
listeners, the way the application's record hooks would. A listener
can never fail the write that triggered it.
"""

import logging
import sqlite3
import threading
import uuid
from pathlib import Path
from typing import Optional, Protocol

from .errors import StorageUnavailable
from .types import DiaryEntry, utc_now

logger = logging.getLogger(__name__)


class EntryListener(Protocol):
    """Receives record-change notifications for diary entries."""

    def on_entry_changed(self, user_id: str) -> object: ...

    def on_entry_deleted(self, user_id: str, entry_id: str) -> object: ...


class DiaryStore:
    """SQLite-backed diary entries, keyed by entry id and owned by a user."""

    def __init__(self, store_path: Path):
        """
        Args:
            store_path: Path to SQLite database file
        """
        self._db_path = store_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._listeners: list[EntryListener] = []
        try:
            self._init_db()
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Cannot open diary store {store_path}: {e}") from e

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS diaries (
                id TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                content TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        # Index for per-owner listing
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_diaries_owner
            ON diaries(owner)
        """)
        self._conn.commit()

    def add_listener(self, listener: EntryListener) -> None:
        """Register a listener for change and delete notifications."""
        self._listeners.append(listener)

    def _notify(self, method: str, *args: str) -> None:
        for listener in self._listeners:
            try:
                getattr(listener, method)(*args)
            except Exception as e:
                logger.warning("Entry listener %s failed: %s", method, e)

    def _row_to_entry(self, row: sqlite3.Row) -> DiaryEntry:
        return DiaryEntry(
            id=row["id"],
            user_id=row["owner"],
            content=row["content"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def upsert(self, user_id: str, content: str, *, id: Optional[str] = None) -> DiaryEntry:
        """
        Create an entry, or replace the content of an existing one.

        Preserves created_at on update. Updates updated_at always.

        Raises:
            ValueError: If id belongs to a different user
            StorageUnavailable: If the write fails
        """
        if not user_id:
            raise ValueError("user_id is required")
        entry_id = id or uuid.uuid4().hex
        now = utc_now()
        try:
            with self._lock:
                conn = self._connection()
                with conn:
                    existing = conn.execute(
                        "SELECT owner, created_at FROM diaries WHERE id = ?", (entry_id,)
                    ).fetchone()
                    if existing and existing["owner"] != user_id:
                        raise ValueError(f"Entry {entry_id} belongs to another user")
                    created_at = existing["created_at"] if existing else now
                    conn.execute("""
                        INSERT OR REPLACE INTO diaries (id, owner, content, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?)
                    """, (entry_id, user_id, content, created_at, now))
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Diary write failed: {e}") from e

        self._notify("on_entry_changed", user_id)
        return DiaryEntry(
            id=entry_id,
            user_id=user_id,
            content=content,
            created_at=created_at,
            updated_at=now,
        )

    def delete(self, user_id: str, id: str) -> bool:
        """
        Delete an entry owned by user_id.

        Returns:
            True if the entry existed and was deleted
        """
        try:
            with self._lock:
                conn = self._connection()
                with conn:
                    cursor = conn.execute(
                        "DELETE FROM diaries WHERE id = ? AND owner = ?", (id, user_id)
                    )
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Diary delete failed: {e}") from e

        deleted = cursor.rowcount > 0
        if deleted:
            self._notify("on_entry_deleted", user_id, id)
        return deleted

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get(self, id: str) -> Optional[DiaryEntry]:
        """Get an entry by id."""
        try:
            with self._lock:
                row = self._connection().execute(
                    "SELECT * FROM diaries WHERE id = ?", (id,)
                ).fetchone()
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Diary read failed: {e}") from e
        return self._row_to_entry(row) if row else None

    def list_entries(self, user_id: str) -> list[DiaryEntry]:
        """All entries owned by a user, ordered by id."""
        try:
            with self._lock:
                rows = self._connection().execute(
                    "SELECT * FROM diaries WHERE owner = ? ORDER BY id", (user_id,)
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Diary listing failed: {e}") from e
        return [self._row_to_entry(r) for r in rows]

    def _connection(self) -> sqlite3.Connection:
        """The open connection. Call with _lock held."""
        if self._conn is None:
            raise StorageUnavailable("Diary store is closed")
        return self._conn

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
