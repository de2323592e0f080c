"""
Per-user settings using SQLite.

Settings are key/value pairs scoped to a user, with values held as JSON.
Only keys declared in SETTINGS_REGISTRY may be written. Reads of a key
that was never set report found=False so callers can tell "off" from
"never configured".
"""

import json
import logging
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from .errors import ConfigUnavailable
from .types import utc_now

logger = logging.getLogger(__name__)

AI_ENABLED = "ai.enabled"
AI_API_KEY = "ai.api_key"
AI_BASE_URL = "ai.base_url"
AI_EMBEDDING_MODEL = "ai.embedding_model"
AI_EMBEDDING_PROVIDER = "ai.embedding_provider"
AI_VECTORS_BUILT_AT = "ai.vectors_built_at"


@dataclass(frozen=True)
class SettingMeta:
    """Declared type and default of a setting."""
    type: str  # "string" or "bool"
    default: Any
    sensitive: bool = False


SETTINGS_REGISTRY: dict[str, SettingMeta] = {
    "api.token": SettingMeta("string", "", sensitive=True),
    "api.enabled": SettingMeta("bool", False),
    AI_ENABLED: SettingMeta("bool", False),
    AI_API_KEY: SettingMeta("string", "", sensitive=True),
    AI_BASE_URL: SettingMeta("string", ""),
    "ai.chat_model": SettingMeta("string", ""),
    AI_EMBEDDING_MODEL: SettingMeta("string", ""),
    AI_EMBEDDING_PROVIDER: SettingMeta("string", "openai"),
    AI_VECTORS_BUILT_AT: SettingMeta("string", ""),
}


def mask_value(value: str) -> str:
    """Mask a secret for display, keeping the first and last four characters."""
    if len(value) > 8:
        return value[:4] + "***" + value[-4:]
    return "***" if value else ""


def parse_setting(key: str, raw: str) -> Any:
    """
    Convert a command-line string to the declared type of a setting.

    Raises:
        ValueError: Unknown key or unparseable bool
    """
    meta = SETTINGS_REGISTRY.get(key)
    if meta is None:
        raise ValueError(f"Unknown setting: {key!r}")
    if meta.type == "bool":
        lowered = raw.strip().lower()
        if lowered in ("true", "1", "yes", "on"):
            return True
        if lowered in ("false", "0", "no", "off"):
            return False
        raise ValueError(f"Setting {key!r} expects true or false, got {raw!r}")
    return raw


class SettingsStore:
    """SQLite-backed per-user key/value settings."""

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
            raise ConfigUnavailable(f"Cannot open settings store {store_path}: {e}") from e

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS settings (
                user_id TEXT NOT NULL,
                key TEXT NOT NULL,
                value_json TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (user_id, key)
            )
        """)
        self._conn.commit()

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get(self, user_id: str, key: str) -> tuple[Any, bool]:
        """
        Read a raw setting value.

        Returns:
            (value, found). value is None when not found.

        Raises:
            ConfigUnavailable: If the database cannot be read
        """
        try:
            with self._lock:
                row = self._connection().execute(
                    "SELECT value_json FROM settings WHERE user_id = ? AND key = ?",
                    (user_id, key),
                ).fetchone()
        except sqlite3.Error as e:
            raise ConfigUnavailable(f"Settings read failed: {e}") from e
        if row is None:
            return None, False
        try:
            return json.loads(row[0]), True
        except json.JSONDecodeError:
            logger.warning("Unreadable value for setting %s of user %s", key, user_id)
            return None, True

    def get_bool(self, user_id: str, key: str) -> tuple[bool, bool]:
        """
        Read a setting as a bool.

        Numbers are true when non-zero and strings only when equal to
        "true". Anything else reads as false.
        """
        value, found = self.get(user_id, key)
        if not found:
            return False, False
        if isinstance(value, bool):
            return value, True
        if isinstance(value, (int, float)):
            return value != 0, True
        if isinstance(value, str):
            return value == "true", True
        return False, True

    def get_string(self, user_id: str, key: str) -> tuple[str, bool]:
        """Read a setting as a string ("" when unset or null)."""
        value, found = self.get(user_id, key)
        if not found or value is None:
            return "", found
        if isinstance(value, str):
            return value, True
        return json.dumps(value), True

    def get_batch(self, user_id: str, *, mask: bool = True) -> dict[str, Any]:
        """All registered settings for a user, defaults filled in."""
        try:
            with self._lock:
                rows = self._connection().execute(
                    "SELECT key, value_json FROM settings WHERE user_id = ?",
                    (user_id,),
                ).fetchall()
        except sqlite3.Error as e:
            raise ConfigUnavailable(f"Settings read failed: {e}") from e

        stored = {}
        for key, value_json in rows:
            try:
                stored[key] = json.loads(value_json)
            except json.JSONDecodeError:
                continue

        result: dict[str, Any] = {}
        for key, meta in SETTINGS_REGISTRY.items():
            value = stored.get(key, meta.default)
            if mask and meta.sensitive and isinstance(value, str):
                value = mask_value(value)
            result[key] = value
        return result

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def set(self, user_id: str, key: str, value: Any) -> None:
        """
        Store a setting.

        Raises:
            ValueError: If the key is unknown or the value has the wrong type
            ConfigUnavailable: If the database cannot be written
        """
        meta = SETTINGS_REGISTRY.get(key)
        if meta is None:
            raise ValueError(f"Unknown setting: {key!r}")
        if meta.type == "bool" and not isinstance(value, bool):
            raise ValueError(f"Setting {key!r} expects a bool, got {type(value).__name__}")
        if meta.type == "string" and not isinstance(value, str):
            raise ValueError(f"Setting {key!r} expects a string, got {type(value).__name__}")

        try:
            with self._lock:
                conn = self._connection()
                with conn:
                    conn.execute("""
                        INSERT OR REPLACE INTO settings (user_id, key, value_json, updated_at)
                        VALUES (?, ?, ?, ?)
                    """, (user_id, key, json.dumps(value), utc_now()))
        except sqlite3.Error as e:
            raise ConfigUnavailable(f"Settings write failed: {e}") from e

        shown = mask_value(value) if meta.sensitive else value
        logger.debug("Set %s=%r for user %s", key, shown, user_id)

    def delete(self, user_id: str, key: str) -> bool:
        """Remove a setting so it reads as not found again."""
        try:
            with self._lock:
                conn = self._connection()
                with conn:
                    cursor = conn.execute(
                        "DELETE FROM settings WHERE user_id = ? AND key = ?",
                        (user_id, key),
                    )
        except sqlite3.Error as e:
            raise ConfigUnavailable(f"Settings write failed: {e}") from e
        return cursor.rowcount > 0

    def _connection(self) -> sqlite3.Connection:
        """The open connection. Call with _lock held."""
        if self._conn is None:
            raise ConfigUnavailable("Settings store is closed")
        return self._conn

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
