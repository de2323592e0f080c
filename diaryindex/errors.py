"""
Error types for diaryindex, plus error logging for the CLI.

Per-entry failures (EmbeddingFailed, Cancelled) are collected into a
BuildResult and never abort a build pass. Pass-level failures
(StorageUnavailable, ProviderNotConfigured) abort the pass and are
reported by whoever launched it.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class DiaryIndexError(Exception):
    """Base class for all diaryindex errors."""


class ConfigUnavailable(DiaryIndexError):
    """Per-user settings could not be read."""


class StorageUnavailable(DiaryIndexError):
    """A store operation failed. Safe to retry; no partial write is visible."""


class ProviderNotConfigured(DiaryIndexError):
    """The user's embedding provider settings are missing or invalid."""


class AIDisabled(DiaryIndexError):
    """AI features are not enabled for the user."""


class BuildInProgress(DiaryIndexError):
    """A vector build is already running for the user."""


class EmbeddingFailed(DiaryIndexError):
    """Embedding a single entry failed."""

    def __init__(self, entry_id: str, cause: object):
        self.entry_id = entry_id
        self.cause = cause
        super().__init__(f"entry {entry_id}: {cause}")


class Cancelled(DiaryIndexError):
    """The build deadline passed (or the build was cancelled) before an entry finished."""

    def __init__(self, entry_id: Optional[str] = None, reason: str = "deadline exceeded"):
        self.entry_id = entry_id
        self.reason = reason
        if entry_id:
            super().__init__(f"entry {entry_id}: cancelled ({reason})")
        else:
            super().__init__(f"cancelled ({reason})")


class EmbeddingAPIError(RuntimeError):
    """An embedding HTTP API returned an error or an unusable response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


def _error_log_path() -> Path:
    """Resolve error log path, respecting DIARYINDEX_STORE_PATH."""
    store = os.environ.get("DIARYINDEX_STORE_PATH")
    if store:
        return Path(store) / "diaryindex-errors.log"
    return Path.home() / ".diaryindex" / "diaryindex-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Can't write error log; the user still sees the message
    return log_path
