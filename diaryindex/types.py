"""
Data types shared across diaryindex.

DiaryEntry belongs to the diary record layer and is read-only here.
VectorRecord is owned by the VectorStore. BuildResult and VectorStats
are transient reports produced by the IndexBuilder.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .errors import Cancelled, DiaryIndexError


def utc_now() -> str:
    """Current timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


def content_hash(content: str) -> str:
    """SHA256 of entry content, used to detect changes between builds."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


@dataclass
class DiaryEntry:
    """A diary entry as seen by the index."""
    id: str
    user_id: str
    content: str
    updated_at: str
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "content": self.content,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class VectorRecord:
    """
    Stored embedding for one diary entry.

    At most one record exists per (user_id, entry_id). content_hash is the
    hash of the content the vector was computed from.
    """
    user_id: str
    entry_id: str
    content_hash: str
    vector: list[float]
    updated_at: str = field(default_factory=utc_now)
    model: str = ""


@dataclass
class EntryFailure:
    """One entry that could not be embedded during a build pass."""
    entry_id: str
    cause: DiaryIndexError

    @property
    def cancelled(self) -> bool:
        return isinstance(self.cause, Cancelled)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "kind": type(self.cause).__name__,
            "cause": str(self.cause),
        }


@dataclass
class BuildResult:
    """Outcome of one build pass."""
    requested: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0
    removed: int = 0
    errors: list[EntryFailure] = field(default_factory=list)

    def add_failure(self, entry_id: str, cause: DiaryIndexError) -> None:
        self.failed += 1
        self.errors.append(EntryFailure(entry_id, cause))

    @property
    def cancelled(self) -> int:
        """Number of entries that failed because the deadline passed."""
        return sum(1 for e in self.errors if e.cancelled)

    def to_dict(self) -> dict[str, Any]:
        return {
            "requested": self.requested,
            "success": self.success,
            "failed": self.failed,
            "skipped": self.skipped,
            "removed": self.removed,
            "errors": [e.to_dict() for e in self.errors],
        }


@dataclass
class VectorStats:
    """How a user's stored vectors compare with their diary entries."""
    diary_count: int = 0
    indexed_count: int = 0
    outdated_count: int = 0
    pending_count: int = 0
    orphaned_count: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "diary_count": self.diary_count,
            "indexed_count": self.indexed_count,
            "outdated_count": self.outdated_count,
            "pending_count": self.pending_count,
            "orphaned_count": self.orphaned_count,
        }
