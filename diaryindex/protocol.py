"""
Protocol definitions for the collaborators of the index builder and scheduler.

The local SQLite stores implement these; an application embedding
diaryindex can supply its own record layer or settings service instead.
"""

from typing import Any, Optional, Protocol, runtime_checkable

from .types import DiaryEntry, VectorRecord


@runtime_checkable
class EntrySourceProtocol(Protocol):
    """Read access to a user's diary entries."""

    def list_entries(self, user_id: str) -> list[DiaryEntry]: ...


@runtime_checkable
class VectorStoreProtocol(Protocol):
    """
    Durable per-user storage of VectorRecord.

    Implementations must make each per-key write atomic and be safe for
    concurrent calls across users. Failures raise StorageUnavailable.
    """

    def get(self, user_id: str, entry_id: str) -> Optional[VectorRecord]: ...

    def upsert(self, record: VectorRecord) -> None: ...

    def delete(self, user_id: str, entry_id: str) -> bool: ...

    def delete_user(self, user_id: str) -> int: ...

    def list_by_user(self, user_id: str) -> list[VectorRecord]: ...


@runtime_checkable
class SettingsProtocol(Protocol):
    """
    Read-only per-user settings, as seen by the scheduler.

    Failures raise ConfigUnavailable.
    """

    def get(self, user_id: str, key: str) -> tuple[Any, bool]: ...

    def get_bool(self, user_id: str, key: str) -> tuple[bool, bool]: ...

    def get_string(self, user_id: str, key: str) -> tuple[str, bool]: ...
