"""
diaryindex

Incremental semantic-embedding index for diary entries.

Quick Start:
    from diaryindex import DiaryIndex

    with DiaryIndex() as index:  # uses ~/.diaryindex/
        index.set_setting("u1", "ai.enabled", True)
        index.put_entry("u1", "Walked by the river today.")
        print(index.stats("u1"))

CLI Usage:
    diaryindex put u1 "Walked by the river today."
    diaryindex build u1
    diaryindex stats u1 --json

Environment Variables:
    DIARYINDEX_STORE_PATH  - Override default store location
    DIARYINDEX_VERBOSE     - Set to 1 for debug logging in the CLI
    OLLAMA_HOST            - Ollama URL for the ollama embedding provider

Creating or updating an entry schedules a background build for its
owner (when that user has ai.enabled); unchanged entries are never
re-embedded.
"""

from .api import DiaryIndex
from .builder import IndexBuilder
from .context import BuildContext
from .errors import (
    AIDisabled,
    BuildInProgress,
    Cancelled,
    ConfigUnavailable,
    DiaryIndexError,
    EmbeddingAPIError,
    EmbeddingFailed,
    ProviderNotConfigured,
    StorageUnavailable,
)
from .scheduler import BuildScheduler, BuildSlots
from .types import BuildResult, DiaryEntry, EntryFailure, VectorRecord, VectorStats, content_hash
from .vector_store import VectorStore

__version__ = "0.1.0"
__all__ = [
    "DiaryIndex",
    "IndexBuilder",
    "BuildScheduler",
    "BuildSlots",
    "BuildContext",
    "VectorStore",
    "DiaryEntry",
    "VectorRecord",
    "BuildResult",
    "EntryFailure",
    "VectorStats",
    "content_hash",
    "DiaryIndexError",
    "ConfigUnavailable",
    "StorageUnavailable",
    "EmbeddingFailed",
    "Cancelled",
    "ProviderNotConfigured",
    "AIDisabled",
    "BuildInProgress",
    "EmbeddingAPIError",
]
