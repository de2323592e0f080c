"""
Core API for diaryindex.

DiaryIndex opens a store directory and wires its parts together: diary
writes notify the build scheduler, which keeps each user's vectors in
step with their entries in the background.
"""

import logging
from pathlib import Path
from typing import Any, Optional

from .backend import create_stores
from .builder import EmbeddingResolver, IndexBuilder
from .config import get_default_store_path, load_or_create_config
from .errors import AIDisabled
from .logging_config import configure_ops_log
from .providers.embeddings import UserEmbeddingResolver
from .scheduler import BuildScheduler
from .settings_store import AI_ENABLED, AI_VECTORS_BUILT_AT
from .types import BuildResult, DiaryEntry, VectorStats, utc_now

logger = logging.getLogger(__name__)


class DiaryIndex:
    """
    A diary store with an incrementally maintained embedding index.

    Args:
        store_path: Store directory (default: DIARYINDEX_STORE_PATH or ~/.diaryindex)
        embedding_for_user: Override provider resolution (default: from
            each user's AI settings)
        ops_log: Write the rotating operations log into the store directory
    """

    def __init__(
        self,
        store_path: Optional[Path] = None,
        *,
        embedding_for_user: Optional[EmbeddingResolver] = None,
        ops_log: bool = True,
    ):
        self._store_path = Path(store_path) if store_path else get_default_store_path()
        self._config = load_or_create_config(self._store_path)
        self._ops_handler = configure_ops_log(self._store_path) if ops_log else None

        stores = create_stores(self._config)
        self._diaries = stores.diary_store
        self._vectors = stores.vector_store
        self._settings = stores.settings_store

        self._resolver: Optional[UserEmbeddingResolver] = None
        if embedding_for_user is None:
            self._resolver = UserEmbeddingResolver(
                self._settings,
                request_timeout=self._config.embedding.request_timeout,
            )
            embedding_for_user = self._resolver

        self._builder = IndexBuilder(
            self._diaries,
            self._vectors,
            embedding_for_user,
        )
        self._scheduler = BuildScheduler(
            self._builder,
            self._settings,
            timeout=self._config.build.timeout_seconds,
            max_workers=self._config.build.max_workers,
        )
        self._diaries.add_listener(self._scheduler)
        self._closed = False
        logger.debug("Opened diary index at %s", self._store_path)

    @property
    def store_path(self) -> Path:
        return self._store_path

    @property
    def config(self):
        return self._config

    @property
    def scheduler(self) -> BuildScheduler:
        return self._scheduler

    @property
    def vectors(self):
        return self._vectors

    # -------------------------------------------------------------------------
    # Diary entries
    # -------------------------------------------------------------------------

    def put_entry(self, user_id: str, content: str, *, id: Optional[str] = None) -> DiaryEntry:
        """Create or update an entry. Schedules a background build if AI is enabled."""
        return self._diaries.upsert(user_id, content, id=id)

    def delete_entry(self, user_id: str, id: str) -> bool:
        """Delete an entry and its vector."""
        return self._diaries.delete(user_id, id)

    def get_entry(self, id: str) -> Optional[DiaryEntry]:
        return self._diaries.get(id)

    def list_entries(self, user_id: str) -> list[DiaryEntry]:
        return self._diaries.list_entries(user_id)

    # -------------------------------------------------------------------------
    # Vector index
    # -------------------------------------------------------------------------

    def build(self, user_id: str, *, full: bool = False) -> BuildResult:
        """
        Build the user's vectors now, in the calling thread.

        Args:
            user_id: Whose entries to index
            full: Discard all stored vectors and embed everything again

        Raises:
            AIDisabled: If ai.enabled is not true for the user
            BuildInProgress: If a build for the user is already running
            ProviderNotConfigured: If the user's embedding settings are incomplete
            StorageUnavailable: If a store operation fails
        """
        enabled, found = self._settings.get_bool(user_id, AI_ENABLED)
        if not (found and enabled):
            raise AIDisabled("AI features are not enabled")
        result = self._scheduler.build_now(user_id, full=full)
        self._settings.set(user_id, AI_VECTORS_BUILT_AT, utc_now())
        return result

    def stats(self, user_id: str) -> VectorStats:
        """How the user's stored vectors compare with their entries."""
        return self._builder.stats(user_id)

    # -------------------------------------------------------------------------
    # Settings
    # -------------------------------------------------------------------------

    def get_setting(self, user_id: str, key: str) -> tuple[Any, bool]:
        return self._settings.get(user_id, key)

    def set_setting(self, user_id: str, key: str, value: Any) -> None:
        self._settings.set(user_id, key, value)

    def settings(self, user_id: str, *, mask: bool = True) -> dict[str, Any]:
        return self._settings.get_batch(user_id, mask=mask)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self, *, wait: bool = True) -> None:
        """Wait for background builds (unless wait=False), then close the stores."""
        if self._closed:
            return
        self._closed = True
        self._scheduler.shutdown(wait=wait, cancel_running=not wait)
        self._builder.close()
        if self._resolver is not None:
            self._resolver.close()
        self._diaries.close()
        self._vectors.close()
        self._settings.close()
        if self._ops_handler is not None:
            logging.getLogger("diaryindex").removeHandler(self._ops_handler)
            self._ops_handler.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
