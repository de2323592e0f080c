"""
Storage backend factory.

Creates the three local SQLite stores of a diaryindex store directory.
"""

from typing import NamedTuple

from .config import StoreConfig
from .diary_store import DiaryStore
from .settings_store import SettingsStore
from .vector_store import VectorStore


class StoreBundle(NamedTuple):
    """Collection of storage backends returned by the factory."""
    diary_store: DiaryStore
    vector_store: VectorStore
    settings_store: SettingsStore


def create_stores(config: StoreConfig) -> StoreBundle:
    """Open (creating if needed) the local stores under config.path."""
    store_path = config.path
    return StoreBundle(
        diary_store=DiaryStore(store_path / "diaries.db"),
        vector_store=VectorStore(store_path / "vectors.db"),
        settings_store=SettingsStore(store_path / "settings.db"),
    )
