"""
Shared pytest fixtures for diaryindex tests.

Provides mock embedding providers so no test talks to a real API.
"""

import hashlib
import threading
import time
from typing import Optional

import pytest

from diaryindex.builder import IndexBuilder
from diaryindex.diary_store import DiaryStore
from diaryindex.settings_store import SettingsStore
from diaryindex.vector_store import VectorStore


class MockEmbeddingProvider:
    """
    Deterministic mock embedding provider for testing.

    Generates consistent embeddings based on text hash. Texts listed in
    fail_on raise; delay slows every call down.
    """

    dimension = 16
    model_name = "mock-model"

    def __init__(self, *, fail_on: tuple[str, ...] = (), delay: float = 0.0):
        self.fail_on = set(fail_on)
        self.delay = delay
        self.calls: list[str] = []
        self.timeouts: list[Optional[float]] = []
        self._lock = threading.Lock()

    @property
    def embed_calls(self) -> int:
        return len(self.calls)

    def embed(self, text: str, *, timeout: Optional[float] = None) -> list[float]:
        """Generate deterministic embedding from text hash."""
        with self._lock:
            self.calls.append(text)
            self.timeouts.append(timeout)
        if self.delay:
            time.sleep(self.delay)
        if text in self.fail_on:
            raise RuntimeError(f"simulated provider failure for {text!r}")
        h = hashlib.md5(text.encode()).hexdigest()
        return [int(h[i:i+2], 16) / 255.0 for i in range(0, 2 * self.dimension, 2)]


class BlockingEmbeddingProvider:
    """Embedding provider whose calls hang until release() is called."""

    model_name = "blocking-model"

    def __init__(self):
        self.started = threading.Event()
        self._release = threading.Event()
        self.calls = 0

    def embed(self, text: str, *, timeout: Optional[float] = None) -> list[float]:
        self.calls += 1
        self.started.set()
        self._release.wait(10)
        return [0.5, 0.5]

    def release(self) -> None:
        self._release.set()


@pytest.fixture
def mock_embedding_provider():
    """Create a fresh MockEmbeddingProvider instance."""
    return MockEmbeddingProvider()


@pytest.fixture
def diary_store(tmp_path):
    store = DiaryStore(tmp_path / "diaries.db")
    yield store
    store.close()


@pytest.fixture
def vector_store(tmp_path):
    store = VectorStore(tmp_path / "vectors.db")
    yield store
    store.close()


@pytest.fixture
def settings_store(tmp_path):
    store = SettingsStore(tmp_path / "settings.db")
    yield store
    store.close()


@pytest.fixture
def builder(diary_store, vector_store, mock_embedding_provider):
    """IndexBuilder over real SQLite stores and the mock provider."""
    b = IndexBuilder(diary_store, vector_store, lambda user_id: mock_embedding_provider)
    yield b
    b.close()
