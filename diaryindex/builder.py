"""
Incremental vector index builder.

A build pass brings a user's stored vectors in line with their current
diary entries:

- entries whose content hash matches the stored record are skipped
- new and changed entries are embedded and upserted, in ascending id order
- records whose entry no longer exists are deleted

A failing or timed-out embedding call is recorded against its entry and
the pass moves on. Once the pass deadline has passed, the remaining
dirty entries are marked Cancelled without calling the provider.
Store failures (StorageUnavailable) and a missing provider configuration
(ProviderNotConfigured) abort the pass.
"""

import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Optional

from .context import BuildContext
from .errors import Cancelled, DiaryIndexError, EmbeddingFailed
from .protocol import EntrySourceProtocol, VectorStoreProtocol
from .providers.base import EmbeddingProvider
from .types import (
    BuildResult,
    DiaryEntry,
    VectorRecord,
    VectorStats,
    content_hash,
)

logger = logging.getLogger(__name__)

# Resolves a user id to that user's embedding provider
EmbeddingResolver = Callable[[str], EmbeddingProvider]

def _has_content(entry: DiaryEntry) -> bool:
    return bool(entry.content and entry.content.strip())


class IndexBuilder:
    """Computes and applies the embedding work needed to sync one user's vectors."""

    def __init__(
        self,
        entries: EntrySourceProtocol,
        vectors: VectorStoreProtocol,
        embedding_for_user: EmbeddingResolver,
    ):
        self._entries = entries
        self._vectors = vectors
        self._embedding_for_user = embedding_for_user
        # Executors of passes in flight, one per pass
        self._pass_executors: set[ThreadPoolExecutor] = set()
        self._executors_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Build passes
    # -------------------------------------------------------------------------

    def build_incremental(self, ctx: BuildContext, user_id: str) -> BuildResult:
        """
        Embed new and changed entries, skip unchanged ones, drop orphans.

        Args:
            ctx: Deadline for the pass, threaded into every provider call
            user_id: Owner of the entries to index

        Returns:
            Aggregated BuildResult for the pass

        Raises:
            StorageUnavailable: If entries or vectors cannot be read or written
            ProviderNotConfigured: If there is work to do but no usable provider
        """
        entries = self._list_entries(user_id)
        existing = {r.entry_id: r for r in self._vectors.list_by_user(user_id)}
        result = BuildResult(requested=len(entries))

        current_ids = {e.id for e in entries}
        for entry_id in sorted(existing.keys() - current_ids):
            self._vectors.delete(user_id, entry_id)
            result.removed += 1

        dirty: list[tuple[DiaryEntry, str]] = []
        for entry in entries:
            record = existing.get(entry.id)
            if not _has_content(entry):
                # Nothing to embed; drop any vector left from earlier content
                result.skipped += 1
                if record is not None:
                    self._vectors.delete(user_id, entry.id)
                    result.removed += 1
                continue
            digest = content_hash(entry.content)
            if record is not None and record.content_hash == digest:
                result.skipped += 1
                continue
            dirty.append((entry, digest))

        logger.debug(
            "Incremental build for user %s: %d entries, %d dirty, %d orphans removed",
            user_id, len(entries), len(dirty), result.removed,
        )
        if dirty:
            provider = self._embedding_for_user(user_id)
            self._embed_entries(ctx, user_id, provider, dirty, result)
        return result

    def build_all(self, ctx: BuildContext, user_id: str) -> BuildResult:
        """
        Full rebuild: delete all of the user's vectors, then embed every entry.

        The provider is resolved before anything is deleted, so a bad
        configuration leaves the existing index intact.
        """
        entries = self._list_entries(user_id)
        dirty = [(e, content_hash(e.content)) for e in entries if _has_content(e)]
        provider = self._embedding_for_user(user_id) if dirty else None

        result = BuildResult(requested=len(entries))
        result.removed = self._vectors.delete_user(user_id)
        result.skipped = len(entries) - len(dirty)

        logger.debug(
            "Full rebuild for user %s: %d entries, %d cleared",
            user_id, len(entries), result.removed,
        )
        if provider is not None:
            self._embed_entries(ctx, user_id, provider, dirty, result)
        return result

    def stats(self, user_id: str) -> VectorStats:
        """Compare entries with stored vectors without changing anything."""
        entries = self._list_entries(user_id)
        existing = {r.entry_id: r for r in self._vectors.list_by_user(user_id)}
        stats = VectorStats(diary_count=len(entries))

        current_ids = set()
        for entry in entries:
            current_ids.add(entry.id)
            if not _has_content(entry):
                continue
            record = existing.get(entry.id)
            if record is None:
                stats.pending_count += 1
            elif record.content_hash != content_hash(entry.content):
                stats.outdated_count += 1
            else:
                stats.indexed_count += 1
        stats.orphaned_count = len(existing.keys() - current_ids)
        return stats

    def remove_entry(self, user_id: str, entry_id: str) -> bool:
        """Drop the vector of a deleted entry. Idempotent."""
        return self._vectors.delete(user_id, entry_id)

    def close(self) -> None:
        """Stop the embedding workers of passes in flight. Abandoned calls are not waited for."""
        with self._executors_lock:
            executors = list(self._pass_executors)
            self._pass_executors.clear()
        for executor in executors:
            executor.shutdown(wait=False, cancel_futures=True)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _list_entries(self, user_id: str) -> list[DiaryEntry]:
        return sorted(self._entries.list_entries(user_id), key=lambda e: e.id)

    def _embed_entries(
        self,
        ctx: BuildContext,
        user_id: str,
        provider: EmbeddingProvider,
        dirty: list[tuple[DiaryEntry, str]],
        result: BuildResult,
    ) -> None:
        # One worker per pass: an abandoned call only ever blocks its own pass
        executor = ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix=f"diaryindex-embed-{user_id}",
        )
        with self._executors_lock:
            self._pass_executors.add(executor)
        try:
            self._embed_pass(ctx, executor, user_id, provider, dirty, result)
        finally:
            with self._executors_lock:
                self._pass_executors.discard(executor)
            executor.shutdown(wait=False, cancel_futures=True)

    def _embed_pass(
        self,
        ctx: BuildContext,
        executor: ThreadPoolExecutor,
        user_id: str,
        provider: EmbeddingProvider,
        dirty: list[tuple[DiaryEntry, str]],
        result: BuildResult,
    ) -> None:
        model = getattr(provider, "model_name", "") or ""
        dimension: Optional[int] = None

        for index, (entry, digest) in enumerate(dirty):
            if ctx.done():
                for rest, _ in dirty[index:]:
                    result.add_failure(rest.id, Cancelled(rest.id, ctx.reason()))
                logger.debug(
                    "Build for user %s stopped: %s, %d entries not attempted",
                    user_id, ctx.reason(), len(dirty) - index,
                )
                return

            try:
                vector = self._embed(ctx, executor, provider, entry)
                if dimension is None:
                    dimension = len(vector)
                elif len(vector) != dimension:
                    raise EmbeddingFailed(
                        entry.id,
                        f"vector dimension {len(vector)} differs from {dimension}",
                    )
            except (Cancelled, EmbeddingFailed) as e:
                logger.debug("Entry %s of user %s failed: %s", entry.id, user_id, e)
                result.add_failure(entry.id, e)
                continue

            self._vectors.upsert(VectorRecord(
                user_id=user_id,
                entry_id=entry.id,
                content_hash=digest,
                vector=vector,
                model=model,
            ))
            result.success += 1

    def _embed(
        self,
        ctx: BuildContext,
        executor: ThreadPoolExecutor,
        provider: EmbeddingProvider,
        entry: DiaryEntry,
    ) -> list[float]:
        """Run one provider call, waiting at most the remaining budget."""
        budget = ctx.remaining()
        future = executor.submit(provider.embed, entry.content, timeout=budget)
        try:
            raw = future.result(timeout=budget)
        except FutureTimeout:
            future.cancel()
            raise Cancelled(entry.id, ctx.reason()) from None
        except DiaryIndexError as e:
            if isinstance(e, (Cancelled, EmbeddingFailed)):
                raise
            raise EmbeddingFailed(entry.id, e) from e
        except Exception as e:
            if ctx.done():
                raise Cancelled(entry.id, ctx.reason()) from e
            raise EmbeddingFailed(entry.id, e) from e
        return self._check_vector(entry.id, raw)

    @staticmethod
    def _check_vector(entry_id: str, raw: object) -> list[float]:
        if not isinstance(raw, (list, tuple)) or not raw:
            raise EmbeddingFailed(entry_id, "provider returned an empty vector")
        try:
            vector = [float(x) for x in raw]
        except (TypeError, ValueError) as e:
            raise EmbeddingFailed(entry_id, f"provider returned non-numeric values: {e}") from e
        if not all(math.isfinite(x) for x in vector):
            raise EmbeddingFailed(entry_id, "provider returned non-finite values")
        return vector
