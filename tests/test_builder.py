"""
Tests for IndexBuilder: change detection, orphan cleanup, partial
failure, and deadline handling.
"""

import threading
import time
from typing import Optional

import pytest

from diaryindex.builder import IndexBuilder
from diaryindex.context import BuildContext
from diaryindex.errors import (
    Cancelled,
    EmbeddingFailed,
    ProviderNotConfigured,
    StorageUnavailable,
)
from diaryindex.types import VectorRecord, content_hash

from tests.conftest import BlockingEmbeddingProvider, MockEmbeddingProvider


def _ctx(timeout: Optional[float] = 30.0) -> BuildContext:
    return BuildContext(timeout)


class TestIncrementalBuild:

    def test_first_build_embeds_everything(self, builder, diary_store, vector_store):
        a = diary_store.upsert("u1", "hello", id="A")
        b = diary_store.upsert("u1", "world", id="B")

        result = builder.build_incremental(_ctx(), "u1")

        assert (result.requested, result.success, result.failed, result.skipped) == (2, 2, 0, 0)
        assert vector_store.get("u1", a.id).content_hash == content_hash("hello")
        assert vector_store.get("u1", b.id).content_hash == content_hash("world")

    def test_only_edited_entry_is_reembedded(self, builder, diary_store, mock_embedding_provider):
        diary_store.upsert("u1", "hello", id="A")
        diary_store.upsert("u1", "world", id="B")
        builder.build_incremental(_ctx(), "u1")

        diary_store.upsert("u1", "hello there", id="A")
        result = builder.build_incremental(_ctx(), "u1")

        assert (result.requested, result.success, result.skipped) == (2, 1, 1)
        assert mock_embedding_provider.calls == ["hello", "world", "hello there"]

    def test_second_build_is_idempotent(self, builder, diary_store, mock_embedding_provider):
        for i in range(5):
            diary_store.upsert("u1", f"entry {i}")
        builder.build_incremental(_ctx(), "u1")
        calls_after_first = mock_embedding_provider.embed_calls

        result = builder.build_incremental(_ctx(), "u1")

        assert result.success == 0
        assert result.failed == 0
        assert result.skipped == 5
        assert mock_embedding_provider.embed_calls == calls_after_first

    def test_resaving_same_content_is_not_a_change(self, builder, diary_store, mock_embedding_provider):
        """Only the content hash counts; a newer timestamp alone is not dirty."""
        diary_store.upsert("u1", "same words", id="A")
        builder.build_incremental(_ctx(), "u1")

        diary_store.upsert("u1", "same words", id="A")
        result = builder.build_incremental(_ctx(), "u1")

        assert result.skipped == 1
        assert mock_embedding_provider.embed_calls == 1

    def test_entries_embedded_in_id_order(self, builder, diary_store, mock_embedding_provider):
        diary_store.upsert("u1", "third", id="c")
        diary_store.upsert("u1", "first", id="a")
        diary_store.upsert("u1", "second", id="b")

        builder.build_incremental(_ctx(), "u1")

        assert mock_embedding_provider.calls == ["first", "second", "third"]

    def test_orphaned_vectors_removed(self, builder, diary_store, vector_store):
        diary_store.upsert("u1", "keep me", id="A")
        diary_store.upsert("u1", "delete me", id="B")
        builder.build_incremental(_ctx(), "u1")

        diary_store.delete("u1", "B")
        result = builder.build_incremental(_ctx(), "u1")

        assert result.removed == 1
        assert result.requested == 1
        assert [r.entry_id for r in vector_store.list_by_user("u1")] == ["A"]

    def test_other_users_untouched(self, builder, diary_store, vector_store):
        diary_store.upsert("u1", "mine", id="A")
        vector_store.upsert(VectorRecord("u2", "X", "h", [1.0]))

        builder.build_incremental(_ctx(), "u1")

        assert vector_store.get("u2", "X") is not None

    def test_no_entries_no_provider_lookup(self, diary_store, vector_store):
        resolved = []

        def resolver(user_id):
            resolved.append(user_id)
            return MockEmbeddingProvider()

        b = IndexBuilder(diary_store, vector_store, resolver)
        try:
            result = b.build_incremental(_ctx(), "u1")
        finally:
            b.close()

        assert result.requested == 0
        assert resolved == []

    def test_clean_index_never_resolves_provider(self, diary_store, vector_store):
        diary_store.upsert("u1", "already indexed", id="A")
        vector_store.upsert(VectorRecord("u1", "A", content_hash("already indexed"), [1.0]))

        def resolver(user_id):
            raise ProviderNotConfigured("no model")

        b = IndexBuilder(diary_store, vector_store, resolver)
        try:
            result = b.build_incremental(_ctx(), "u1")
        finally:
            b.close()

        assert result.skipped == 1

    def test_missing_provider_aborts_pass(self, diary_store, vector_store):
        diary_store.upsert("u1", "needs embedding")

        def resolver(user_id):
            raise ProviderNotConfigured("no embedding model configured")

        b = IndexBuilder(diary_store, vector_store, resolver)
        try:
            with pytest.raises(ProviderNotConfigured):
                b.build_incremental(_ctx(), "u1")
        finally:
            b.close()

    def test_records_model_name(self, builder, diary_store, vector_store):
        diary_store.upsert("u1", "hello", id="A")
        builder.build_incremental(_ctx(), "u1")
        assert vector_store.get("u1", "A").model == "mock-model"


class TestEmptyContent:

    def test_empty_entry_skipped_without_provider_call(self, builder, diary_store, mock_embedding_provider):
        diary_store.upsert("u1", "", id="A")
        diary_store.upsert("u1", "   \n", id="B")
        diary_store.upsert("u1", "text", id="C")

        result = builder.build_incremental(_ctx(), "u1")

        assert (result.requested, result.success, result.skipped) == (3, 1, 2)
        assert mock_embedding_provider.calls == ["text"]

    def test_emptied_entry_loses_its_vector(self, builder, diary_store, vector_store):
        diary_store.upsert("u1", "was something", id="A")
        builder.build_incremental(_ctx(), "u1")

        diary_store.upsert("u1", "", id="A")
        result = builder.build_incremental(_ctx(), "u1")

        assert result.skipped == 1
        assert result.removed == 1
        assert vector_store.get("u1", "A") is None


class TestPartialFailure:

    def test_failing_entry_does_not_stop_others(self, diary_store, vector_store):
        provider = MockEmbeddingProvider(fail_on=("bad",))
        diary_store.upsert("u1", "good one", id="A")
        diary_store.upsert("u1", "bad", id="B")
        diary_store.upsert("u1", "good two", id="C")

        b = IndexBuilder(diary_store, vector_store, lambda u: provider)
        try:
            result = b.build_incremental(_ctx(), "u1")
        finally:
            b.close()

        assert (result.success, result.failed) == (2, 1)
        assert result.errors[0].entry_id == "B"
        assert isinstance(result.errors[0].cause, EmbeddingFailed)
        assert vector_store.get("u1", "A") is not None
        assert vector_store.get("u1", "B") is None
        assert vector_store.get("u1", "C") is not None

    def test_failed_entry_retried_next_pass(self, diary_store, vector_store):
        provider = MockEmbeddingProvider(fail_on=("flaky",))
        diary_store.upsert("u1", "flaky", id="A")
        b = IndexBuilder(diary_store, vector_store, lambda u: provider)
        try:
            assert b.build_incremental(_ctx(), "u1").failed == 1
            provider.fail_on.clear()
            result = b.build_incremental(_ctx(), "u1")
        finally:
            b.close()

        assert result.success == 1
        assert vector_store.get("u1", "A") is not None

    def test_stale_vector_kept_when_reembed_fails(self, diary_store, vector_store):
        provider = MockEmbeddingProvider()
        diary_store.upsert("u1", "original", id="A")
        b = IndexBuilder(diary_store, vector_store, lambda u: provider)
        try:
            b.build_incremental(_ctx(), "u1")
            provider.fail_on.add("edited")
            diary_store.upsert("u1", "edited", id="A")
            result = b.build_incremental(_ctx(), "u1")
        finally:
            b.close()

        assert result.failed == 1
        assert vector_store.get("u1", "A").content_hash == content_hash("original")

    @pytest.mark.parametrize("bad_vector", [
        [],
        ["not", "numbers"],
        [1.0, float("nan")],
        None,
    ])
    def test_malformed_vector_is_a_failure(self, diary_store, vector_store, bad_vector):
        class BadProvider:
            model_name = "bad"

            def embed(self, text, *, timeout=None):
                return bad_vector

        diary_store.upsert("u1", "text", id="A")
        b = IndexBuilder(diary_store, vector_store, lambda u: BadProvider())
        try:
            result = b.build_incremental(_ctx(), "u1")
        finally:
            b.close()

        assert result.failed == 1
        assert isinstance(result.errors[0].cause, EmbeddingFailed)
        assert vector_store.get("u1", "A") is None

    def test_dimension_change_within_pass_is_a_failure(self, diary_store, vector_store):
        class ShrinkingProvider:
            model_name = "shrinking"

            def __init__(self):
                self.size = 4

            def embed(self, text, *, timeout=None):
                self.size -= 1
                return [0.5] * self.size

        diary_store.upsert("u1", "one", id="A")
        diary_store.upsert("u1", "two", id="B")
        b = IndexBuilder(diary_store, vector_store, lambda u: ShrinkingProvider())
        try:
            result = b.build_incremental(_ctx(), "u1")
        finally:
            b.close()

        assert (result.success, result.failed) == (1, 1)
        assert result.errors[0].entry_id == "B"

    def test_storage_failure_aborts_pass(self, diary_store, vector_store, mock_embedding_provider):
        class BrokenVectors:
            def get(self, user_id, entry_id):
                return None

            def list_by_user(self, user_id):
                return []

            def upsert(self, record):
                raise StorageUnavailable("disk full")

            def delete(self, user_id, entry_id):
                return False

            def delete_user(self, user_id):
                return 0

        diary_store.upsert("u1", "text")
        b = IndexBuilder(diary_store, BrokenVectors(), lambda u: mock_embedding_provider)
        try:
            with pytest.raises(StorageUnavailable):
                b.build_incremental(_ctx(), "u1")
        finally:
            b.close()


class TestDeadline:

    def test_expired_context_makes_no_provider_calls(self, builder, diary_store, mock_embedding_provider):
        for i in range(3):
            diary_store.upsert("u1", f"entry {i}")

        result = builder.build_incremental(BuildContext(0), "u1")

        assert mock_embedding_provider.embed_calls == 0
        assert (result.success, result.failed) == (0, 3)
        assert result.cancelled == 3
        assert all(isinstance(e.cause, Cancelled) for e in result.errors)

    def test_cancelled_context_reports_reason(self, builder, diary_store):
        diary_store.upsert("u1", "text", id="A")
        ctx = BuildContext(None)
        ctx.cancel()

        result = builder.build_incremental(ctx, "u1")

        assert result.cancelled == 1
        assert result.errors[0].cause.reason == "cancelled"

    def test_slow_provider_stops_at_deadline(self, diary_store, vector_store):
        provider = MockEmbeddingProvider(delay=0.2)
        for i in range(8):
            diary_store.upsert("u1", f"entry {i}", id=f"e{i}")

        b = IndexBuilder(diary_store, vector_store, lambda u: provider)
        ctx = BuildContext(0.5)
        try:
            start = time.monotonic()
            result = b.build_incremental(ctx, "u1")
            elapsed = time.monotonic() - start
        finally:
            b.close()

        assert result.success < 8
        assert result.success + result.failed == 8
        assert result.cancelled == result.failed
        assert elapsed < 2.0
        assert vector_store.count("u1") == result.success

    def test_hung_provider_call_abandoned_at_deadline(self, diary_store, vector_store):
        provider = BlockingEmbeddingProvider()
        diary_store.upsert("u1", "one", id="A")
        diary_store.upsert("u1", "two", id="B")

        b = IndexBuilder(diary_store, vector_store, lambda u: provider)
        try:
            start = time.monotonic()
            result = b.build_incremental(BuildContext(0.2), "u1")
            elapsed = time.monotonic() - start
        finally:
            provider.release()
            b.close()

        assert elapsed < 2.0
        assert result.success == 0
        assert result.cancelled == 2
        assert provider.calls == 1
        assert vector_store.get("u1", "A") is None

    def test_remaining_budget_passed_to_provider(self, builder, diary_store, mock_embedding_provider):
        diary_store.upsert("u1", "text")

        builder.build_incremental(BuildContext(10), "u1")

        (timeout,) = mock_embedding_provider.timeouts
        assert timeout is not None
        assert 0 < timeout <= 10

    def test_unbounded_context_passes_no_timeout(self, builder, diary_store, mock_embedding_provider):
        diary_store.upsert("u1", "text")

        builder.build_incremental(BuildContext(None), "u1")

        assert mock_embedding_provider.timeouts == [None]


class TestFullRebuild:

    def test_build_all_reembeds_everything(self, builder, diary_store, vector_store, mock_embedding_provider):
        diary_store.upsert("u1", "one", id="A")
        diary_store.upsert("u1", "two", id="B")
        builder.build_incremental(_ctx(), "u1")

        result = builder.build_all(_ctx(), "u1")

        assert (result.requested, result.success, result.removed) == (2, 2, 2)
        assert mock_embedding_provider.embed_calls == 4
        assert vector_store.count("u1") == 2

    def test_build_all_drops_orphans(self, builder, diary_store, vector_store):
        vector_store.upsert(VectorRecord("u1", "gone", "h", [1.0]))
        diary_store.upsert("u1", "present", id="A")

        result = builder.build_all(_ctx(), "u1")

        assert result.removed == 1
        assert [r.entry_id for r in vector_store.list_by_user("u1")] == ["A"]

    def test_bad_provider_leaves_index_intact(self, diary_store, vector_store):
        diary_store.upsert("u1", "text", id="A")
        vector_store.upsert(VectorRecord("u1", "A", content_hash("text"), [1.0]))

        def resolver(user_id):
            raise ProviderNotConfigured("no api key")

        b = IndexBuilder(diary_store, vector_store, resolver)
        try:
            with pytest.raises(ProviderNotConfigured):
                b.build_all(_ctx(), "u1")
        finally:
            b.close()

        assert vector_store.get("u1", "A") is not None

    def test_build_all_skips_empty_entries(self, builder, diary_store, mock_embedding_provider):
        diary_store.upsert("u1", "", id="A")
        diary_store.upsert("u1", "text", id="B")

        result = builder.build_all(_ctx(), "u1")

        assert (result.success, result.skipped) == (1, 1)
        assert mock_embedding_provider.calls == ["text"]


class TestStats:

    def test_counts_each_category(self, builder, diary_store, vector_store):
        diary_store.upsert("u1", "indexed", id="A")
        diary_store.upsert("u1", "will change", id="B")
        builder.build_incremental(_ctx(), "u1")
        diary_store.upsert("u1", "changed", id="B")
        diary_store.upsert("u1", "new", id="C")
        diary_store.upsert("u1", "", id="D")
        vector_store.upsert(VectorRecord("u1", "Z", "h", [1.0]))

        stats = builder.stats("u1")

        assert stats.to_dict() == {
            "diary_count": 4,
            "indexed_count": 1,
            "outdated_count": 1,
            "pending_count": 1,
            "orphaned_count": 1,
        }

    def test_stats_does_not_modify(self, builder, diary_store, vector_store, mock_embedding_provider):
        diary_store.upsert("u1", "text")
        vector_store.upsert(VectorRecord("u1", "orphan", "h", [1.0]))

        builder.stats("u1")

        assert mock_embedding_provider.embed_calls == 0
        assert vector_store.get("u1", "orphan") is not None


class TestConcurrentBuilds:

    def test_builds_for_different_users_in_parallel(self, diary_store, vector_store):
        provider = MockEmbeddingProvider(delay=0.01)
        users = [f"user{i}" for i in range(4)]
        for user in users:
            for i in range(5):
                diary_store.upsert(user, f"{user} entry {i}")

        b = IndexBuilder(diary_store, vector_store, lambda u: provider)
        results = {}
        errors = []

        def run(user):
            try:
                results[user] = b.build_incremental(_ctx(), user)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=run, args=(u,)) for u in users]
        try:
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=30)
        finally:
            b.close()

        assert errors == []
        for user in users:
            assert results[user].success == 5
            assert vector_store.count(user) == 5

    def test_hung_calls_of_one_user_do_not_starve_another(self, diary_store, vector_store):
        """Abandoned calls of one user leave no queue for another user's pass."""
        hanging = BlockingEmbeddingProvider()
        healthy = MockEmbeddingProvider()
        diary_store.upsert("a", "stuck", id="A1")
        diary_store.upsert("b", "fine", id="B1")

        b = IndexBuilder(
            diary_store, vector_store,
            lambda user_id: hanging if user_id == "a" else healthy,
        )
        try:
            for _ in range(5):
                stuck = b.build_incremental(BuildContext(0.1), "a")
                assert stuck.cancelled == 1
            result = b.build_incremental(BuildContext(2.0), "b")
        finally:
            hanging.release()
            b.close()

        assert (result.success, result.failed) == (1, 0)
        assert healthy.calls == ["fine"]
        assert vector_store.get("b", "B1") is not None
