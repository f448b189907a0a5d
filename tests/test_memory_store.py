# =============================================================================
# Unit Tests — Memory Store
# =============================================================================
#
# Runs against a temporary SQLite database with the deterministic
# MockEmbedder, so similarity between texts that share words is positive
# and identical texts score 1.0.
# =============================================================================

from __future__ import annotations

import asyncio
import gc
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select, update

from derp_research.db.models import Memory, VectorRecord, utcnow
from derp_research.models.research import ClarificationResult
from derp_research.services.embedder import MockEmbedder
from derp_research.services.vector_index import PersistentVectorIndex


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


LONG_TEXT = " ".join(f"token{i}" for i in range(200))


class FlakyEmbedder:
    """Fails on the listed call numbers (1-based), embeds normally otherwise."""

    def __init__(self, fail_on: set[int], dimension: int = 64):
        self._inner = MockEmbedder(dimension)
        self._fail_on = fail_on
        self.calls = 0
        self.dimension = dimension

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        if self.calls in self._fail_on:
            raise RuntimeError("embedding service unavailable")
        return self._inner.embed_sync(text)


class TestStoreMemory:
    """Tests for store_memory() chunking and failure accounting."""

    def test_single_chunk_uses_primary_id(self, store):
        result = _run(store.store_memory("Solar panels convert light", "https://a.example"))
        assert result.primary_id
        assert result.chunk_ids == [result.primary_id]
        assert result.is_fully_successful
        assert not result.is_partially_successful
        assert len(store.index) == 1

    def test_empty_text_stores_nothing(self, store):
        result = _run(store.store_memory("   ", "https://a.example"))
        assert result.primary_id == ""
        assert result.total_chunks == 0
        assert result.is_complete_failure
        assert len(store.index) == 0

    def test_long_text_is_chunked(self, store_factory):
        store = store_factory(chunk_max_tokens=100, chunk_overlap_tokens=10)
        result = _run(store.store_memory(LONG_TEXT, "https://long.example", tags=["t"]))

        assert result.total_chunks > 1
        assert result.is_fully_successful
        assert result.chunk_ids == [
            f"{result.primary_id}-chunk{i}" for i in range(result.total_chunks)
        ]

        async def load_sources():
            async with store._session_factory() as session:
                rows = await session.execute(select(Memory.id, Memory.source))
                return dict(rows.all())

        sources = _run(load_sources())
        first = sources[f"{result.primary_id}-chunk0"]
        assert first == f"https://long.example (chunk 1/{result.total_chunks})"

    def test_failed_chunk_is_recorded_and_others_stored(self, store_factory):
        embedder = FlakyEmbedder(fail_on={2})
        store = store_factory(
            embedder_override=embedder, chunk_max_tokens=100, chunk_overlap_tokens=10,
        )
        result = _run(store.store_memory(LONG_TEXT, "https://long.example"))

        assert result.is_partially_successful
        assert result.failed_chunks == 1
        assert result.successful_chunks == result.total_chunks - 1
        assert result.errors[0].chunk_index == 1
        assert result.errors[0].exception_type == "RuntimeError"
        assert f"{result.primary_id}-chunk1" not in result.chunk_ids
        assert len(store.index) == result.successful_chunks

    def test_all_chunks_failing_is_complete_failure(self, store_factory):
        store = store_factory(embedder_override=FlakyEmbedder(fail_on={1}))
        result = _run(store.store_memory("short text", "https://a.example"))
        assert result.is_complete_failure
        assert result.failed_chunks == 1
        assert len(store.index) == 0

    def test_vectors_persist_across_restart(self, store, session_factory, embedder):
        _run(store.store_memory("Wind turbines generate power", "https://w.example"))
        reloaded = PersistentVectorIndex(embedder.dimension, session_factory, max_workers=1)
        try:
            assert _run(reloaded.load()) == 1
        finally:
            reloaded.close()

    def test_concurrent_stores_get_distinct_vector_ids(self, store):
        async def scenario():
            return await asyncio.gather(
                *(store.store_memory(f"note number {i}", f"https://n{i}.example") for i in range(10))
            )

        results = _run(scenario())
        assert all(r.is_fully_successful for r in results)
        assert len(store.index) == 10
        assert store.index.next_id == 10


class TestSearchMemory:
    """Tests for search_memory() ranking and filtering."""

    def test_identical_text_ranks_first(self, store):
        async def scenario():
            await store.store_memory("rust borrow checker lifetimes", "https://rust.example")
            await store.store_memory("python asyncio event loop", "https://py.example")
            return await store.search_memory("python asyncio event loop", top_k=2)

        hits = _run(scenario())
        assert hits[0].source == "https://py.example"
        assert hits[0].relevance_score == pytest.approx(1.0, abs=1e-5)
        assert hits[0].timestamp is not None
        assert hits[0].timestamp.tzinfo is not None

    def test_empty_query_raises(self, store):
        with pytest.raises(ValueError):
            _run(store.search_memory("  "))

    def test_empty_store_returns_nothing(self, store):
        assert _run(store.search_memory("anything")) == []

    def test_conversation_filter(self, store):
        async def scenario():
            await store.store_memory("shared topic text", "https://a.example", conversation_id="conv-a")
            await store.store_memory("shared topic text", "https://b.example", conversation_id="conv-b")
            await store.store_memory("shared topic text", "https://g.example")
            return await store.search_memory("shared topic text", top_k=5, conversation_id="conv-a")

        hits = _run(scenario())
        assert [h.source for h in hits] == ["https://a.example"]
        assert hits[0].conversation_id == "conv-a"

    def test_orphan_vectors_are_skipped(self, store, embedder):
        async def scenario():
            store.index.add(embedder.embed_sync("orphan vector text"))
            await store.store_memory("orphan vector text", "https://real.example")
            return await store.search_memory("orphan vector text", top_k=5)

        hits = _run(scenario())
        assert [h.source for h in hits] == ["https://real.example"]

    def test_tags_round_trip(self, store):
        async def scenario():
            await store.store_memory("tagged memory", "https://t.example", tags=["search-result", "q"])
            return await store.search_memory("tagged memory", top_k=1)

        assert _run(scenario())[0].tags == ["search-result", "q"]


class TestConversations:
    """Messages, context assembly and clarification bookkeeping."""

    def test_save_message_creates_conversation(self, store):
        async def scenario():
            await store.save_message("conv-1", "user", "hello")
            return await store.conversation_exists("conv-1")

        assert _run(scenario()) is True

    def test_unknown_role_rejected(self, store):
        with pytest.raises(ValueError):
            _run(store.save_message("conv-1", "robot", "beep"))

    def test_messages_in_chronological_order(self, store):
        async def scenario():
            for i in range(5):
                await store.save_message("conv-1", "user" if i % 2 == 0 else "assistant", f"m{i}")
            return (
                await store.get_messages("conv-1"),
                await store.get_messages("conv-1", limit=2),
            )

        everything, last_two = _run(scenario())
        assert [m.content for m in everything] == ["m0", "m1", "m2", "m3", "m4"]
        assert [m.content for m in last_two] == ["m3", "m4"]

    def test_conversation_locks_released_after_use(self, store):
        async def scenario():
            for i in range(50):
                await store.save_message(f"conv-{i}", "user", "hello")
                await store.get_conversation_context(f"conv-{i}")
            gc.collect()
            return len(store._locks)

        assert _run(scenario()) == 0

    def test_concurrent_saves_share_one_lock(self, store):
        async def scenario():
            held = store._lock_for("conv-1")
            await held.acquire()
            writers = [
                asyncio.create_task(store.save_message("conv-1", "user", f"m{i}"))
                for i in range(3)
            ]
            await asyncio.sleep(0.05)
            blocked = not any(w.done() for w in writers)
            same = store._lock_for("conv-1") is held
            held.release()
            await asyncio.gather(*writers)
            return blocked, same, await store.get_messages("conv-1")

        blocked, same, messages = _run(scenario())
        assert blocked
        assert same
        assert len(messages) == 3

    def test_create_conversation(self, store):
        async def scenario():
            conversation_id = await store.create_conversation()
            return conversation_id, await store.conversation_exists(conversation_id)

        conversation_id, exists = _run(scenario())
        assert conversation_id
        assert exists
        assert _run(store.conversation_exists("missing")) is False

    def test_context_includes_messages_and_relevant_memories(self, store):
        async def scenario():
            await store.save_message("conv-1", "user", "tell me about tides")
            await store.store_memory("ocean tides moon gravity", "https://tides.example", conversation_id="conv-1")
            await store.store_memory("ocean tides moon gravity", "https://other.example", conversation_id="conv-2")
            return await store.get_conversation_context("conv-1", query="ocean tides")

        context = _run(scenario())
        assert context.conversation_id == "conv-1"
        assert [m.content for m in context.recent_messages] == ["tell me about tides"]
        assert [m.source for m in context.relevant_memories] == ["https://tides.example"]

    def test_context_without_query_uses_recent_memories(self, store):
        async def scenario():
            await store.store_memory("first note", "https://1.example", conversation_id="conv-1")
            return await store.get_conversation_context("conv-1")

        context = _run(scenario())
        assert [m.source for m in context.relevant_memories] == ["https://1.example"]

    def test_context_survives_memory_search_failure(self, store):
        store.search_memory = AsyncMock(side_effect=RuntimeError("index offline"))

        async def scenario():
            await store.save_message("conv-1", "user", "question")
            return await store.get_conversation_context("conv-1", query="question")

        context = _run(scenario())
        assert context.relevant_memories == []
        assert len(context.recent_messages) == 1

    def test_clarification_questions_lifecycle(self, store):
        async def scenario():
            await store.store_clarification_questions(
                "conv-1", ClarificationResult(questions=["Old?"], rationale="r")
            )
            await store.store_clarification_questions(
                "conv-1", ClarificationResult(questions=["Which era?", "Which region?"], rationale="r")
            )
            stored = await store.get_clarification_questions("conv-1")
            await store.clear_clarification_questions("conv-1")
            cleared = await store.get_clarification_questions("conv-1")
            return stored, cleared

        stored, cleared = _run(scenario())
        assert stored == ["Which era?", "Which region?"]
        assert cleared is None


class TestCompaction:
    """Tests for compact_memories()."""

    def test_removes_old_memories_and_their_vectors(self, store):
        async def scenario():
            old = await store.store_memory("stale fact", "https://old.example")
            await store.store_memory("fresh fact", "https://new.example")
            async with store._session_factory() as session, session.begin():
                await session.execute(
                    update(Memory)
                    .where(Memory.id == old.primary_id)
                    .values(created_at=utcnow() - timedelta(days=100))
                )
            result = await store.compact_memories(utcnow() - timedelta(days=90))
            async with store._session_factory() as session:
                vectors = await session.scalar(select(func.count()).select_from(VectorRecord))
                memories = await session.scalar(select(func.count()).select_from(Memory))
            hits = await store.search_memory("stale fact", top_k=5)
            return result, vectors, memories, hits

        result, vectors, memories, hits = _run(scenario())
        assert result.memories_removed == 1
        assert result.vectors_removed == 1
        assert vectors == 1
        assert memories == 1
        assert len(store.index) == 1
        assert [h.source for h in hits] == ["https://new.example"]

    def test_nothing_to_compact(self, store):
        _run(store.store_memory("fresh fact", "https://new.example"))
        result = _run(store.compact_memories(utcnow() - timedelta(days=90)))
        assert result.memories_removed == 0
        assert result.vectors_removed == 0
        assert len(store.index) == 1
