# =============================================================================
# Memory Store — Conversations, Messages, and Vector Memory
# =============================================================================
#
# Owns the vector index plus the relational tables that give vectors meaning:
# conversations, messages, memories, and pending clarification questions.
#
# STORING A MEMORY:
#   text ─▶ chunk_text() ─▶ per chunk: embed ─▶ reserve vector id
#        ─▶ one transaction: vector row + memory row ─▶ publish to index
#   A chunk that fails (embedding error, database error) is recorded in the
#   StoreMemoryResult and the remaining chunks still go through.
#
# SEARCHING:
#   embed(query) ─▶ index top-k (over-fetched when filtering by
#   conversation) ─▶ one IN query resolves vector ids to memory rows ─▶
#   filter ─▶ keep similarity order. Vector ids without a memory row are
#   skipped.
#
# CONCURRENCY:
#   Message writes and context reads of the same conversation are serialised
#   by a per-conversation asyncio.Lock. Every write runs in its own
#   transaction, so a failed memory write never takes a saved message with it.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from collections.abc import Sequence
from datetime import UTC, datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from derp_research.config import Settings, settings
from derp_research.db.models import (
    Base,
    ClarificationRecord,
    Conversation,
    Memory,
    Message,
    VectorRecord,
    utcnow,
)
from derp_research.models.research import (
    ChatMessage,
    ChunkError,
    ClarificationResult,
    CompactionResult,
    ConversationContext,
    MemoryChunk,
    StoreMemoryResult,
)
from derp_research.services.chunker import chunk_text
from derp_research.services.embedder import Embedder
from derp_research.services.vector_index import PersistentVectorIndex, VectorIndex

logger = logging.getLogger(__name__)

MESSAGE_ROLES = frozenset({"user", "assistant", "system"})


class MemoryStore:
    def __init__(
        self,
        index: VectorIndex,
        embedder: Embedder,
        session_factory: async_sessionmaker[AsyncSession],
        config: Settings | None = None,
    ) -> None:
        self._index = index
        self._embedder = embedder
        self._session_factory = session_factory
        self._config = config or settings
        # Entries vanish once no coroutine holds or waits on the lock.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @property
    def index(self) -> VectorIndex:
        return self._index

    async def initialize(self) -> None:
        """Create missing tables and load persisted vectors."""
        async with self._session_factory() as session:
            await session.run_sync(
                lambda sync_session: Base.metadata.create_all(sync_session.connection())
            )
            await session.commit()
        if isinstance(self._index, PersistentVectorIndex):
            await self._index.load()

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    # -------------------------------------------------------------------------
    # Memories
    # -------------------------------------------------------------------------

    async def store_memory(
        self,
        text: str,
        source: str,
        tags: Sequence[str] | None = None,
        conversation_id: str | None = None,
    ) -> StoreMemoryResult:
        """
        Chunk, embed, and store `text`.

        A single chunk is stored under the primary id. Multiple chunks get
        "<primary>-chunk<i>" ids and a "(chunk i/n)" suffix on their source.
        Empty input stores nothing and reports a complete failure.
        """
        chunks = chunk_text(
            text or "",
            max_tokens=self._config.chunk_max_tokens,
            overlap_tokens=self._config.chunk_overlap_tokens,
            chars_per_token=self._config.chunk_chars_per_token,
        )
        if not chunks:
            logger.debug("Nothing to store from source '%s'", source)
            return StoreMemoryResult(primary_id="")

        primary_id = str(uuid.uuid4())
        total = len(chunks)
        result = StoreMemoryResult(primary_id=primary_id, total_chunks=total)
        tag_list = list(tags or [])

        for chunk in chunks:
            if total > 1:
                chunk_id = f"{primary_id}-chunk{chunk.chunk_index}"
                chunk_source = f"{source} (chunk {chunk.chunk_index + 1}/{total})"
            else:
                chunk_id = primary_id
                chunk_source = source

            try:
                await self._store_chunk(
                    chunk_id, chunk.content, chunk_source, tag_list, conversation_id
                )
            except Exception as exc:
                logger.warning(
                    "Failed to store chunk %d/%d of '%s': %s",
                    chunk.chunk_index + 1, total, source, exc,
                )
                result.failed_chunks += 1
                result.errors.append(
                    ChunkError(
                        chunk_index=chunk.chunk_index,
                        chunk_id=chunk_id,
                        message=str(exc),
                        exception_type=type(exc).__name__,
                    )
                )
            else:
                result.successful_chunks += 1
                result.chunk_ids.append(chunk_id)

        if result.is_partially_successful:
            logger.warning(
                "Stored %d/%d chunks of '%s'",
                result.successful_chunks, total, source,
            )
        return result

    async def _store_chunk(
        self,
        chunk_id: str,
        text: str,
        source: str,
        tags: list[str],
        conversation_id: str | None,
    ) -> None:
        embedding = await self._embedder.embed(text)
        vector_id, vector = self._index.prepare(embedding)

        async with self._session_factory() as session, session.begin():
            if isinstance(self._index, PersistentVectorIndex):
                session.add(self._index.to_record(vector_id, vector))
            session.add(
                Memory(
                    id=chunk_id,
                    text=text,
                    source=source,
                    tags=tags,
                    vector_id=vector_id,
                    conversation_id=conversation_id,
                )
            )

        self._index.publish(vector_id, vector)

    async def search_memory(
        self,
        query: str,
        top_k: int | None = None,
        conversation_id: str | None = None,
    ) -> list[MemoryChunk]:
        """
        Return up to `top_k` memories most similar to `query`, best first.

        Raises:
            ValueError: if `query` is empty.
        """
        if not query or not query.strip():
            raise ValueError("query must not be empty")
        top_k = self._config.memory_top_k if top_k is None else top_k
        if top_k <= 0:
            return []

        embedding = await self._embedder.embed(query)
        fetch_k = top_k * max(1, self._config.memory_search_oversample) if conversation_id else top_k
        vector_ids, scores = await self._index.search(embedding, fetch_k)
        if not vector_ids:
            return []

        stmt = select(Memory).where(Memory.vector_id.in_(list(vector_ids)))
        if conversation_id is not None:
            stmt = stmt.where(Memory.conversation_id == conversation_id)

        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        by_vector = {row.vector_id: row for row in rows}

        results: list[MemoryChunk] = []
        for vector_id, score in zip(vector_ids, scores):
            row = by_vector.get(vector_id)
            if row is None:
                continue
            results.append(_to_chunk(row, score))
            if len(results) == top_k:
                break
        return results

    async def recent_memories(
        self, conversation_id: str, limit: int
    ) -> list[MemoryChunk]:
        stmt = (
            select(Memory)
            .where(Memory.conversation_id == conversation_id)
            .order_by(Memory.created_at.desc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_to_chunk(row) for row in rows]

    async def compact_memories(self, older_than: datetime) -> CompactionResult:
        """Delete memories created before `older_than` and their orphaned vectors."""
        async with self._session_factory() as session, session.begin():
            expired = (
                await session.execute(
                    select(Memory.id, Memory.vector_id).where(Memory.created_at < older_than)
                )
            ).all()
            if expired:
                await session.execute(
                    delete(Memory).where(Memory.id.in_([memory_id for memory_id, _ in expired]))
                )

            referenced = select(Memory.vector_id).where(Memory.vector_id.is_not(None))
            orphan_rows = set(
                (
                    await session.execute(
                        select(VectorRecord.vector_id).where(
                            VectorRecord.vector_id.not_in(referenced)
                        )
                    )
                ).scalars()
            )
            if orphan_rows:
                await session.execute(
                    delete(VectorRecord).where(VectorRecord.vector_id.in_(list(orphan_rows)))
                )

        # Vectors still referenced by a newer memory chunk stay in the index.
        still_referenced = await self._referenced_vector_ids(
            {vector_id for _, vector_id in expired if vector_id is not None}
        )
        stale = orphan_rows | (
            {vector_id for _, vector_id in expired if vector_id is not None} - still_referenced
        )
        vectors_removed = self._index.remove(stale)

        logger.info(
            "Compaction removed %d memories and %d vectors older than %s",
            len(expired), len(stale), older_than.isoformat(),
        )
        return CompactionResult(
            memories_removed=len(expired),
            vectors_removed=max(vectors_removed, len(orphan_rows)),
        )

    async def _referenced_vector_ids(self, vector_ids: set[int]) -> set[int]:
        if not vector_ids:
            return set()
        async with self._session_factory() as session:
            rows = await session.execute(
                select(Memory.vector_id).where(Memory.vector_id.in_(list(vector_ids)))
            )
            return set(rows.scalars())

    # -------------------------------------------------------------------------
    # Conversations & Messages
    # -------------------------------------------------------------------------

    async def create_conversation(self) -> str:
        conversation_id = str(uuid.uuid4())
        async with self._session_factory() as session, session.begin():
            session.add(Conversation(id=conversation_id))
        return conversation_id

    async def conversation_exists(self, conversation_id: str) -> bool:
        async with self._session_factory() as session:
            return await session.get(Conversation, conversation_id) is not None

    async def save_message(self, conversation_id: str, role: str, content: str) -> None:
        """Append a message, creating the conversation row if needed."""
        if role not in MESSAGE_ROLES:
            raise ValueError(f"Unknown message role '{role}'")

        async with self._lock_for(conversation_id):
            async with self._session_factory() as session, session.begin():
                conversation = await session.get(Conversation, conversation_id)
                if conversation is None:
                    session.add(Conversation(id=conversation_id))
                else:
                    conversation.updated_at = utcnow()
                session.add(
                    Message(conversation_id=conversation_id, role=role, content=content)
                )

    async def get_messages(
        self, conversation_id: str, limit: int | None = None
    ) -> list[ChatMessage]:
        """Messages in chronological order; the last `limit` when given."""
        stmt = select(Message).where(Message.conversation_id == conversation_id)
        if limit is not None:
            stmt = stmt.order_by(Message.id.desc()).limit(limit)
        else:
            stmt = stmt.order_by(Message.id)

        async with self._session_factory() as session:
            rows = list((await session.execute(stmt)).scalars().all())
        if limit is not None:
            rows.reverse()
        return [
            ChatMessage(role=row.role, content=row.content, timestamp=_as_utc(row.created_at))
            for row in rows
        ]

    async def get_conversation_context(
        self,
        conversation_id: str,
        query: str | None = None,
        message_count: int | None = None,
        memory_count: int | None = None,
    ) -> ConversationContext:
        """
        Recent messages plus relevant memories for a conversation.

        With a query, memories come from similarity search within the
        conversation; without one, the most recent memories are used.
        A failed similarity search degrades to no memories.
        """
        message_count = self._config.context_message_count if message_count is None else message_count
        memory_count = self._config.memory_top_k if memory_count is None else memory_count

        async with self._lock_for(conversation_id):
            messages = await self.get_messages(conversation_id, limit=message_count)

            memories: list[MemoryChunk] = []
            if memory_count > 0:
                if query and query.strip():
                    try:
                        memories = await self.search_memory(query, memory_count, conversation_id)
                    except Exception as exc:
                        logger.warning(
                            "Memory search failed for conversation %s: %s",
                            conversation_id, exc,
                        )
                else:
                    memories = await self.recent_memories(conversation_id, memory_count)

        return ConversationContext(
            conversation_id=conversation_id,
            recent_messages=messages,
            relevant_memories=memories,
        )

    # -------------------------------------------------------------------------
    # Clarification Questions
    # -------------------------------------------------------------------------

    async def store_clarification_questions(
        self, conversation_id: str, clarification: ClarificationResult
    ) -> None:
        """Replace any pending questions for the conversation."""
        async with self._session_factory() as session, session.begin():
            await session.execute(
                delete(ClarificationRecord).where(
                    ClarificationRecord.conversation_id == conversation_id
                )
            )
            session.add(
                ClarificationRecord(
                    conversation_id=conversation_id,
                    questions=list(clarification.questions),
                    rationale=clarification.rationale,
                )
            )

    async def get_clarification_questions(self, conversation_id: str) -> list[str] | None:
        stmt = (
            select(ClarificationRecord)
            .where(ClarificationRecord.conversation_id == conversation_id)
            .order_by(ClarificationRecord.id.desc())
            .limit(1)
        )
        async with self._session_factory() as session:
            record = (await session.execute(stmt)).scalar_one_or_none()
        return list(record.questions) if record else None

    async def clear_clarification_questions(self, conversation_id: str) -> None:
        async with self._session_factory() as session, session.begin():
            await session.execute(
                delete(ClarificationRecord).where(
                    ClarificationRecord.conversation_id == conversation_id
                )
            )


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is written in UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _to_chunk(row: Memory, score: float = 0.0) -> MemoryChunk:
    return MemoryChunk(
        id=row.id,
        text=row.text,
        source=row.source,
        tags=list(row.tags or []),
        conversation_id=row.conversation_id,
        timestamp=_as_utc(row.created_at),
        vector_id=row.vector_id,
        relevance_score=score,
    )


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

_store: MemoryStore | None = None


def get_memory_store() -> MemoryStore:
    """Return the process-wide MemoryStore. Call `initialize()` once before use."""
    global _store
    if _store is None:
        from derp_research.db.engine import get_session_factory
        from derp_research.services.embedder import get_embedder

        session_factory = get_session_factory()
        index = PersistentVectorIndex(
            settings.embedding_dimensions,
            session_factory,
            batch_size=settings.vector_scan_batch_size,
            max_workers=settings.vector_search_workers,
        )
        _store = MemoryStore(index, get_embedder(), session_factory, settings)
    return _store
