# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# SCHEMA OVERVIEW:
#
# ┌────────────────┐       ┌──────────────────────────────────────┐
# │ conversations  │       │ messages                             │
# ├────────────────┤       ├──────────────────────────────────────┤
# │ id (PK)        │──1:N─▶│ id (PK, autoincrement → log order)   │
# │ created_at     │       │ conversation_id (FK)                 │
# │ updated_at     │       │ role, content, created_at            │
# └────────────────┘       └──────────────────────────────────────┘
#
# ┌──────────────────────────────┐       ┌──────────────────────────┐
# │ memories                     │       │ vector_store             │
# ├──────────────────────────────┤       ├──────────────────────────┤
# │ id (PK, "<uuid>[-chunkN]")   │       │ vector_id (PK)           │
# │ text, source, tags (json)    │──0:1─▶│ embedding (float32 blob) │
# │ vector_id                    │       │ dimension                │
# │ conversation_id (nullable)   │       │ created_at               │
# │ created_at                   │       └──────────────────────────┘
# └──────────────────────────────┘
#
# clarification_questions: pending questions per conversation (two-phase
#                          clarification protocol).
# search_cache:            external search results keyed by query hash.
#
# All timestamps are written in UTC by the application. Memory rows reference
# vectors by id only; compaction removes vectors whose memory row is gone.
# =============================================================================

from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class."""

    pass


class Conversation(Base):
    """A research conversation. Messages hang off it in log order."""

    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    messages: Mapped[list["Message"]] = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.id",
    )

    def __repr__(self) -> str:
        return f"<Conversation(id='{self.id}')>"


class Message(Base):
    """
    One chat message. The autoincrement primary key gives the log order,
    which stays stable even when two messages share a timestamp.
    """

    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)  # "user" | "assistant"
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    conversation: Mapped["Conversation"] = relationship(
        "Conversation", back_populates="messages"
    )

    def __repr__(self) -> str:
        return f"<Message(id={self.id}, role='{self.role}')>"


class Memory(Base):
    """
    A stored memory chunk. Immutable after insert; only compaction deletes it.

    `conversation_id` is a plain column (no foreign key): memories may be
    stored globally or for conversations whose rows live elsewhere.
    """

    __tablename__ = "memories"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[str] = mapped_column(Text, nullable=False)
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    vector_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    conversation_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_memories_vector_id", "vector_id"),
        Index("ix_memories_conversation_id", "conversation_id"),
        Index("ix_memories_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Memory(id='{self.id}', vector_id={self.vector_id})>"


class VectorRecord(Base):
    """A persisted embedding, stored as raw little-endian float32 bytes."""

    __tablename__ = "vector_store"

    vector_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    embedding: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    dimension: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<VectorRecord(vector_id={self.vector_id}, dimension={self.dimension})>"


class ClarificationRecord(Base):
    """Questions asked in the first phase of a clarified research request."""

    __tablename__ = "clarification_questions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    questions: Mapped[list] = mapped_column(JSON, nullable=False)
    rationale: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class SearchCacheEntry(Base):
    """
    Cached external search results.

    `max_results` records how many results were requested, so a cached entry
    can only answer requests for at most that many.
    """

    __tablename__ = "search_cache"

    query_hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    query: Mapped[str] = mapped_column(Text, nullable=False)
    results: Mapped[list] = mapped_column(JSON, nullable=False)
    max_results: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False, index=True
    )
