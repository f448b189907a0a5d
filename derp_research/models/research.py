# =============================================================================
# Research Pipeline Models
# =============================================================================
#
# Two kinds of model live here:
#
# 1. Pydantic models for STRUCTURED LLM OUTPUT (plan, reflection,
#    clarification). They accept both camelCase and snake_case keys since
#    models answer in either, and they normalise their own invariants on
#    construction, so a parsed value is always usable.
#
# 2. Plain dataclasses for INTERNAL pipeline state (search results, gathered
#    information, memory chunks, store results). These never cross the LLM
#    boundary and carry no validation overhead.
# =============================================================================

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class _LLMModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# ---------------------------------------------------------------------------
# Structured LLM Output
# ---------------------------------------------------------------------------


class ResearchTask(_LLMModel):
    """One unit of search work. Lower priority runs first."""

    description: str
    search_query: str
    priority: int = 0


class ResearchPlan(_LLMModel):
    """Decomposition of a research question into prioritised subtasks."""

    main_goal: str = ""
    subtasks: list[ResearchTask] = Field(default_factory=list)
    key_concepts: list[str] = Field(default_factory=list)

    @field_validator("key_concepts")
    @classmethod
    def _unique_concepts(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(c.strip() for c in value if c and c.strip()))

    @field_validator("subtasks")
    @classmethod
    def _drop_empty_tasks(cls, value: list[ResearchTask]) -> list[ResearchTask]:
        return [t for t in value if t.search_query.strip()]

    def sorted_subtasks(self) -> list[ResearchTask]:
        # sorted() is stable: equal priorities keep plan order
        return sorted(self.subtasks, key=lambda t: t.priority)

    @classmethod
    def fallback(cls, query: str) -> ResearchPlan:
        """Single-subtask plan that searches for the raw query."""
        return cls(
            main_goal=query,
            subtasks=[ResearchTask(description=query, search_query=query, priority=0)],
            key_concepts=[],
        )


class ReflectionResult(_LLMModel):
    """
    Self-assessment of a synthesised answer.

    `confidence_score` is clamped into [0, 1]. `requires_more_research` is
    only kept true when there is at least one gap and one suggested search.
    """

    confidence_score: float = 0.0
    identified_gaps: list[str] = Field(default_factory=list)
    suggested_additional_searches: list[str] = Field(default_factory=list)
    requires_more_research: bool = False

    @field_validator("confidence_score")
    @classmethod
    def _clamp(cls, value: float) -> float:
        if value != value:  # NaN
            return 0.0
        return min(1.0, max(0.0, value))

    @field_validator("identified_gaps", "suggested_additional_searches")
    @classmethod
    def _strip_blank(cls, value: list[str]) -> list[str]:
        return [v.strip() for v in value if v and v.strip()]

    @model_validator(mode="after")
    def _normalise_requirement(self) -> ReflectionResult:
        if self.requires_more_research and not (
            self.identified_gaps and self.suggested_additional_searches
        ):
            self.requires_more_research = False
        return self


class ClarificationResult(_LLMModel):
    """Questions that would sharpen a research request."""

    questions: list[str] = Field(default_factory=list)
    rationale: str = ""

    @field_validator("questions")
    @classmethod
    def _strip_blank(cls, value: list[str]) -> list[str]:
        return [q.strip() for q in value if q and q.strip()]


# ---------------------------------------------------------------------------
# Internal Data Structures
# ---------------------------------------------------------------------------


@dataclass
class SearchResult:
    """A single web search hit. Identity is the URL."""

    title: str
    url: str
    snippet: str
    content: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> SearchResult:
        return cls(
            title=data.get("title", ""),
            url=data.get("url", ""),
            snippet=data.get("snippet", ""),
            content=data.get("content"),
        )


@dataclass
class GatheredInformation:
    """Everything found during one orchestration run. Append-only."""

    results: list[SearchResult] = field(default_factory=list)
    stored_memory_ids: list[str] = field(default_factory=list)
    total_sources_found: int = 0

    def has_url(self, url: str) -> bool:
        return any(r.url == url for r in self.results)

    def add(self, result: SearchResult) -> bool:
        """Append `result` unless its URL is already present."""
        if self.has_url(result.url):
            return False
        self.results.append(result)
        self.total_sources_found = len(self.results)
        return True


@dataclass
class SubtaskStarted:
    """Yielded by a search stage before it runs a subtask."""

    task: ResearchTask
    number: int
    total: int


@dataclass
class MemoryChunk:
    id: str
    text: str
    source: str
    tags: list[str] = field(default_factory=list)
    conversation_id: str | None = None
    timestamp: datetime | None = None
    vector_id: int | None = None
    relevance_score: float = 0.0


@dataclass
class ChunkError:
    chunk_index: int
    chunk_id: str
    message: str
    exception_type: str


@dataclass
class StoreMemoryResult:
    """
    Outcome of storing one (possibly chunked) memory.

    Exactly one of `is_fully_successful`, `is_partially_successful` and
    `is_complete_failure` is true. Empty input stores nothing and counts as
    a complete failure.
    """

    primary_id: str
    total_chunks: int = 0
    successful_chunks: int = 0
    failed_chunks: int = 0
    chunk_ids: list[str] = field(default_factory=list)
    errors: list[ChunkError] = field(default_factory=list)

    @property
    def is_fully_successful(self) -> bool:
        return self.total_chunks > 0 and self.failed_chunks == 0

    @property
    def is_partially_successful(self) -> bool:
        return 0 < self.successful_chunks < self.total_chunks

    @property
    def is_complete_failure(self) -> bool:
        return self.successful_chunks == 0


@dataclass
class CompactionResult:
    memories_removed: int = 0
    vectors_removed: int = 0


@dataclass
class ChatMessage:
    role: str
    content: str
    timestamp: datetime | None = None


@dataclass
class ConversationContext:
    """Read model rebuilt for each request."""

    conversation_id: str
    recent_messages: list[ChatMessage] = field(default_factory=list)
    relevant_memories: list[MemoryChunk] = field(default_factory=list)
