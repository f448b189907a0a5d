# =============================================================================
# Pipeline Stage Protocols
# =============================================================================
#
# The orchestrator depends only on these structural interfaces. LLM-backed
# stages and the deterministic mocks in mock.py both satisfy them, and tests
# can pass any object with matching methods.
#
#   ClarificationStage.clarify    → ClarificationResult (never empty)
#   PlanningStage.plan            → ResearchPlan (at least one subtask)
#   SearchStage.execute           → async stream of SubtaskStarted | SearchResult
#   SynthesisStage.synthesize     → async stream of text tokens
#   ReflectionStage.reflect       → ReflectionResult
# =============================================================================

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from typing import Protocol

from derp_research.models.research import (
    ClarificationResult,
    ConversationContext,
    GatheredInformation,
    MemoryChunk,
    ReflectionResult,
    ResearchPlan,
    ResearchTask,
    SearchResult,
    SubtaskStarted,
)


class ClarificationStage(Protocol):
    async def clarify(
        self, query: str, context: ConversationContext, intensity: int
    ) -> ClarificationResult:
        ...


class PlanningStage(Protocol):
    async def plan(
        self, query: str, context: ConversationContext, intensity: int
    ) -> ResearchPlan:
        ...


class SearchStage(Protocol):
    def execute(
        self,
        tasks: Sequence[ResearchTask],
        intensity: int,
        info: GatheredInformation,
        conversation_id: str | None = None,
    ) -> AsyncIterator[SubtaskStarted | SearchResult]:
        """
        Run `tasks` in order, appending new results to `info`.

        Yields a SubtaskStarted before each task and every result that was
        new to `info`. A failing task is logged and skipped.
        """
        ...


class SynthesisStage(Protocol):
    def synthesize(
        self,
        query: str,
        plan: ResearchPlan,
        info: GatheredInformation,
        memories: Sequence[MemoryChunk],
        intensity: int,
    ) -> AsyncIterator[str]:
        ...


class ReflectionStage(Protocol):
    async def reflect(
        self, query: str, answer: str, info: GatheredInformation, intensity: int
    ) -> ReflectionResult:
        ...
