# =============================================================================
# Mock Stages — Deterministic Offline Pipeline
# =============================================================================
#
# Stand-ins for the LLM-backed stages, selected with USE_MOCK_SERVICES=true.
# Output depends only on the inputs and the intensity level, so runs are
# reproducible. The real SearchAgent is used with the mock search provider
# and content fetcher, so memory storage is exercised even offline.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence

from derp_research.agents.intensity import IntensityBand, band_for
from derp_research.models.research import (
    ClarificationResult,
    ConversationContext,
    GatheredInformation,
    MemoryChunk,
    ReflectionResult,
    ResearchPlan,
    ResearchTask,
)

logger = logging.getLogger(__name__)

_PLAN_TEMPLATES = [
    ("Research foundational concepts and definitions", "definition fundamentals basics"),
    ("Investigate technical architecture and implementation", "architecture technical implementation"),
    ("Explore practical applications and use cases", "applications use cases examples"),
    ("Compare with alternatives and analyze trade-offs", "comparison alternatives pros cons"),
    ("Review current trends and future directions", "trends future outlook developments"),
]

_TASKS_PER_BAND = {IntensityBand.DERP: 1, IntensityBand.AVERAGE: 3, IntensityBand.SMART: 5}
_QUESTIONS_PER_BAND = {IntensityBand.DERP: 1, IntensityBand.AVERAGE: 2, IntensityBand.SMART: 4}

_ANSWERS = {
    IntensityBand.DERP: (
        "**Summary**\n"
        "This is a proven idea with lots of support [1]. "
        "The basics are easy to learn and well explained [2].\n\n"
        "**Key Points**\n"
        "- It helps with common problems [3]\n"
        "- It grows when you need it to [4]\n"
        "- Many tools already work with it [5]"
    ),
    IntensityBand.AVERAGE: (
        "**Key Findings**\n"
        "Research indicates this is a well-established approach with proven benefits [1]. "
        "The core concepts are supported by extensive documentation and case studies [2].\n\n"
        "**Implementation Considerations**\n"
        "Successful deployment requires careful planning and resource allocation [3]. "
        "Best practices emphasize iterative implementation and continuous improvement [4].\n\n"
        "**Practical Benefits**\n"
        "Users report improved efficiency and better outcomes [5]. "
        "Integration with existing systems is generally straightforward [6]."
    ),
    IntensityBand.SMART: (
        "**Overview**\n"
        "The research reveals a multifaceted topic with significant implications [1]. "
        "Current literature emphasizes both foundational principles and emerging trends [2].\n\n"
        "**Technical Architecture**\n"
        "The underlying architecture demonstrates several key design patterns [3]:\n"
        "- Modular component organization enabling scalability [4]\n"
        "- Event-driven communication reducing coupling [5]\n\n"
        "**Comparative Analysis**\n"
        "Compared to alternative approaches, this solution offers advantages in flexibility "
        "and maintainability [6], with trade-offs in initial complexity [7].\n\n"
        "**Future Outlook**\n"
        "Emerging work points to further gains in efficiency and scalability [8]."
    ),
}


class MockClarificationAgent:
    async def clarify(
        self, query: str, context: ConversationContext, intensity: int
    ) -> ClarificationResult:
        questions = [
            f"What specific aspect of '{query}' are you most interested in?",
            "Are you looking for technical details, practical applications, or theoretical background?",
            "Would you like information about recent developments or historical context?",
            "Should the research focus on a particular industry or use case?",
        ]
        count = _QUESTIONS_PER_BAND[band_for(intensity)]
        return ClarificationResult(
            questions=questions[:count],
            rationale="These questions will help me provide more focused and relevant research results.",
        )


class MockPlannerAgent:
    async def plan(
        self, query: str, context: ConversationContext, intensity: int
    ) -> ResearchPlan:
        count = _TASKS_PER_BAND[band_for(intensity)]
        subtasks = [
            ResearchTask(description=description, search_query=f"{query} {suffix}", priority=i)
            for i, (description, suffix) in enumerate(_PLAN_TEMPLATES[:count], start=1)
        ]
        logger.info("Mock plan with %d subtasks for '%s'", count, query[:80])
        return ResearchPlan(
            main_goal=f"Comprehensively research: {query}",
            subtasks=subtasks,
            key_concepts=["foundations", "implementation", "applications", "comparisons", "trends"][:count],
        )


class MockSynthesisAgent:
    async def synthesize(
        self,
        query: str,
        plan: ResearchPlan,
        info: GatheredInformation,
        memories: Sequence[MemoryChunk],
        intensity: int,
    ) -> AsyncIterator[str]:
        response = (
            f"Based on research across {info.total_sources_found} sources, "
            f"here's what I found about {query}:\n\n"
            + _ANSWERS[band_for(intensity)]
        )
        for word in response.split(" "):
            yield word + " "


class MockReflectionAgent:
    """Reports a fixed confidence; below the threshold it proposes one follow-up search."""

    def __init__(self, confidence: float = 0.85, threshold: float = 0.7):
        self._confidence = confidence
        self._threshold = threshold

    async def reflect(
        self, query: str, answer: str, info: GatheredInformation, intensity: int
    ) -> ReflectionResult:
        needs_more = self._confidence < self._threshold
        return ReflectionResult(
            confidence_score=self._confidence,
            identified_gaps=["Recent developments not covered"] if needs_more else [],
            suggested_additional_searches=[f"{query} latest research"] if needs_more else [],
            requires_more_research=needs_more,
        )
