# =============================================================================
# Reflection Agent — Answer Self-Assessment
# =============================================================================
#
# Scores a synthesised answer and proposes follow-up searches. The LLM
# evaluation is tried first; if it fails or returns nothing parseable, a
# deterministic heuristic scores the answer instead:
#
#   score = base (0.5)
#         + min(citation_cap 0.3, distinct [1]..[20] markers * 0.05)
#         + min(length_cap 0.2, words / 500 * 0.2)   once words >= 100
#         + 0.1                                      once sources >= 5
#   capped at 1.0
#
# Below the confidence threshold the fallback reports a generic gap and
# suggests a broader search for the question, so the loop can still continue.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass

from derp_research.agents.intensity import IntensityBand, band_for
from derp_research.agents.prompts import sanitize_prompt
from derp_research.config import Settings, settings
from derp_research.models.research import GatheredInformation, ReflectionResult
from derp_research.services.llm import LLMProvider, structured_output

logger = logging.getLogger(__name__)

FALLBACK_GAP = "Response may lack sufficient detail or citations"
FALLBACK_SEARCH_SUFFIX = "detailed analysis"
MAX_CITATION_MARKER = 20

_GUIDANCE = {
    IntensityBand.DERP: (
        "Evaluation Style: SIMPLE (Derp Mode - Elementary Level)\n"
        "- Focus on: Did it answer the basic question in simple words?\n"
        "- Be LESS strict - simple answers are okay\n"
        "- Only suggest more research if the main idea is missing"
    ),
    IntensityBand.AVERAGE: (
        "Evaluation Style: BALANCED (Average Mode)\n"
        "- Check for reasonable coverage of the topic\n"
        "- Look for adequate citations and sources\n"
        "- Standard expectations for completeness"
    ),
    IntensityBand.SMART: (
        "Evaluation Style: RIGOROUS (Smart Mode)\n"
        "- Check for comprehensive, thorough coverage\n"
        "- Expect detailed citations and academic rigor\n"
        "- Identify any gaps in advanced concepts or edge cases\n"
        "- Be MORE strict - expect high-quality, complete answers"
    ),
}


def count_citations(text: str, max_marker: int = MAX_CITATION_MARKER) -> int:
    """Number of distinct markers [1]..[max_marker] present in `text`."""
    return sum(1 for i in range(1, max_marker + 1) if f"[{i}]" in text)


@dataclass
class ConfidenceHeuristic:
    base_score: float = 0.5
    citation_weight: float = 0.05
    citation_cap: float = 0.3
    min_words: int = 100
    length_cap: float = 0.2
    length_words: int = 500
    source_bonus: float = 0.1
    source_threshold: int = 5

    @classmethod
    def from_settings(cls, config: Settings) -> ConfidenceHeuristic:
        return cls(
            base_score=config.heuristic_base_score,
            citation_weight=config.heuristic_citation_weight,
            citation_cap=config.heuristic_citation_cap,
            min_words=config.heuristic_min_words,
            length_cap=config.heuristic_length_cap,
            length_words=config.heuristic_length_words,
            source_bonus=config.heuristic_source_bonus,
            source_threshold=config.heuristic_source_threshold,
        )

    def score(self, answer: str, sources: int) -> float:
        score = self.base_score

        citations = count_citations(answer)
        if citations > 0:
            score += min(self.citation_cap, citations * self.citation_weight)

        words = len(answer.split())
        if words >= self.min_words:
            score += min(self.length_cap, words / self.length_words * self.length_cap)

        if sources >= self.source_threshold:
            score += self.source_bonus

        return min(1.0, score)


class ReflectionAgent:
    def __init__(
        self,
        llm: LLMProvider,
        heuristic: ConfidenceHeuristic | None = None,
        threshold: float | None = None,
    ):
        self._llm = llm
        self._heuristic = heuristic or ConfidenceHeuristic.from_settings(settings)
        self._threshold = (
            settings.reflection_confidence_threshold if threshold is None else threshold
        )

    async def reflect(
        self, query: str, answer: str, info: GatheredInformation, intensity: int
    ) -> ReflectionResult:
        prompt = (
            "Evaluate the quality and completeness of this research response.\n\n"
            f"{_GUIDANCE[band_for(intensity)]}\n\n"
            f'Original Question: "{sanitize_prompt(query)}"\n\n'
            f"Generated Response:\n{answer}\n\n"
            f"Sources Used: {info.total_sources_found}\n\n"
            "Evaluate based on:\n"
            "1. Number and quality of citations\n"
            "2. Coverage of the original question\n"
            "3. Factual density (specific facts vs. generalizations)\n"
            "4. Identified knowledge gaps or limitations\n\n"
            "Return confidenceScore (0.0 to 1.0; 0.7+ is good), identifiedGaps, "
            "suggestedAdditionalSearches (search queries to fill the gaps) and "
            f"requiresMoreResearch (true if confidence < {self._threshold})."
        )

        try:
            result = await structured_output(self._llm, prompt, ReflectionResult)
        except Exception as e:
            logger.warning("Reflection call failed, using heuristic: %s", e)
            result = None

        if result is not None:
            logger.info(
                "Reflection: confidence=%.2f, more research=%s",
                result.confidence_score, result.requires_more_research,
            )
            return result

        return self.fallback(query, answer, info)

    def fallback(self, query: str, answer: str, info: GatheredInformation) -> ReflectionResult:
        confidence = self._heuristic.score(answer, info.total_sources_found)
        needs_more = confidence < self._threshold
        follow_up = f"{query.strip()} {FALLBACK_SEARCH_SUFFIX}"
        logger.info("Heuristic reflection: confidence=%.2f", confidence)
        return ReflectionResult(
            confidence_score=confidence,
            identified_gaps=[FALLBACK_GAP] if needs_more else [],
            suggested_additional_searches=[follow_up] if needs_more else [],
            requires_more_research=needs_more,
        )
