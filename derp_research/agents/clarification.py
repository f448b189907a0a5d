# =============================================================================
# Clarification Agent — Questions Before Research
# =============================================================================
#
# Asks the LLM for open-ended questions that would narrow a research request.
# The number and register of questions follow the intensity band. When the
# LLM fails or returns nothing usable, canned questions for the band are
# returned, so the result always holds at least one question.
# =============================================================================

from __future__ import annotations

import logging

from derp_research.agents.intensity import IntensityBand, band_for
from derp_research.agents.prompts import context_summary, sanitize_prompt
from derp_research.models.research import ClarificationResult, ConversationContext
from derp_research.services.llm import LLMProvider, structured_output

logger = logging.getLogger(__name__)

_GUIDANCE = {
    IntensityBand.DERP: (
        "Question Style: SUPER SIMPLE (Derp Mode - Elementary Level)\n"
        "- Generate 1-2 VERY BASIC questions\n"
        "- Use simple words a 10-year-old would understand\n"
        '- Ask simple things like "What do you want to learn?" or "Why are you curious?"\n'
        "- Keep questions SHORT and FRIENDLY"
    ),
    IntensityBand.AVERAGE: (
        "Question Style: FOCUSED (Average Mode)\n"
        "- Generate 2-3 clarifying questions\n"
        "- Use clear, professional language\n"
        "- Focus on scope, specific aspects, and timeframe"
    ),
    IntensityBand.SMART: (
        "Question Style: NUANCED (Smart Mode - Academic/Professional)\n"
        "- Generate 3-4 detailed, probing questions\n"
        "- Use precise, academic language\n"
        "- Explore temporal scope, analytical framework, and methodological preferences"
    ),
}

FALLBACK_QUESTIONS: dict[IntensityBand, ClarificationResult] = {
    IntensityBand.DERP: ClarificationResult(
        questions=[
            "What do you want to learn about?",
            "Why are you curious about this?",
        ],
        rationale="These simple questions help us understand what you're looking for.",
    ),
    IntensityBand.AVERAGE: ClarificationResult(
        questions=[
            "What specific aspects of this topic are you most interested in?",
            "Are you looking for recent information or historical context?",
            "What will you use this research for?",
        ],
        rationale="These questions help narrow down the scope and focus of the research.",
    ),
    IntensityBand.SMART: ClarificationResult(
        questions=[
            "What is the temporal and geographical scope of your inquiry?",
            "Are you seeking comparative analysis, causal relationships, or descriptive synthesis?",
            "What level of technical depth do you require?",
            "Are there specific methodologies or frameworks you prefer?",
        ],
        rationale=(
            "These questions help establish the analytical framework and "
            "methodological boundaries for comprehensive research."
        ),
    ),
}


def fallback_questions(intensity: int) -> ClarificationResult:
    return FALLBACK_QUESTIONS[band_for(intensity)].model_copy(deep=True)


class ClarificationAgent:
    def __init__(self, llm: LLMProvider):
        self._llm = llm

    async def clarify(
        self, query: str, context: ConversationContext, intensity: int
    ) -> ClarificationResult:
        band = band_for(intensity)
        prompt = (
            "You are a research assistant helping to understand the user's research needs better.\n\n"
            f"{_GUIDANCE[band]}\n\n"
            f'User\'s Initial Query: "{sanitize_prompt(query)}"\n\n'
            f"{context_summary(context, include_memories=False)}\n\n"
            "Generate clarifying questions that will help you better understand:\n"
            "- What specific aspects they're most interested in\n"
            "- The depth/scope of information they need\n"
            "- Any particular focus areas or constraints\n"
            "- Context for why they're researching this\n\n"
            'Return "questions" (open-ended questions) and "rationale" '
            "(why these questions help)."
        )

        try:
            result = await structured_output(self._llm, prompt, ClarificationResult)
        except Exception as e:
            logger.warning("Clarification call failed, using fallback questions: %s", e)
            result = None

        if result is None or not result.questions:
            return fallback_questions(intensity)

        logger.info("Generated %d clarifying questions (%s)", len(result.questions), band.value)
        return result
