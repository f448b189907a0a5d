# =============================================================================
# Synthesis Agent — Streaming Cited Answer
# =============================================================================
#
# Streams an answer built from the gathered sources (numbered [1]..[n] in
# gathering order) and excerpts of relevant memories. The response style
# follows the intensity band.
#
# The LLM stream is wrapped in contextlib.aclosing so that a consumer that
# stops early (or is cancelled) closes the underlying HTTP stream.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import aclosing

from derp_research.agents.intensity import IntensityBand, band_for
from derp_research.agents.prompts import sanitize_prompt
from derp_research.models.research import GatheredInformation, MemoryChunk, ResearchPlan
from derp_research.services.llm import LLMProvider

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a research synthesizer. Create comprehensive, well-cited responses "
    "based on gathered information. Use [1], [2], etc. for citations."
)

_STYLE = {
    IntensityBand.DERP: (
        "Response Style: SUPER SIMPLE (Derp Mode - Elementary School Report)\n"
        "- Write like you're explaining to a 10-year-old child\n"
        "- Use ONLY simple words and VERY SHORT sentences\n"
        '- Use simple comparisons ("it\'s like...", "imagine if...")\n'
        "- Make paragraphs tiny (1-2 sentences only)"
    ),
    IntensityBand.AVERAGE: (
        "Response Style: BALANCED & PROFESSIONAL (Average Mode)\n"
        "- Use clear, professional language\n"
        "- Provide moderate detail with good explanations\n"
        "- Structure with clear sections and transitions\n"
        "- Define technical terms when introduced"
    ),
    IntensityBand.SMART: (
        "Response Style: COMPREHENSIVE & ACADEMIC (Smart Mode)\n"
        "- Use precise, technical language and domain-specific terminology\n"
        "- Provide DETAILED, THOROUGH explanations with nuanced insights\n"
        "- Analyze multiple perspectives, edge cases, and implications\n"
        "- Discuss limitations, caveats, and areas requiring further research"
    ),
}


def build_synthesis_prompt(
    query: str,
    plan: ResearchPlan,
    info: GatheredInformation,
    memories: Sequence[MemoryChunk],
    intensity: int,
) -> str:
    lines = [
        f'User Question: "{sanitize_prompt(query)}"',
        "",
        f"Research Goal: {plan.main_goal}",
        "",
        _STYLE[band_for(intensity)],
        "",
    ]

    if info.results:
        lines.append("Sources Gathered:")
        for i, result in enumerate(info.results, start=1):
            lines.append(f"[{i}] {result.title}")
            lines.append(f"    URL: {result.url}")
            lines.append(f"    Summary: {result.snippet}")
            lines.append("")
    else:
        lines.append(
            "No web sources were found. Answer from general knowledge and say "
            "that no sources could be cited."
        )
        lines.append("")

    if memories:
        lines.append("Relevant Context from Previous Research:")
        for memory in memories:
            lines.append(f"- {memory.text[:200]}...")
            lines.append(f"  Source: {memory.source}")
            lines.append("")

    lines.extend([
        "General Instructions:",
        "1. Write a response that directly answers the user's question",
        "2. Cite sources using [1], [2], etc. matching the numbered sources above",
        "3. Organize information logically",
        "4. Use markdown formatting for better readability",
        "5. Be factual, accurate, and cite sources for all claims",
        "",
        "Begin your response:",
    ])
    return "\n".join(lines)


class SynthesisAgent:
    def __init__(self, llm: LLMProvider):
        self._llm = llm

    async def synthesize(
        self,
        query: str,
        plan: ResearchPlan,
        info: GatheredInformation,
        memories: Sequence[MemoryChunk],
        intensity: int,
    ) -> AsyncIterator[str]:
        prompt = build_synthesis_prompt(query, plan, info, memories, intensity)
        logger.info(
            "Starting synthesis (%d sources, %d memories)",
            len(info.results), len(memories),
        )
        async with aclosing(
            self._llm.stream([{"role": "user", "content": prompt}], system=SYSTEM_PROMPT)
        ) as tokens:
            async for token in tokens:
                yield token
