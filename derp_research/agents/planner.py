# =============================================================================
# Planner Agent — Query Decomposition
# =============================================================================
#
# Breaks a research question into prioritised search subtasks. The number
# and sophistication of subtasks follow the intensity band.
#
# Any failure (API error, unparseable JSON, empty plan) yields the fallback
# plan: one subtask that searches for the raw query. Planning never stalls
# the pipeline.
# =============================================================================

from __future__ import annotations

import logging

from derp_research.agents.intensity import IntensityBand, band_for
from derp_research.agents.prompts import context_summary, sanitize_prompt
from derp_research.models.research import ConversationContext, ResearchPlan
from derp_research.services.llm import LLMProvider, structured_output

logger = logging.getLogger(__name__)

_GUIDANCE = {
    IntensityBand.DERP: (
        "Planning Style: SUPER SIMPLE (Derp Mode - Elementary School Level)\n"
        "- Create only 2 VERY BASIC questions about the topic\n"
        '- Ask simple "what is" or "why" questions\n'
        "- Make search queries as simple as possible (3-5 words max)"
    ),
    IntensityBand.AVERAGE: (
        "Planning Style: BALANCED (Average Mode)\n"
        "- Create 3-5 focused research subtasks\n"
        "- Balance breadth and depth\n"
        "- Formulate specific but accessible search queries"
    ),
    IntensityBand.SMART: (
        "Planning Style: COMPREHENSIVE (Smart Mode)\n"
        "- Create 5-7 detailed, specific research subtasks\n"
        "- Cover all aspects thoroughly, including edge cases\n"
        "- Formulate sophisticated, targeted search queries\n"
        "- Include both foundational and advanced topics"
    ),
}


class PlannerAgent:
    def __init__(self, llm: LLMProvider):
        self._llm = llm

    async def plan(
        self, query: str, context: ConversationContext, intensity: int
    ) -> ResearchPlan:
        """
        Create a research plan for `query`, subtasks sorted by priority.

        Returns ResearchPlan.fallback(query) when the LLM gives no usable plan.
        """
        band = band_for(intensity)
        prompt = (
            "You are a research planner. Break down this query into specific research subtasks.\n\n"
            f"{_GUIDANCE[band]}\n\n"
            f'User Query: "{sanitize_prompt(query)}"\n\n'
            f"{context_summary(context)}\n\n"
            "Create a research plan with:\n"
            "1. mainGoal: The overall objective (1-2 sentences)\n"
            "2. subtasks: specific research tasks, each with description, "
            "searchQuery (a search engine query) and priority (1 = highest)\n"
            "3. keyConcepts: Important terms or topics\n\n"
            "Think step-by-step about what information is needed to answer the query."
        )

        try:
            plan = await structured_output(self._llm, prompt, ResearchPlan)
        except Exception as e:
            logger.warning("Planning call failed, using single-task plan: %s", e)
            plan = None

        if plan is None or not plan.subtasks:
            return ResearchPlan.fallback(query)

        plan = plan.model_copy(update={"subtasks": plan.sorted_subtasks()})
        if not plan.main_goal:
            plan.main_goal = query

        logger.info(
            "Created plan with %d subtasks (%s) for '%s'",
            len(plan.subtasks), band.value, query[:80],
        )
        return plan
