# =============================================================================
# Iterative Research Orchestrator — LangGraph State Machine
# =============================================================================
#
# Drives one research run from the user's prompt to a cited, self-assessed
# answer, streaming StreamEvents as it goes.
#
# GRAPH TOPOLOGY:
#
#   START ──▶ prepare ──┬──▶ enhance ─────────────┐
#                       ├──▶ clarify ──┬──▶ END    │  (awaiting answers)
#                       │              └──────────┤
#                       └─────────────────────────┴──▶ plan ──▶ search
#                                                                  │
#            ┌──────────────────────────────────────────────────────┘
#            ▼
#        synthesize ──▶ reflect ──┬──▶ search      (follow-up tasks queued)
#                                 └──▶ finalize ──▶ END
#
# CLARIFICATION is two-phase: a run without answers asks its questions,
# stores them, and stops. The next run for the same conversation supplies
# answers, which are paired with the stored questions into an enhanced prompt.
#
# THE LOOP continues while confidence is below the threshold and the
# iteration cap has not been reached. Suggested searches become the next
# pass's tasks; a pass with no new queries still re-synthesizes.
#
# EVENTS are pushed onto an asyncio.Queue carried in the graph state and
# drained by process_research() while the graph runs in its own task.
# Cancelling the consumer cancels that task, which cancels whatever stage
# is in flight. The stream always ends with a "done" event.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import aclosing, suppress

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from derp_research.agents.base import (
    ClarificationStage,
    PlanningStage,
    ReflectionStage,
    SearchStage,
    SynthesisStage,
)
from derp_research.agents.intensity import validate_intensity
from derp_research.agents.prompts import build_enhanced_prompt
from derp_research.config import Settings, settings
from derp_research.models.events import StreamEvent
from derp_research.models.research import (
    ConversationContext,
    GatheredInformation,
    MemoryChunk,
    ReflectionResult,
    ResearchPlan,
    ResearchTask,
    SearchResult,
    SubtaskStarted,
)
from derp_research.services import streaming
from derp_research.services.memory_store import MemoryStore
from derp_research.services.search_gateway import normalize_query

logger = logging.getLogger(__name__)

SYNTHESIS_SOURCE = "deep-research-synthesis"
ITERATION_SEPARATOR = "\n\n---\n\n"
COMPREHENSIVE_REASONING = "Research appears comprehensive with adequate sources and citations."
NEEDS_DETAIL_REASONING = "Response may benefit from additional detail or sources."


# ---------------------------------------------------------------------------
# Graph State Schema
# ---------------------------------------------------------------------------


class ResearchState(TypedDict, total=False):
    """
    State that flows through the research graph.

    total=False so nodes only return the keys they update. `events` and
    `info` are mutable objects shared by reference; the graph runs without
    a checkpointer, so they never need to be serialisable.
    """

    # --- Input (set by process_research) ---
    prompt: str
    conversation_id: str
    intensity: int
    clarification_answers: list[str] | None
    events: asyncio.Queue

    # --- Intermediate ---
    context: ConversationContext
    awaiting_answers: bool
    enhanced_prompt: str
    plan: ResearchPlan
    info: GatheredInformation
    pending_tasks: list[ResearchTask]
    completed_tasks: list[ResearchTask]
    iteration: int
    reflection: ReflectionResult
    continue_research: bool

    # --- Output ---
    answer: str              # latest synthesis
    transcript: str          # every synthesis as streamed, separated


# ---------------------------------------------------------------------------
# Loop Decision
# ---------------------------------------------------------------------------


def should_continue(
    reflection: ReflectionResult,
    iteration: int,
    threshold: float,
    max_iterations: int,
) -> bool:
    """Another search/synthesize/reflect cycle runs iff both budgets allow it."""
    return reflection.confidence_score < threshold and iteration < max_iterations


def follow_up_tasks(
    reflection: ReflectionResult,
    completed: Sequence[ResearchTask],
) -> list[ResearchTask]:
    """
    Subtasks for the next search pass.

    Suggested searches are preferred; identified gaps are used as queries
    only when there are no suggestions. Duplicates within the list are
    dropped after normalisation. A query already searched in this run is
    kept: the search cache answers it and the pass still re-synthesizes.
    New tasks are ordered after every existing task.
    """
    queries = reflection.suggested_additional_searches or reflection.identified_gaps
    priority = max((t.priority for t in completed), default=0) + 1

    seen: set[str] = set()
    tasks: list[ResearchTask] = []
    for query in queries:
        key = normalize_query(query)
        if not key or key in seen:
            continue
        seen.add(key)
        tasks.append(
            ResearchTask(
                description=f"Follow-up research: {query.strip()}",
                search_query=query.strip(),
                priority=priority,
            )
        )
        priority += 1
    return tasks


def reflection_reasoning(reflection: ReflectionResult, threshold: float) -> str:
    if reflection.identified_gaps:
        return "; ".join(reflection.identified_gaps)
    if reflection.confidence_score >= threshold:
        return COMPREHENSIVE_REASONING
    return NEEDS_DETAIL_REASONING


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class IterativeResearchOrchestrator:
    def __init__(
        self,
        memory: MemoryStore,
        clarifier: ClarificationStage,
        planner: PlanningStage,
        searcher: SearchStage,
        synthesizer: SynthesisStage,
        reflector: ReflectionStage,
        config: Settings | None = None,
    ):
        self._memory = memory
        self._clarifier = clarifier
        self._planner = planner
        self._searcher = searcher
        self._synthesizer = synthesizer
        self._reflector = reflector
        self._config = config or settings
        self._graph = self._build_graph()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def process_research(
        self,
        prompt: str,
        conversation_id: str,
        intensity_level: int = 100,
        clarification_answers: Sequence[str] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Start a research run and return its event stream.

        Arguments are validated here, before any work starts: an empty
        prompt, a blank conversation id, or an intensity outside 0..100
        raise ValueError.
        """
        if not prompt or not prompt.strip():
            raise ValueError("prompt must not be empty")
        if not conversation_id or not conversation_id.strip():
            raise ValueError("conversation_id must not be empty")
        validate_intensity(intensity_level)

        initial: ResearchState = {
            "prompt": prompt.strip(),
            "conversation_id": conversation_id,
            "intensity": intensity_level,
            "clarification_answers": (
                list(clarification_answers) if clarification_answers is not None else None
            ),
            "events": asyncio.Queue(),
        }
        return self._stream(initial)

    async def _stream(self, initial: ResearchState) -> AsyncIterator[StreamEvent]:
        events: asyncio.Queue = initial["events"]
        conversation_id = initial["conversation_id"]
        logger.info(
            "Starting research: conversation=%s, intensity=%d, prompt='%s'",
            conversation_id, initial["intensity"], initial["prompt"][:80],
        )

        run = asyncio.create_task(
            self._graph.ainvoke(initial, config={"recursion_limit": self._recursion_limit()})
        )
        getter: asyncio.Future | None = None
        try:
            while True:
                getter = asyncio.ensure_future(events.get())
                finished, _ = await asyncio.wait(
                    {getter, run}, return_when=asyncio.FIRST_COMPLETED
                )
                if getter in finished:
                    yield getter.result()
                    continue
                getter.cancel()
                break

            while not events.empty():
                yield events.get_nowait()

            try:
                await run
            except Exception as e:
                logger.exception("Research failed for conversation %s", conversation_id)
                yield streaming.error(conversation_id, f"Research failed: {e}")

            yield streaming.done(conversation_id)
        finally:
            if getter is not None and not getter.done():
                getter.cancel()
            if not run.done():
                run.cancel()
                with suppress(asyncio.CancelledError):
                    await run

    def _recursion_limit(self) -> int:
        # prepare, enhance/clarify, plan, finalize + search/synthesize/reflect per pass
        return 10 + 3 * (self._config.reflection_max_iterations + 1)

    # -------------------------------------------------------------------------
    # Graph Assembly
    # -------------------------------------------------------------------------

    def _build_graph(self):
        builder = StateGraph(ResearchState)
        builder.add_node("prepare", self._prepare_node)
        builder.add_node("clarify", self._clarify_node)
        builder.add_node("enhance", self._enhance_node)
        builder.add_node("plan", self._plan_node)
        builder.add_node("search", self._search_node)
        builder.add_node("synthesize", self._synthesize_node)
        builder.add_node("reflect", self._reflect_node)
        builder.add_node("finalize", self._finalize_node)

        builder.add_edge(START, "prepare")
        builder.add_conditional_edges(
            "prepare", self._route_after_prepare, ["enhance", "clarify", "plan"]
        )
        builder.add_conditional_edges(
            "clarify", self._route_after_clarify, ["plan", END]
        )
        builder.add_edge("enhance", "plan")
        builder.add_edge("plan", "search")
        builder.add_edge("search", "synthesize")
        builder.add_edge("synthesize", "reflect")
        builder.add_conditional_edges(
            "reflect", self._route_after_reflect, ["search", "finalize"]
        )
        builder.add_edge("finalize", END)
        return builder.compile()

    def _route_after_prepare(self, state: ResearchState) -> str:
        if state.get("clarification_answers") is not None:
            return "enhance"
        if self._config.clarification_enabled:
            return "clarify"
        return "plan"

    @staticmethod
    def _route_after_clarify(state: ResearchState) -> str:
        return END if state.get("awaiting_answers") else "plan"

    @staticmethod
    def _route_after_reflect(state: ResearchState) -> str:
        return "search" if state.get("continue_research") else "finalize"

    # -------------------------------------------------------------------------
    # Nodes
    # -------------------------------------------------------------------------

    async def _prepare_node(self, state: ResearchState) -> dict:
        conversation_id = state["conversation_id"]
        await self._memory.save_message(conversation_id, "user", state["prompt"])
        context = await self._memory.get_conversation_context(
            conversation_id, query=state["prompt"]
        )
        return {"context": context}

    async def _clarify_node(self, state: ResearchState) -> dict:
        """Ask clarifying questions; a failing stage means no clarification."""
        conversation_id = state["conversation_id"]
        _emit(state, streaming.progress(
            conversation_id, "clarifying", "Analyzing your question..."
        ))

        try:
            result = await self._clarifier.clarify(
                state["prompt"], state["context"], state["intensity"]
            )
        except Exception as e:
            logger.warning("Clarification failed, continuing without it: %s", e)
            return {"awaiting_answers": False}

        if not result.questions:
            return {"awaiting_answers": False}

        await self._memory.store_clarification_questions(conversation_id, result)
        event = streaming.clarification(conversation_id, result)
        await self._memory.save_message(conversation_id, "assistant", event.token)
        _emit(state, event)
        logger.info(
            "Asked %d clarifying questions in conversation %s",
            len(result.questions), conversation_id,
        )
        return {"awaiting_answers": True}

    async def _enhance_node(self, state: ResearchState) -> dict:
        conversation_id = state["conversation_id"]
        questions = await self._memory.get_clarification_questions(conversation_id) or []
        enhanced = build_enhanced_prompt(
            state["prompt"], questions, state.get("clarification_answers") or []
        )
        await self._memory.clear_clarification_questions(conversation_id)
        return {"enhanced_prompt": enhanced}

    async def _plan_node(self, state: ResearchState) -> dict:
        conversation_id = state["conversation_id"]
        query = state.get("enhanced_prompt") or state["prompt"]
        _emit(state, streaming.progress(
            conversation_id, "planning", "Creating research plan..."
        ))

        try:
            plan = await self._planner.plan(query, state["context"], state["intensity"])
        except Exception as e:
            logger.warning("Planning failed, using single-task plan: %s", e)
            plan = None
        if plan is None or not plan.subtasks:
            plan = ResearchPlan.fallback(query)

        _emit(state, streaming.plan(conversation_id, plan))
        return {
            "enhanced_prompt": query,
            "plan": plan,
            "info": GatheredInformation(),
            "pending_tasks": plan.sorted_subtasks(),
            "completed_tasks": [],
            "iteration": 0,
            "transcript": "",
        }

    async def _search_node(self, state: ResearchState) -> dict:
        conversation_id = state["conversation_id"]
        info = state["info"]
        tasks = state.get("pending_tasks") or []
        _emit(state, streaming.progress(
            conversation_id, "searching",
            f"Searching the web ({len(tasks)} queries)...", queries=len(tasks),
        ))

        async with aclosing(
            self._searcher.execute(tasks, state["intensity"], info, conversation_id)
        ) as stream:
            async for item in stream:
                if isinstance(item, SubtaskStarted):
                    _emit(state, streaming.search_query(
                        conversation_id, item.task, item.number, item.total
                    ))
                elif isinstance(item, SearchResult):
                    _emit(state, streaming.source(
                        conversation_id, item, info.total_sources_found
                    ))

        _emit(state, streaming.progress(
            conversation_id, "sources_complete",
            f"Found {info.total_sources_found} sources",
            sources=info.total_sources_found,
            memories=len(info.stored_memory_ids),
        ))
        if info.total_sources_found == 0:
            _emit(state, streaming.progress(
                conversation_id, "fallback",
                "No sources found, answering from general knowledge",
            ))

        return {
            "pending_tasks": [],
            "completed_tasks": [*state.get("completed_tasks", []), *tasks],
        }

    async def _synthesize_node(self, state: ResearchState) -> dict:
        conversation_id = state["conversation_id"]
        iteration = state.get("iteration", 0) + 1
        query = state["enhanced_prompt"]
        transcript = state.get("transcript", "")

        if iteration == 1:
            message = "Synthesizing research findings..."
        else:
            message = f"Re-synthesizing with additional research (iteration {iteration})..."
        _emit(state, streaming.progress(
            conversation_id, "synthesizing", message, iteration=iteration
        ))

        memories = await self._relevant_memories(query, conversation_id)

        if transcript:
            transcript += ITERATION_SEPARATOR
            _emit(state, streaming.content(conversation_id, ITERATION_SEPARATOR))

        parts: list[str] = []
        async with aclosing(
            self._synthesizer.synthesize(
                query, state["plan"], state["info"], memories, state["intensity"]
            )
        ) as tokens:
            async for token in tokens:
                parts.append(token)
                _emit(state, streaming.content(conversation_id, token))

        answer = "".join(parts)
        return {"answer": answer, "transcript": transcript + answer, "iteration": iteration}

    async def _reflect_node(self, state: ResearchState) -> dict:
        conversation_id = state["conversation_id"]
        _emit(state, streaming.progress(
            conversation_id, "reflecting", "Evaluating research quality..."
        ))
        reflection = await self._reflector.reflect(
            state["prompt"], state["answer"], state["info"], state["intensity"]
        )

        if not should_continue(
            reflection,
            state["iteration"],
            threshold=self._config.reflection_confidence_threshold,
            max_iterations=self._config.reflection_max_iterations,
        ):
            return {"reflection": reflection, "pending_tasks": [], "continue_research": False}

        tasks = follow_up_tasks(reflection, state.get("completed_tasks", []))
        logger.info(
            "Confidence %.2f below threshold, %d follow-up searches",
            reflection.confidence_score, len(tasks),
        )
        _emit(state, streaming.progress(
            conversation_id, "reflecting",
            f"Confidence {reflection.confidence_score:.0%}, researching further...",
            followUps=[t.search_query for t in tasks],
        ))
        return {"reflection": reflection, "pending_tasks": tasks, "continue_research": True}

    async def _finalize_node(self, state: ResearchState) -> dict:
        conversation_id = state["conversation_id"]
        reflection = state["reflection"]
        iterations = state["iteration"]
        reasoning = reflection_reasoning(
            reflection, self._config.reflection_confidence_threshold
        )
        _emit(state, streaming.reflection(conversation_id, reflection, reasoning, iterations))

        transcript = state.get("transcript") or state.get("answer", "")
        await self._memory.save_message(conversation_id, "assistant", transcript)

        try:
            stored = await self._memory.store_memory(
                state.get("answer", ""),
                source=SYNTHESIS_SOURCE,
                tags=["synthesis", "deep-research", state["prompt"]],
                conversation_id=conversation_id,
            )
        except Exception as e:
            logger.error("Failed to store synthesis for %s: %s", conversation_id, e)
        else:
            if stored.is_partially_successful:
                logger.warning(
                    "Synthesis stored partially: %d/%d chunks",
                    stored.successful_chunks, stored.total_chunks,
                )
            elif stored.is_complete_failure:
                logger.warning("Synthesis for %s was not stored", conversation_id)

        logger.info(
            "Research complete: conversation=%s, iterations=%d, sources=%d, confidence=%.2f",
            conversation_id, iterations, state["info"].total_sources_found,
            reflection.confidence_score,
        )
        return {}

    # -------------------------------------------------------------------------
    # Internal Helpers
    # -------------------------------------------------------------------------

    async def _relevant_memories(self, query: str, conversation_id: str) -> list[MemoryChunk]:
        try:
            return await self._memory.search_memory(
                query, self._config.memory_top_k, conversation_id
            )
        except Exception as e:
            logger.warning("Memory search failed before synthesis: %s", e)
            return []


def _emit(state: ResearchState, event: StreamEvent) -> None:
    state["events"].put_nowait(event)


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

_orchestrator: IterativeResearchOrchestrator | None = None


def get_orchestrator() -> IterativeResearchOrchestrator:
    """
    Return the process-wide orchestrator (lazy singleton).

    With use_mock_services the LLM stages are replaced by the deterministic
    mocks; search still goes through the gateway, fetcher and memory store.
    """
    global _orchestrator
    if _orchestrator is None:
        from derp_research.agents.search import SearchAgent
        from derp_research.services.content_fetcher import get_content_fetcher
        from derp_research.services.memory_store import get_memory_store
        from derp_research.services.search_gateway import get_search_gateway

        memory = get_memory_store()
        searcher = SearchAgent(get_search_gateway(), memory, get_content_fetcher(), settings)

        if settings.use_mock_services:
            from derp_research.agents.mock import (
                MockClarificationAgent,
                MockPlannerAgent,
                MockReflectionAgent,
                MockSynthesisAgent,
            )

            clarifier = MockClarificationAgent()
            planner = MockPlannerAgent()
            synthesizer = MockSynthesisAgent()
            reflector = MockReflectionAgent(
                settings.mock_confidence_score, settings.reflection_confidence_threshold
            )
        else:
            from derp_research.agents.clarification import ClarificationAgent
            from derp_research.agents.planner import PlannerAgent
            from derp_research.agents.reflection import ReflectionAgent
            from derp_research.agents.synthesis import SynthesisAgent
            from derp_research.services.llm import get_llm_provider

            llm = get_llm_provider()
            clarifier = ClarificationAgent(llm)
            planner = PlannerAgent(llm)
            synthesizer = SynthesisAgent(llm)
            reflector = ReflectionAgent(llm)

        _orchestrator = IterativeResearchOrchestrator(
            memory, clarifier, planner, searcher, synthesizer, reflector, settings
        )
    return _orchestrator
