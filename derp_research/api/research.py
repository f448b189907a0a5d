# =============================================================================
# Research API — Streaming Research Endpoint
# =============================================================================
#
# POST /research runs the research graph and streams its events as
# server-sent events. Each SSE message carries the event type in the
# `event` field and the StreamEvent JSON in `data`:
#
#   event: content
#   data: {"type": "content", "token": "...", "conversationId": "...", "data": {}}
#
# The last message of every stream is a "done" event. A client that
# disconnects cancels the run.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from sse_starlette.sse import EventSourceResponse

from derp_research.agents.orchestrator import IterativeResearchOrchestrator
from derp_research.api.deps import get_research_orchestrator, get_store
from derp_research.models.requests import ResearchRequest
from derp_research.services.memory_store import MemoryStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Research"])


@router.post(
    "/research",
    summary="Run a research query",
    description=(
        "Clarifies, plans, searches the web, and synthesises a cited answer, "
        "iterating while self-assessed confidence is low. Progress, sources "
        "and answer tokens are streamed as server-sent events."
    ),
)
async def research_endpoint(
    request: ResearchRequest,
    orchestrator: IterativeResearchOrchestrator = Depends(get_research_orchestrator),
    store: MemoryStore = Depends(get_store),
) -> EventSourceResponse:
    conversation_id = request.conversation_id or await store.create_conversation()

    logger.info(
        "Research request: conversation=%s, intensity=%d, answers=%s, prompt='%s'",
        conversation_id,
        request.intensity_level,
        request.clarification_answers is not None,
        request.prompt[:80],
    )

    try:
        events = orchestrator.process_research(
            request.prompt,
            conversation_id,
            intensity_level=request.intensity_level,
            clarification_answers=request.clarification_answers,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e

    async def event_generator():
        async for event in events:
            yield {
                "event": event.type.value,
                "data": event.to_json(),
            }

    return EventSourceResponse(event_generator())
