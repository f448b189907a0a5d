from __future__ import annotations

from typing import Any

from derp_research.models.events import EventType, StreamEvent
from derp_research.models.research import (
    ClarificationResult,
    ReflectionResult,
    ResearchPlan,
    ResearchTask,
    SearchResult,
)


def content(conversation_id: str, token: str) -> StreamEvent:
    return StreamEvent(EventType.CONTENT, conversation_id, token=token)


def progress(conversation_id: str, stage: str, message: str, **details: Any) -> StreamEvent:
    """Emit a progress event for a pipeline stage."""
    return StreamEvent(
        EventType.PROGRESS,
        conversation_id,
        token=message,
        data={"stage": stage, "message": message, **details},
    )


def plan(conversation_id: str, research_plan: ResearchPlan) -> StreamEvent:
    subtasks = research_plan.sorted_subtasks()
    lines = [f"Research plan: {research_plan.main_goal}"]
    lines.extend(f"{i}. {t.description}" for i, t in enumerate(subtasks, start=1))
    return StreamEvent(
        EventType.PLAN,
        conversation_id,
        token="\n".join(lines),
        data={
            "mainGoal": research_plan.main_goal,
            "keyConcepts": research_plan.key_concepts,
            "subtasks": [
                {
                    "description": t.description,
                    "searchQuery": t.search_query,
                    "priority": t.priority,
                }
                for t in subtasks
            ],
        },
    )


def search_query(
    conversation_id: str, task: ResearchTask, number: int, total: int
) -> StreamEvent:
    return StreamEvent(
        EventType.SEARCH_QUERY,
        conversation_id,
        token=f"Searching ({number}/{total}): {task.search_query}",
        data={"query": task.search_query, "description": task.description,
              "number": number, "total": total},
    )


def source(conversation_id: str, result: SearchResult, index: int) -> StreamEvent:
    return StreamEvent(
        EventType.SOURCE,
        conversation_id,
        token=f"[{index}] {result.title}",
        data={"index": index, "title": result.title, "url": result.url,
              "snippet": result.snippet},
    )


def clarification(conversation_id: str, result: ClarificationResult) -> StreamEvent:
    lines = ["Before researching, a few questions:"]
    lines.extend(f"{i}. {q}" for i, q in enumerate(result.questions, start=1))
    return StreamEvent(
        EventType.CLARIFICATION,
        conversation_id,
        token="\n".join(lines),
        data={"questions": result.questions, "rationale": result.rationale},
    )


def reflection(
    conversation_id: str, result: ReflectionResult, reasoning: str, iterations: int
) -> StreamEvent:
    return StreamEvent(
        EventType.REFLECTION,
        conversation_id,
        token=f"Confidence: {result.confidence_score:.0%}",
        data={
            "confidenceScore": result.confidence_score,
            "identifiedGaps": result.identified_gaps,
            "suggestedAdditionalSearches": result.suggested_additional_searches,
            "reasoning": reasoning,
            "iterations": iterations,
        },
    )


def error(conversation_id: str, message: str) -> StreamEvent:
    return StreamEvent(
        EventType.ERROR, conversation_id, token=message, data={"message": message}
    )


def done(conversation_id: str) -> StreamEvent:
    return StreamEvent(EventType.DONE, conversation_id)
