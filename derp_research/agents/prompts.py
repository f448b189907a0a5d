"""Prompt helpers shared by the pipeline stages."""

from __future__ import annotations

import re
from collections.abc import Sequence

from derp_research.models.research import ConversationContext

MAX_PROMPT_CHARS = 10000

# C0 controls and DEL, except \t \n \r
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def sanitize_prompt(text: str, max_chars: int = MAX_PROMPT_CHARS) -> str:
    """
    Make user text safe to embed in a prompt.

    Truncates to `max_chars`, strips control characters (keeping tab,
    newline and carriage return), and defuses sequences models treat as
    prompt delimiters.
    """
    if not text:
        return ""
    text = text[:max_chars]
    text = _CONTROL_CHARS.sub("", text)
    text = text.replace("```", "'''").replace('"""', "'''").replace("---", "___")
    return text.strip()


def _excerpt(text: str, limit: int) -> str:
    return f"{text[:limit]}..." if len(text) > limit else text


def context_summary(context: ConversationContext | None, include_memories: bool = True) -> str:
    """Short "Previous Context" block: last 3 messages and top 3 memories."""
    if context is None:
        return ""
    messages = context.recent_messages[-3:]
    memories = context.relevant_memories[:3] if include_memories else []
    if not messages and not memories:
        return ""

    lines = ["Previous Context:"]
    if messages:
        lines.append("Recent conversation:")
        lines.extend(f"- {m.role}: {_excerpt(m.content, 100)}" for m in messages)
    if memories:
        lines.append("")
        lines.append("Relevant memories:")
        lines.extend(f"- {_excerpt(m.text, 100)}" for m in memories)
    return "\n".join(lines)


def build_enhanced_prompt(
    prompt: str, questions: Sequence[str], answers: Sequence[str]
) -> str:
    """
    Fold clarification Q&A into the research prompt.

    Questions pair with answers by position; blank answers are skipped and
    answers beyond the last question are kept as additional details.
    """
    pairs: list[str] = []
    for i, answer in enumerate(answers):
        if not answer or not answer.strip():
            continue
        if i < len(questions):
            pairs.append(f"Q: {questions[i]}\nA: {answer.strip()}")
        else:
            pairs.append(f"Additional detail: {answer.strip()}")

    if not pairs:
        return prompt

    return (
        f"Original Question: {prompt}\n\n"
        "Clarifying Q&A:\n"
        + "\n\n".join(pairs)
        + "\n\nPlease conduct research that addresses the original question "
        "considering the clarifications provided above."
    )
