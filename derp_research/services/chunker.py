# =============================================================================
# Token-Budget Text Chunker
# =============================================================================
#
# Splits memory text into chunks that fit an embedding model's input budget.
# Tokens are ESTIMATED as `len(text) / chars_per_token` (default 2, which
# over-counts for English and so keeps chunks safely under the limit).
#
# ALGORITHM:
# 1. Text that fits the budget is returned as a single chunk.
# 2. Otherwise slide a window of max_tokens * chars_per_token characters.
#    Each window end is pulled back to the best natural break found near it,
#    in order of preference:
#      - paragraph break ("\n\n") within the last 500 characters
#      - sentence end (. ! ? followed by whitespace) within the last 300
#      - any whitespace within the last 100
#      - otherwise a hard cut at the budget
# 3. The next window starts overlap_tokens * chars_per_token characters
#    before the previous end, moved forward to the next word start.
#
# A break is never accepted at or before start + overlap, so every window
# advances and the loop terminates.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_PARAGRAPH_WINDOW = 500
_SENTENCE_WINDOW = 300
_WORD_WINDOW = 100


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class TextChunk:
    content: str
    chunk_index: int
    start_char: int
    end_char: int


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def estimate_tokens(text: str, chars_per_token: int = 2) -> int:
    return -(-len(text) // chars_per_token)  # ceiling division


def chunk_text(
    text: str,
    max_tokens: int = 3000,
    overlap_tokens: int = 100,
    chars_per_token: int = 2,
) -> list[TextChunk]:
    """
    Split `text` into overlapping chunks of at most `max_tokens` tokens.

    Returns an empty list for empty or whitespace-only input.

    Raises:
        ValueError: if `overlap_tokens >= max_tokens`, or a size is not positive.
    """
    if max_tokens <= 0 or chars_per_token <= 0:
        raise ValueError("max_tokens and chars_per_token must be positive")
    if overlap_tokens < 0:
        raise ValueError("overlap_tokens must not be negative")
    if overlap_tokens >= max_tokens:
        raise ValueError(
            f"overlap_tokens ({overlap_tokens}) must be smaller than max_tokens ({max_tokens})"
        )

    if not text or not text.strip():
        return []

    max_chars = max_tokens * chars_per_token
    overlap_chars = overlap_tokens * chars_per_token
    length = len(text)

    if length <= max_chars:
        return [TextChunk(content=text.strip(), chunk_index=0, start_char=0, end_char=length)]

    chunks: list[TextChunk] = []
    start = 0

    while start < length:
        end = min(start + max_chars, length)
        if end < length:
            end = _find_break(text, start + overlap_chars, end)

        piece = text[start:end].strip()
        if piece:
            chunks.append(
                TextChunk(
                    content=piece,
                    chunk_index=len(chunks),
                    start_char=start,
                    end_char=end,
                )
            )

        if end >= length:
            break
        start = _next_start(text, end, overlap_chars, start)

    logger.debug(
        "Chunked %d chars into %d chunks (max_tokens=%d, overlap=%d)",
        length, len(chunks), max_tokens, overlap_tokens,
    )
    return chunks


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _find_break(text: str, floor: int, end: int) -> int:
    """Best break position in (floor, end]; `end` itself when none is found."""
    # Paragraph
    lo = max(floor + 1, end - _PARAGRAPH_WINDOW)
    idx = text.rfind("\n\n", lo, end)
    if idx != -1:
        return idx + 2

    # Sentence
    lo = max(floor + 1, end - _SENTENCE_WINDOW)
    for i in range(end - 1, lo - 1, -1):
        if text[i].isspace() and text[i - 1] in ".!?":
            return i

    # Word
    lo = max(floor + 1, end - _WORD_WINDOW)
    for i in range(end - 1, lo - 1, -1):
        if text[i].isspace():
            return i

    return end


def _next_start(text: str, end: int, overlap_chars: int, previous_start: int) -> int:
    start = end - overlap_chars
    if start <= previous_start:
        return end

    if text[start - 1].isspace() and not text[start].isspace():
        return start

    # Skip the partial word at the overlap boundary, then the whitespace.
    i = start
    while i < end and not text[i].isspace():
        i += 1
    while i < end and text[i].isspace():
        i += 1
    return i if i < end else start
