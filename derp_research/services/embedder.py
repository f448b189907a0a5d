# =============================================================================
# Embedding Service — Provider-Agnostic
# =============================================================================
#
# Generates vector embeddings using any OpenAI-compatible embedding API
# (OpenAI, DashScope, a local Ollama server, ...). A deterministic hashing
# embedder stands in when USE_MOCK_SERVICES is set.
#
# API key resolution order:
#   1. OPENAI_API_KEY (explicit embedding key)
#   2. LLM_API_KEY (shared key for LLM + embeddings)
#
# Retries are left to the caller: MemoryStore records a failed chunk and
# moves on.
# =============================================================================

from __future__ import annotations

import hashlib
import logging
import re
from typing import Protocol, runtime_checkable

import numpy as np

from derp_research.config import Settings, settings

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"\w+")


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


@runtime_checkable
class Embedder(Protocol):
    """Turns text into a fixed-length vector of `dimension` floats."""

    dimension: int

    async def embed(self, text: str) -> list[float]:
        ...


# ---------------------------------------------------------------------------
# OpenAI-Compatible Implementation
# ---------------------------------------------------------------------------


class OpenAIEmbedder:
    def __init__(self, config: Settings | None = None):
        from openai import AsyncOpenAI

        config = config or settings
        resolved_key = config.openai_api_key or config.llm_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for embeddings. "
                "Set OPENAI_API_KEY or LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key}
        if config.embedding_base_url:
            client_kwargs["base_url"] = config.embedding_base_url

        self._client = AsyncOpenAI(**client_kwargs)
        self._model = config.embedding_model
        self.dimension = config.embedding_dimensions

        logger.info(
            "Initialized embedding client (model=%s, base_url=%s)",
            self._model,
            config.embedding_base_url or "https://api.openai.com/v1",
        )

    async def embed(self, text: str) -> list[float]:
        response = await self._client.embeddings.create(
            model=self._model,
            input=[text],
            dimensions=self.dimension,
        )
        embedding = response.data[0].embedding
        if len(embedding) != self.dimension:
            raise ValueError(
                f"Embedding model returned {len(embedding)} dimensions, "
                f"expected {self.dimension}"
            )
        return embedding


# ---------------------------------------------------------------------------
# Mock Implementation
# ---------------------------------------------------------------------------


class MockEmbedder:
    """
    Deterministic bag-of-words hashing embedder.

    Each lowercase word is hashed to a signed bucket; the result is L2
    normalised. Texts sharing words therefore score a positive cosine
    similarity, which is enough for offline memory search.
    """

    def __init__(self, dimension: int = 1536):
        self.dimension = dimension

    async def embed(self, text: str) -> list[float]:
        return self.embed_sync(text)

    def embed_sync(self, text: str) -> list[float]:
        vector = np.zeros(self.dimension, dtype=np.float64)
        for word in _WORD_RE.findall(text.lower()):
            digest = hashlib.blake2b(word.encode("utf-8"), digest_size=8).digest()
            value = int.from_bytes(digest, "little")
            bucket = value % self.dimension
            sign = 1.0 if (value >> 63) & 1 else -1.0
            vector[bucket] += sign
        norm = np.linalg.norm(vector)
        if norm > 0:
            vector /= norm
        return vector.tolist()


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

_embedder: Embedder | None = None


def get_embedder() -> Embedder:
    """Return the cached process-wide embedder."""
    global _embedder
    if _embedder is None:
        if settings.use_mock_services:
            _embedder = MockEmbedder(settings.embedding_dimensions)
        else:
            _embedder = OpenAIEmbedder(settings)
    return _embedder
