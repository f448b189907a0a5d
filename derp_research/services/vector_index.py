# =============================================================================
# Vector Index — In-Memory Cosine Similarity Search
# =============================================================================
#
# Holds fixed-dimension float32 embeddings keyed by integer vector ids and
# answers exact top-k cosine similarity queries.
#
# CONCURRENCY:
# - A threading.Lock guards the id counter and the entry dict. Searches take
#   a snapshot of (ids, vectors) under the lock and scan outside it, so adds
#   and searches from many conversations interleave safely.
# - Stored arrays are read-only, so a snapshot can never see a torn vector.
# - The scan runs on a dedicated ThreadPoolExecutor, never on the event loop.
#   It walks the snapshot in batches and checks a threading.Event between
#   batches; cancelling the awaiting coroutine sets the event.
#
# RANKING:
#   score = dot(a, b) / (|a| * |b|), 0.0 when either magnitude is zero.
#   Sorted by score descending, ties broken by lower vector id.
#
# ARCHITECTURE:
#   VectorIndex               — memory only
#   └── PersistentVectorIndex — same index, rows mirrored in `vector_store`
#       ├── load()            — rebuild from the table, skipping rows whose
#       │                       dimension differs from the configured one
#       ├── add_async()       — persist, then publish to memory
#       ├── remove_async()    — delete rows and entries
#       └── reset_async()     — wipe the table and the index
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor

import numpy as np
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from derp_research.db.models import VectorRecord

logger = logging.getLogger(__name__)

_STORAGE_DTYPE = np.dtype("<f4")


class DimensionMismatchError(ValueError):
    """Embedding length differs from the index dimension."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"Expected a vector of dimension {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class _ScanCancelled(Exception):
    pass


# ---------------------------------------------------------------------------
# In-Memory Index
# ---------------------------------------------------------------------------


class VectorIndex:
    def __init__(
        self,
        dimension: int,
        batch_size: int = 4096,
        max_workers: int = 2,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        self._dimension = dimension
        self._batch_size = max(1, batch_size)
        self._lock = threading.Lock()
        self._entries: dict[int, np.ndarray] = {}
        self._next_id = 0
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="vector-scan"
        )

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def next_id(self) -> int:
        with self._lock:
            return self._next_id

    def count(self) -> int:
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.count()

    def __contains__(self, vector_id: int) -> bool:
        with self._lock:
            return vector_id in self._entries

    # -- writes ---------------------------------------------------------------

    def prepare(self, embedding: Sequence[float]) -> tuple[int, np.ndarray]:
        """Validate `embedding` and reserve its id without publishing it."""
        vector = self._as_vector(embedding)
        with self._lock:
            vector_id = self._next_id
            self._next_id += 1
        return vector_id, vector

    def publish(self, vector_id: int, vector: np.ndarray) -> None:
        """Make a prepared vector visible to searches."""
        vector = self._as_vector(vector)
        with self._lock:
            self._entries[vector_id] = vector
            if vector_id >= self._next_id:
                self._next_id = vector_id + 1

    def add(self, embedding: Sequence[float]) -> int:
        """
        Insert `embedding` and return its new vector id.

        Raises:
            DimensionMismatchError: if the length differs from `dimension`.
        """
        vector_id, vector = self.prepare(embedding)
        self.publish(vector_id, vector)
        return vector_id

    def remove(self, vector_ids: Iterable[int]) -> int:
        removed = 0
        with self._lock:
            for vector_id in vector_ids:
                if self._entries.pop(vector_id, None) is not None:
                    removed += 1
        return removed

    def clear(self) -> None:
        """Drop all entries and restart ids at zero. Memory only."""
        with self._lock:
            self._entries.clear()
            self._next_id = 0

    def _replace_all(self, entries: dict[int, np.ndarray], next_id: int) -> None:
        with self._lock:
            self._entries = entries
            self._next_id = next_id

    # -- search ---------------------------------------------------------------

    async def search(
        self, query: Sequence[float], top_k: int
    ) -> tuple[list[int], list[float]]:
        """
        Return up to `top_k` (ids, scores) ranked by cosine similarity.

        An empty index or `top_k <= 0` returns two empty lists.

        Raises:
            DimensionMismatchError: if the query length differs from `dimension`.
        """
        query_vector = self._as_vector(query)
        if top_k <= 0:
            return [], []

        with self._lock:
            if not self._entries:
                return [], []
            ids = np.fromiter(self._entries.keys(), dtype=np.int64, count=len(self._entries))
            vectors = list(self._entries.values())

        cancelled = threading.Event()
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(
            self._executor, self._scan, query_vector, ids, vectors, top_k, cancelled
        )
        try:
            return await future
        except asyncio.CancelledError:
            cancelled.set()
            raise

    def _scan(
        self,
        query: np.ndarray,
        ids: np.ndarray,
        vectors: list[np.ndarray],
        top_k: int,
        cancelled: threading.Event,
    ) -> tuple[list[int], list[float]]:
        q = query.astype(np.float64)
        q_norm = float(np.linalg.norm(q))
        scores = np.zeros(len(vectors), dtype=np.float64)

        if q_norm > 0:
            for start in range(0, len(vectors), self._batch_size):
                if cancelled.is_set():
                    raise _ScanCancelled()
                block = np.stack(vectors[start : start + self._batch_size]).astype(np.float64)
                norms = np.linalg.norm(block, axis=1) * q_norm
                dots = block @ q
                with np.errstate(divide="ignore", invalid="ignore"):
                    sims = np.where(norms > 0, dots / norms, 0.0)
                scores[start : start + len(block)] = np.clip(sims, -1.0, 1.0)

        k = min(top_k, len(vectors))
        order = np.lexsort((ids, -scores))[:k]
        return ids[order].tolist(), scores[order].tolist()

    # -- helpers --------------------------------------------------------------

    def _as_vector(self, embedding: Sequence[float] | np.ndarray) -> np.ndarray:
        vector = np.array(embedding, dtype=np.float32)
        if vector.ndim != 1 or vector.shape[0] != self._dimension:
            raise DimensionMismatchError(self._dimension, int(vector.size))
        vector.setflags(write=False)
        return vector

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)


# ---------------------------------------------------------------------------
# Durable Index
# ---------------------------------------------------------------------------


class PersistentVectorIndex(VectorIndex):
    """VectorIndex whose entries are mirrored in the `vector_store` table."""

    def __init__(
        self,
        dimension: int,
        session_factory: async_sessionmaker[AsyncSession],
        **kwargs,
    ) -> None:
        super().__init__(dimension, **kwargs)
        self._session_factory = session_factory

    def to_record(self, vector_id: int, vector: np.ndarray) -> VectorRecord:
        return VectorRecord(
            vector_id=vector_id,
            embedding=np.asarray(vector, dtype=_STORAGE_DTYPE).tobytes(),
            dimension=int(vector.shape[0]),
        )

    async def load(self) -> int:
        """
        Rebuild the index from the table. Returns the number of vectors loaded.

        Rows with a different dimension are skipped with a warning; their ids
        still count as used so new ids never collide with them.
        """
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(VectorRecord.vector_id, VectorRecord.dimension, VectorRecord.embedding)
                )
            ).all()

        entries: dict[int, np.ndarray] = {}
        max_id = -1
        skipped = 0
        for vector_id, dimension, blob in rows:
            max_id = max(max_id, vector_id)
            if dimension != self.dimension or len(blob) != dimension * _STORAGE_DTYPE.itemsize:
                skipped += 1
                continue
            vector = np.frombuffer(blob, dtype=_STORAGE_DTYPE).astype(np.float32)
            vector.setflags(write=False)
            entries[vector_id] = vector

        if skipped:
            logger.warning(
                "Skipped %d stored vectors whose dimension differs from %d",
                skipped, self.dimension,
            )

        self._replace_all(entries, max_id + 1)
        logger.info("Loaded %d vectors (next id %d)", len(entries), max_id + 1)
        return len(entries)

    async def add_async(self, embedding: Sequence[float]) -> int:
        """Persist `embedding`, then publish it. Returns the vector id."""
        vector_id, vector = self.prepare(embedding)
        async with self._session_factory() as session, session.begin():
            session.add(self.to_record(vector_id, vector))
        self.publish(vector_id, vector)
        return vector_id

    async def remove_async(self, vector_ids: Sequence[int]) -> int:
        if not vector_ids:
            return 0
        async with self._session_factory() as session, session.begin():
            await session.execute(
                delete(VectorRecord).where(VectorRecord.vector_id.in_(list(vector_ids)))
            )
        return self.remove(vector_ids)

    async def reset_async(self) -> None:
        """Delete every persisted vector and clear the index."""
        async with self._session_factory() as session, session.begin():
            await session.execute(delete(VectorRecord))
        self.clear()
