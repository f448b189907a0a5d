# =============================================================================
# Celery Task Definitions — Database Maintenance
# =============================================================================
#
# Celery workers are synchronous. Each task drives its async work with
# asyncio.run() on an engine created for that call and disposed of before
# returning; the process-wide engine is bound to no loop here.
#
# COMPACTION AND THE WEB PROCESS:
# Compaction deletes memory rows and vector rows. A running API process may
# still hold the deleted vectors in its in-memory index until restart; its
# memory search drops hits whose memory row is gone, so results stay correct.
# =============================================================================

import asyncio
import logging
from datetime import timedelta

from derp_research.config import settings
from derp_research.db.engine import create_engine_for_url, create_session_factory, init_db
from derp_research.db.models import utcnow
from derp_research.services.embedder import MockEmbedder
from derp_research.services.memory_store import MemoryStore
from derp_research.services.search_gateway import MockSearchProvider, SearchGateway
from derp_research.services.vector_index import VectorIndex
from derp_research.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async Implementations
# ---------------------------------------------------------------------------


async def run_compaction(database_url: str, max_age_days: int) -> dict:
    engine = create_engine_for_url(database_url)
    try:
        await init_db(engine)
        session_factory = create_session_factory(engine)
        # Compaction never embeds, and only vectors it deletes leave the index.
        index = VectorIndex(settings.embedding_dimensions, max_workers=1)
        store = MemoryStore(
            index, MockEmbedder(settings.embedding_dimensions), session_factory, settings
        )
        try:
            result = await store.compact_memories(utcnow() - timedelta(days=max_age_days))
        finally:
            index.close()
    finally:
        await engine.dispose()

    return {
        "memories_removed": result.memories_removed,
        "vectors_removed": result.vectors_removed,
    }


async def run_cache_expiry(database_url: str, ttl_seconds: int) -> int:
    engine = create_engine_for_url(database_url)
    try:
        await init_db(engine)
        # Expiry never calls the provider.
        gateway = SearchGateway(
            MockSearchProvider(), create_session_factory(engine), ttl_seconds=ttl_seconds
        )
        return await gateway.clear_expired_cache()
    finally:
        await engine.dispose()


# ---------------------------------------------------------------------------
# Celery Tasks
# ---------------------------------------------------------------------------


@celery_app.task(bind=True, name="compact_memories", max_retries=3, default_retry_delay=60)
def compact_memories(self, max_age_days: int | None = None) -> dict:
    """
    Delete memories older than `max_age_days` (default MEMORY_MAX_AGE_DAYS)
    together with vectors no remaining memory references.
    """
    max_age_days = settings.memory_max_age_days if max_age_days is None else max_age_days
    logger.info("[%s] Compacting memories older than %d days", self.request.id, max_age_days)

    try:
        summary = asyncio.run(run_compaction(settings.database_url, max_age_days))
    except Exception as exc:
        logger.exception("[%s] Memory compaction failed", self.request.id)
        raise self.retry(exc=exc)

    logger.info("[%s] Compaction finished: %s", self.request.id, summary)
    return summary


@celery_app.task(bind=True, name="clear_expired_search_cache", max_retries=3, default_retry_delay=60)
def clear_expired_search_cache(self) -> dict:
    try:
        removed = asyncio.run(
            run_cache_expiry(settings.database_url, settings.search_cache_ttl_seconds)
        )
    except Exception as exc:
        logger.exception("[%s] Search cache expiry failed", self.request.id)
        raise self.retry(exc=exc)
    return {"entries_removed": removed}
