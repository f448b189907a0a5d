# =============================================================================
# Unit Tests — Maintenance Tasks
# =============================================================================
#
# Seeds the per-test SQLite file through the regular services, then points
# the maintenance jobs at the same file by URL. Celery tasks run eagerly via
# .apply(), so no broker is needed.
# =============================================================================

from __future__ import annotations

import asyncio
from datetime import timedelta

from sqlalchemy import update

from derp_research.config import settings
from derp_research.db.models import Memory, utcnow
from derp_research.services.search_gateway import MockSearchProvider, SearchGateway
from derp_research.workers.tasks import (
    clear_expired_search_cache,
    compact_memories,
    run_cache_expiry,
    run_compaction,
)


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"


def _seed_memories(store, old_age_days: int = 100):
    async def scenario():
        old = await store.store_memory("stale fact", "https://old.example")
        await store.store_memory("fresh fact", "https://new.example")
        async with store._session_factory() as session, session.begin():
            await session.execute(
                update(Memory)
                .where(Memory.id == old.primary_id)
                .values(created_at=utcnow() - timedelta(days=old_age_days))
            )

    _run(scenario())


def _seed_cache(session_factory, age: timedelta):
    stale_now = utcnow() - age
    gateway = SearchGateway(
        MockSearchProvider(), session_factory, ttl_seconds=3600, clock=lambda: stale_now
    )
    _run(gateway.search("old query", 3))


class TestCompaction:
    """run_compaction() and the compact_memories task."""

    def test_removes_expired_memories(self, store, tmp_path):
        _seed_memories(store)

        summary = _run(run_compaction(_url(tmp_path), max_age_days=90))

        assert summary == {"memories_removed": 1, "vectors_removed": 1}
        hits = _run(store.search_memory("fresh fact", top_k=5))
        assert [h.source for h in hits] == ["https://new.example"]

    def test_nothing_old_enough(self, store, tmp_path):
        _seed_memories(store, old_age_days=10)
        summary = _run(run_compaction(_url(tmp_path), max_age_days=90))
        assert summary == {"memories_removed": 0, "vectors_removed": 0}

    def test_celery_task_uses_configured_database(self, store, tmp_path, monkeypatch):
        _seed_memories(store)
        monkeypatch.setattr(settings, "database_url", _url(tmp_path))

        result = compact_memories.apply(kwargs={"max_age_days": 90}).get()

        assert result["memories_removed"] == 1


class TestCacheExpiry:
    """run_cache_expiry() and the clear_expired_search_cache task."""

    def test_removes_entries_past_ttl(self, session_factory, tmp_path):
        _seed_cache(session_factory, timedelta(hours=2))
        assert _run(run_cache_expiry(_url(tmp_path), ttl_seconds=3600)) == 1
        assert _run(run_cache_expiry(_url(tmp_path), ttl_seconds=3600)) == 0

    def test_keeps_fresh_entries(self, session_factory, tmp_path):
        _seed_cache(session_factory, timedelta(minutes=5))
        assert _run(run_cache_expiry(_url(tmp_path), ttl_seconds=3600)) == 0

    def test_celery_task(self, session_factory, tmp_path, monkeypatch):
        _seed_cache(session_factory, timedelta(hours=2))
        monkeypatch.setattr(settings, "database_url", _url(tmp_path))
        monkeypatch.setattr(settings, "search_cache_ttl_seconds", 3600)

        assert clear_expired_search_cache.apply().get() == {"entries_removed": 1}
