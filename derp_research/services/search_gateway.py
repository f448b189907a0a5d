# =============================================================================
# Search Gateway — Cached, Deduplicated Web Search
# =============================================================================
#
# Wraps a SearchProvider (Google Custom Search, or a mock) with:
#   - a database cache keyed by SHA-256 of the normalised query
#     (lowercased, whitespace collapsed), valid for search_cache_ttl_seconds
#   - URL deduplication of provider results
#   - coalescing of concurrent identical requests into one provider call
#
# The factory wraps real providers in ResilientSearchProvider (retries,
# per-request timeout, circuit breaker); see services/resilience.py.
#
# A cache row remembers how many results were requested. It only answers
# requests for at most that many, sliced to the requested count.
#
# ERROR CONTRACT:
#   - Provider errors propagate and are never cached.
#   - Cache read/write errors are logged and the cache is bypassed.
# =============================================================================

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Protocol

import httpx
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from derp_research.config import Settings, settings
from derp_research.db.models import SearchCacheEntry, utcnow
from derp_research.models.research import SearchResult
from derp_research.services.resilience import (
    ResilientSearchProvider,
    breaker_for,
    search_policy,
)

logger = logging.getLogger(__name__)

GOOGLE_SEARCH_URL = "https://www.googleapis.com/customsearch/v1"
GOOGLE_MAX_RESULTS = 10


def normalize_query(query: str) -> str:
    return " ".join(query.lower().split())


def query_hash(query: str) -> str:
    return hashlib.sha256(normalize_query(query).encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class SearchProvider(Protocol):
    name: str

    async def search(self, query: str, max_results: int) -> list[SearchResult]:
        ...


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class GoogleCustomSearchProvider:
    """Google Programmable Search (Custom Search JSON API)."""

    name = "google"

    def __init__(self, api_key: str, engine_id: str, timeout: float = 30.0) -> None:
        if not api_key or not engine_id:
            raise ValueError(
                "Google search is not configured. Set GOOGLE_API_KEY and "
                "GOOGLE_SEARCH_ENGINE_ID in .env, or SEARCH_PROVIDER=mock"
            )
        self._api_key = api_key
        self._engine_id = engine_id
        self._timeout = timeout

    async def search(self, query: str, max_results: int) -> list[SearchResult]:
        params = {
            "key": self._api_key,
            "cx": self._engine_id,
            "q": query,
            "num": min(max_results, GOOGLE_MAX_RESULTS),
        }
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.get(GOOGLE_SEARCH_URL, params=params)
            response.raise_for_status()
            payload = response.json()

        return [
            SearchResult(
                title=item.get("title", "") or "",
                url=item.get("link", "") or "",
                snippet=item.get("snippet", "") or "",
            )
            for item in payload.get("items", []) or []
        ]


class MockSearchProvider:
    """Deterministic results for offline runs."""

    name = "mock"

    async def search(self, query: str, max_results: int) -> list[SearchResult]:
        slug = re.sub(r"[^a-z0-9]+", "-", normalize_query(query)).strip("-") or "query"
        return [
            SearchResult(
                title=f"{query.strip()}: overview {i}",
                url=f"https://example.com/{slug}/{i}",
                snippet=f"Background material on {query.strip()} (result {i}).",
            )
            for i in range(1, max_results + 1)
        ]


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class SearchGateway:
    def __init__(
        self,
        provider: SearchProvider,
        session_factory: async_sessionmaker[AsyncSession],
        ttl_seconds: int = 86400,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._provider = provider
        self._session_factory = session_factory
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._inflight: dict[tuple[str, int], asyncio.Task] = {}
        self._waiters: dict[asyncio.Task, int] = {}

    async def search(self, query: str, max_results: int = 10) -> list[SearchResult]:
        """
        Return up to `max_results` results for `query`, from cache when fresh.

        Raises:
            ValueError: if `query` is empty.
        """
        if not query or not query.strip():
            raise ValueError("query must not be empty")
        if max_results <= 0:
            return []

        key = query_hash(query)
        cached = await self._read_cache(key, max_results)
        if cached is not None:
            logger.debug("Search cache hit for '%s'", query)
            return cached

        inflight_key = (key, max_results)
        task = self._inflight.get(inflight_key)
        if task is None:
            task = asyncio.create_task(self._fetch_and_cache(key, query, max_results))
            self._inflight[inflight_key] = task
            self._waiters[task] = 0
            task.add_done_callback(lambda t: self._forget(inflight_key, t))

        self._waiters[task] = self._waiters.get(task, 0) + 1
        try:
            results = await asyncio.shield(task)
        except asyncio.CancelledError:
            # The provider call is cancelled once nobody is waiting for it.
            if task in self._waiters:
                self._waiters[task] -= 1
                if self._waiters[task] <= 0 and not task.done():
                    task.cancel()
            raise
        return list(results)

    async def clear_expired_cache(self) -> int:
        """Delete cache rows older than the TTL. Returns how many were removed."""
        cutoff = self._clock() - self._ttl
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                delete(SearchCacheEntry).where(SearchCacheEntry.created_at < cutoff)
            )
        removed = result.rowcount or 0
        logger.info("Cleared %d expired search cache entries", removed)
        return removed

    # -- internals ------------------------------------------------------------

    def _forget(self, inflight_key: tuple[str, int], task: asyncio.Task) -> None:
        if self._inflight.get(inflight_key) is task:
            del self._inflight[inflight_key]
        self._waiters.pop(task, None)
        if not task.cancelled():
            task.exception()  # mark as retrieved; waiters re-raise it

    async def _fetch_and_cache(
        self, key: str, query: str, max_results: int
    ) -> list[SearchResult]:
        raw = await self._provider.search(query, max_results)

        seen: set[str] = set()
        results: list[SearchResult] = []
        for result in raw:
            if not result.url or result.url in seen:
                continue
            seen.add(result.url)
            results.append(result)
            if len(results) == max_results:
                break

        logger.info(
            "Search '%s' via %s: %d results (%d before dedupe)",
            query, self._provider.name, len(results), len(raw),
        )
        await self._write_cache(key, query, results, max_results)
        return results

    async def _read_cache(self, key: str, max_results: int) -> list[SearchResult] | None:
        try:
            async with self._session_factory() as session:
                entry = await session.get(SearchCacheEntry, key)
        except Exception as exc:
            logger.warning("Search cache read failed: %s", exc)
            return None

        if entry is None or entry.max_results < max_results:
            return None
        created_at = entry.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=UTC)
        if created_at < self._clock() - self._ttl:
            return None
        return [SearchResult.from_dict(item) for item in entry.results][:max_results]

    async def _write_cache(
        self, key: str, query: str, results: list[SearchResult], max_results: int
    ) -> None:
        try:
            async with self._session_factory() as session, session.begin():
                await session.merge(
                    SearchCacheEntry(
                        query_hash=key,
                        query=normalize_query(query),
                        results=[r.to_dict() for r in results],
                        max_results=max_results,
                        created_at=self._clock(),
                    )
                )
        except Exception as exc:
            logger.warning("Search cache write failed: %s", exc)


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def create_search_provider(config: Settings | None = None) -> SearchProvider:
    config = config or settings
    if config.use_mock_services or config.search_provider == "mock":
        return MockSearchProvider()
    if config.search_provider == "google":
        return ResilientSearchProvider(
            GoogleCustomSearchProvider(
                config.google_api_key,
                config.google_search_engine_id,
                timeout=config.search_timeout_seconds,
            ),
            search_policy(config),
            breaker_for("search", config),
        )
    raise ValueError(f"Unknown search provider '{config.search_provider}'")


_gateway: SearchGateway | None = None


def get_search_gateway() -> SearchGateway:
    global _gateway
    if _gateway is None:
        from derp_research.db.engine import get_session_factory

        _gateway = SearchGateway(
            create_search_provider(settings),
            get_session_factory(),
            ttl_seconds=settings.search_cache_ttl_seconds,
        )
    return _gateway
