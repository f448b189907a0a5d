# =============================================================================
# Search Agent — Subtask Execution
# =============================================================================
#
# Runs research subtasks against the search gateway, downloads each hit's
# page, and stores every page as memory the moment it is found.
#
# PER SUBTASK:
#   1. search gateway → up to N results (N from the intensity band: 3/5/8)
#   2. content fetcher → page text, bounded per URL by a timeout
#   3. keep only results whose page text was fetched and whose URL is new
#   4. per result: store "title / content / Source: url" as memory
#      (tags: "search-result", the subtask query), append to the gathered
#      information, yield it
#   5. pause before the next subtask (provider rate limits)
#
# FAILURE ISOLATION:
# A search or fetch error skips that subtask only; a storage failure keeps
# the source but records no memory id. Results gathered before a failure
# are never discarded.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Sequence

from derp_research.agents.intensity import results_per_query
from derp_research.config import Settings, settings
from derp_research.models.research import (
    GatheredInformation,
    ResearchTask,
    SearchResult,
    SubtaskStarted,
)
from derp_research.services.content_fetcher import ContentFetcher
from derp_research.services.memory_store import MemoryStore
from derp_research.services.search_gateway import SearchGateway

logger = logging.getLogger(__name__)


class SearchAgent:
    def __init__(
        self,
        gateway: SearchGateway,
        memory: MemoryStore,
        fetcher: ContentFetcher,
        config: Settings | None = None,
    ):
        self._gateway = gateway
        self._memory = memory
        self._fetcher = fetcher
        self._config = config or settings

    async def execute(
        self,
        tasks: Sequence[ResearchTask],
        intensity: int,
        info: GatheredInformation,
        conversation_id: str | None = None,
    ) -> AsyncIterator[SubtaskStarted | SearchResult]:
        limit = results_per_query(intensity, self._config)
        total = len(tasks)
        logger.info("Executing %d subtasks (%d results per query)", total, limit)

        for number, task in enumerate(tasks, start=1):
            yield SubtaskStarted(task=task, number=number, total=total)

            results = await self._run_subtask(task, limit)
            for result in results:
                if not info.add(result):
                    continue
                memory_id = await self._remember(result, task, conversation_id)
                if memory_id:
                    info.stored_memory_ids.append(memory_id)
                yield result

            if number < total and self._config.search_subtask_delay_seconds > 0:
                await asyncio.sleep(self._config.search_subtask_delay_seconds)

        logger.info("Search complete: %d total sources gathered", info.total_sources_found)

    async def _run_subtask(self, task: ResearchTask, limit: int) -> list[SearchResult]:
        try:
            results = await self._gateway.search(task.search_query, limit)
        except Exception as e:
            logger.error("Search failed for '%s': %s", task.search_query, e)
            return []
        if not results:
            logger.debug("No results for '%s'", task.search_query)
            return []

        try:
            fetched = await self._fetcher.fetch_content(
                [r.url for r in results],
                timeout_per_url=self._config.content_fetch_timeout_seconds,
            )
        except Exception as e:
            logger.error("Content fetch failed for '%s': %s", task.search_query, e)
            return []

        kept = [
            SearchResult(title=r.title, url=r.url, snippet=r.snippet, content=fetched[r.url])
            for r in results
            if fetched.get(r.url)
        ]
        if not kept:
            logger.warning("No page content fetched for '%s'", task.search_query)
        else:
            logger.info(
                "Fetched content for %d/%d results of '%s'",
                len(kept), len(results), task.search_query,
            )
        return kept

    async def _remember(
        self, result: SearchResult, task: ResearchTask, conversation_id: str | None
    ) -> str | None:
        text = f"{result.title}\n{result.content or result.snippet}\nSource: {result.url}"
        try:
            stored = await self._memory.store_memory(
                text,
                source=result.url,
                tags=["search-result", task.search_query],
                conversation_id=conversation_id,
            )
        except Exception as e:
            logger.error("Failed to store memory for %s: %s", result.url, e)
            return None

        if stored.is_complete_failure:
            logger.warning("No chunks stored for %s", result.url)
            return None
        return stored.primary_id
