# =============================================================================
# Content Fetcher — Concurrent Page Download and Text Extraction
# =============================================================================
#
# Downloads search result pages concurrently, each bounded by its own
# timeout, and reduces HTML to readable text with BeautifulSoup. A URL that
# times out or fails is simply missing from the returned mapping.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Sequence
from typing import Protocol

import httpx
from bs4 import BeautifulSoup

from derp_research.config import settings

logger = logging.getLogger(__name__)

_STRIP_TAGS = ("script", "style", "noscript", "nav", "header", "footer", "aside", "form")
_USER_AGENT = "Mozilla/5.0 (compatible; DerpResearch/0.1)"


class ContentFetcher(Protocol):
    async def fetch_content(
        self, urls: Sequence[str], timeout_per_url: float | None = None
    ) -> dict[str, str]:
        ...


def html_to_text(raw_html: str, max_chars: int) -> str:
    soup = BeautifulSoup(raw_html, "html.parser")
    for tag in soup(_STRIP_TAGS):
        tag.decompose()
    text = soup.get_text("\n")
    text = text.replace("\xa0", " ")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n\s*\n+", "\n\n", text).strip()
    return text[:max_chars]


class HttpContentFetcher:
    def __init__(self, max_chars: int | None = None, default_timeout: float | None = None):
        self._max_chars = max_chars or settings.content_max_chars
        self._default_timeout = default_timeout or settings.content_fetch_timeout_seconds

    async def fetch_content(
        self, urls: Sequence[str], timeout_per_url: float | None = None
    ) -> dict[str, str]:
        """Fetch every URL concurrently. Returns {url: text} for the ones that worked."""
        timeout = timeout_per_url or self._default_timeout
        unique = list(dict.fromkeys(u for u in urls if u))
        if not unique:
            return {}

        async with httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": _USER_AGENT},
        ) as client:
            texts = await asyncio.gather(
                *(self._fetch_one(client, url, timeout) for url in unique)
            )

        fetched = {url: text for url, text in zip(unique, texts) if text}
        logger.info("Fetched content for %d/%d URLs", len(fetched), len(unique))
        return fetched

    async def _fetch_one(
        self, client: httpx.AsyncClient, url: str, timeout: float
    ) -> str | None:
        try:
            response = await asyncio.wait_for(client.get(url), timeout=timeout)
            response.raise_for_status()
        except (httpx.HTTPError, asyncio.TimeoutError) as exc:
            logger.debug("Fetch failed for %s: %s", url, exc)
            return None

        content_type = response.headers.get("content-type", "")
        if "html" in content_type:
            return html_to_text(response.text, self._max_chars) or None
        if content_type.startswith("text/"):
            return response.text[: self._max_chars].strip() or None
        return None


class MockContentFetcher:
    async def fetch_content(
        self, urls: Sequence[str], timeout_per_url: float | None = None
    ) -> dict[str, str]:
        return {
            url: f"Detailed article text retrieved from {url}. It explains the topic "
                 "with definitions, examples, and recent developments."
            for url in urls
            if url
        }


def get_content_fetcher() -> ContentFetcher:
    if settings.use_mock_services:
        return MockContentFetcher()
    return HttpContentFetcher()
