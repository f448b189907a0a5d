# =============================================================================
# Unit Tests — HTTP API
# =============================================================================
#
# Drives the FastAPI app through TestClient with the memory store and the
# orchestrator swapped in via dependency_overrides. The client is used
# without a context manager so the lifespan (which opens the configured
# database) never runs.
#
# Test groups:
#   1. Health
#   2. Conversations (create, history)
#   3. Research (SSE stream, validation)
# =============================================================================

from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient

from derp_research.agents.mock import (
    MockClarificationAgent,
    MockPlannerAgent,
    MockReflectionAgent,
    MockSynthesisAgent,
)
from derp_research.agents.orchestrator import IterativeResearchOrchestrator
from derp_research.agents.search import SearchAgent
from derp_research.api.deps import get_research_orchestrator, get_store
from derp_research.config import Settings
from derp_research.main import create_app
from derp_research.services.content_fetcher import MockContentFetcher
from derp_research.services.search_gateway import MockSearchProvider, SearchGateway


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


@pytest.fixture
def orchestrator(store, session_factory):
    config = Settings(
        _env_file=None,
        clarification_enabled=False,
        search_subtask_delay_seconds=0,
    )
    gateway = SearchGateway(MockSearchProvider(), session_factory, ttl_seconds=3600)
    searcher = SearchAgent(gateway, store, MockContentFetcher(), config)
    return IterativeResearchOrchestrator(
        store,
        MockClarificationAgent(),
        MockPlannerAgent(),
        searcher,
        MockSynthesisAgent(),
        MockReflectionAgent(0.9, 0.7),
        config,
    )


@pytest.fixture
def client(store, orchestrator):
    app = create_app()
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_research_orchestrator] = lambda: orchestrator
    return TestClient(app)


# ---------------------------------------------------------------------------
# 1. Health
# ---------------------------------------------------------------------------


class TestHealth:
    def test_health_reports_index_size(self, client, store):
        _run(store.store_memory("a remembered fact", "https://fact.example"))

        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["service"] == "derp-research"
        assert body["indexed_vectors"] == 1


# ---------------------------------------------------------------------------
# 2. Conversations
# ---------------------------------------------------------------------------


class TestConversations:
    """POST /conversations and GET /conversations/{id}/history."""

    def test_create_conversation(self, client, store):
        response = client.post("/conversations")

        assert response.status_code == 201
        conversation_id = response.json()["conversation_id"]
        assert _run(store.conversation_exists(conversation_id))

    def test_history_of_unknown_conversation_is_404(self, client):
        response = client.get("/conversations/nope/history")
        assert response.status_code == 404

    def test_history_lists_messages_oldest_first(self, client, store):
        async def seed():
            await store.save_message("conv-h", "user", "first")
            await store.save_message("conv-h", "assistant", "second")
            await store.save_message("conv-h", "user", "third")

        _run(seed())

        everything = client.get("/conversations/conv-h/history").json()
        last_two = client.get("/conversations/conv-h/history", params={"limit": 2}).json()

        assert everything["conversation_id"] == "conv-h"
        assert [m["content"] for m in everything["messages"]] == ["first", "second", "third"]
        assert [m["role"] for m in everything["messages"]] == ["user", "assistant", "user"]
        assert [m["content"] for m in last_two["messages"]] == ["second", "third"]

    def test_history_limit_validated(self, client, store):
        _run(store.save_message("conv-h", "user", "first"))
        assert client.get("/conversations/conv-h/history", params={"limit": 0}).status_code == 422


# ---------------------------------------------------------------------------
# 3. Research
# ---------------------------------------------------------------------------


class TestResearch:
    """POST /research."""

    def test_streams_events_until_done(self, client, store):
        response = client.post(
            "/research",
            json={"prompt": "How do heat pumps work?", "conversation_id": "conv-r", "intensity_level": 10},
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        text = response.text
        for event_type in ("plan", "search_query", "source", "content", "reflection"):
            assert f"event: {event_type}" in text
        assert text.count("event: done") == 1
        assert text.index("event: reflection") < text.index("event: done")
        assert '"conversationId": "conv-r"' in text

        messages = _run(store.get_messages("conv-r"))
        assert [m.role for m in messages] == ["user", "assistant"]

    def test_intensity_out_of_range_rejected(self, client):
        response = client.post("/research", json={"prompt": "tides", "intensity_level": 150})
        assert response.status_code == 422

    def test_missing_prompt_rejected(self, client):
        response = client.post("/research", json={"intensity_level": 50})
        assert response.status_code == 422

    def test_blank_prompt_rejected_before_streaming(self, client):
        response = client.post("/research", json={"prompt": "   ", "conversation_id": "conv-b"})
        assert response.status_code == 422
