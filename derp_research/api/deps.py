# =============================================================================
# API Dependencies — FastAPI Dependency Injection
# =============================================================================
#
# Route handlers receive the memory store and orchestrator through
# Depends(), so tests can swap them via app.dependency_overrides.
#
# Composition errors (missing API keys, unknown providers) surface as
# ValueError from the factories and are mapped to 503 here.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import HTTPException

from derp_research.agents.orchestrator import IterativeResearchOrchestrator, get_orchestrator
from derp_research.services.memory_store import MemoryStore, get_memory_store

logger = logging.getLogger(__name__)


def get_store() -> MemoryStore:
    return get_memory_store()


def get_research_orchestrator() -> IterativeResearchOrchestrator:
    try:
        return get_orchestrator()
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        raise HTTPException(
            status_code=503,
            detail=f"Service configuration error: {e}",
        ) from e
