# =============================================================================
# Application Entry Point — FastAPI App Factory
# =============================================================================
#
# Run with:  uvicorn derp_research.main:app
#
# STARTUP: configure logging, create missing tables, load persisted vectors
# into the similarity index.
# SHUTDOWN: stop the vector scan workers and dispose of the engine.
# =============================================================================

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI

from derp_research.api import conversations, research
from derp_research.api.deps import get_store
from derp_research.config import settings
from derp_research.models.responses import HealthResponse
from derp_research.services.memory_store import MemoryStore

logger = logging.getLogger(__name__)


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    store = get_store()
    await store.initialize()
    logger.info(
        "%s %s started (%d vectors loaded, mock services=%s)",
        settings.app_name, settings.app_version, len(store.index), settings.use_mock_services,
    )
    yield
    store.index.close()
    from derp_research.db.engine import get_engine

    await get_engine().dispose()
    logger.info("%s stopped", settings.app_name)


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.app_name,
        description="Iterative research agent with persistent vector memory",
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.include_router(research.router)
    app.include_router(conversations.router)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health(store: MemoryStore = Depends(get_store)) -> HealthResponse:
        return HealthResponse(
            version=settings.app_version,
            service="derp-research",
            indexed_vectors=len(store.index),
        )

    return app


app = create_app()
