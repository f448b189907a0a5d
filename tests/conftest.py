# =============================================================================
# Shared Test Fixtures
# =============================================================================
#
# Every test gets its own SQLite file under tmp_path. The engine uses
# NullPool so each session opens a fresh connection on whichever event loop
# `_run` created, which lets a single test call asyncio.run() more than once.
# =============================================================================

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from derp_research.config import Settings
from derp_research.db.engine import _enable_sqlite_pragmas, create_session_factory, init_db
from derp_research.services.embedder import MockEmbedder
from derp_research.services.memory_store import MemoryStore
from derp_research.services.vector_index import PersistentVectorIndex

DIM = 64


def make_settings(**overrides) -> Settings:
    values = {
        "embedding_dimensions": DIM,
        "search_subtask_delay_seconds": 0.0,
        "use_mock_services": True,
        "search_provider": "mock",
        "vector_search_workers": 1,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def test_settings() -> Settings:
    return make_settings()


@pytest.fixture
def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    event.listen(eng.sync_engine, "connect", _enable_sqlite_pragmas)
    asyncio.run(init_db(eng))
    yield eng
    asyncio.run(eng.dispose())


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def embedder() -> MockEmbedder:
    return MockEmbedder(DIM)


@pytest.fixture
def store_factory(session_factory, embedder):
    """Build MemoryStores over the test database; indexes are closed afterwards."""
    indexes: list[PersistentVectorIndex] = []

    def _make(embedder_override=None, **setting_overrides) -> MemoryStore:
        index = PersistentVectorIndex(DIM, session_factory, max_workers=1)
        indexes.append(index)
        return MemoryStore(
            index,
            embedder_override or embedder,
            session_factory,
            make_settings(**setting_overrides),
        )

    yield _make
    for index in indexes:
        index.close()


@pytest.fixture
def store(store_factory) -> MemoryStore:
    return store_factory()
