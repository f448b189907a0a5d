# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# One async engine per process, created lazily on first use. Background
# workers call `create_engine_for_url` to get an engine bound to their own
# event loop and dispose of it when the task finishes.
#
# SQLITE:
# Every connection switches the database to WAL journal mode so readers never
# block the single writer. Foreign keys are enforced per connection.
#
# COMMIT POLICY:
# Sessions come from `async_sessionmaker(expire_on_commit=False)` and are
# always used as `async with factory() as session, session.begin():` so each
# unit of work commits (or rolls back) on its own.
# =============================================================================

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from derp_research.config import settings
from derp_research.db.models import Base

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _enable_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_engine_for_url(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    Build an async engine for `database_url`.

    For file-based SQLite the parent directory is created and WAL mode is
    switched on for every new connection.
    """
    url = make_url(database_url)
    is_sqlite = url.get_backend_name() == "sqlite"

    if is_sqlite:
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        engine = create_async_engine(database_url, echo=echo)
        event.listen(engine.sync_engine, "connect", _enable_sqlite_pragmas)
    else:
        engine = create_async_engine(
            database_url,
            echo=echo,
            pool_size=5,
            max_overflow=10,
        )
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready (%s)", engine.url.render_as_string(hide_password=True))


def get_engine() -> AsyncEngine:
    """Lazily create and cache the process-wide async engine."""
    global _engine
    if _engine is None:
        _engine = create_engine_for_url(settings.database_url, echo=settings.debug)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Lazily create and cache the process-wide session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())
    return _session_factory
