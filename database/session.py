"""
Engine and session lifecycle for the sql store backend.

The store talks to the same Postgres that backs Supabase, or to a local
SQLite file during development. Plain driver URLs are upgraded to their
async drivers:

  postgresql:// | postgres://  → postgresql+asyncpg://
  sqlite://                    → sqlite+aiosqlite://

    await init_db(url)                 # once, creates line_users / queue_snapshots
    async with get_session() as db:    # one transaction per store call
        ...
    await close_db()
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)
from sqlalchemy.pool import StaticPool

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}

_engine: Optional[AsyncEngine] = None
_sessions: Optional[async_sessionmaker[AsyncSession]] = None


def _to_async_url(db_url: str) -> str:
    """Swap a bare driver scheme for its async counterpart. Async URLs pass through."""
    scheme, sep, rest = db_url.partition("://")
    if not sep or "+" in scheme:
        return db_url
    return f"{ASYNC_DRIVERS.get(scheme, scheme)}://{rest}"


def _engine_kwargs(db_url: str, echo: bool = False) -> dict[str, Any]:
    if db_url.startswith("sqlite"):
        kwargs: dict[str, Any] = {"echo": echo, "connect_args": {"check_same_thread": False}}
        # A memory database lives and dies with its single connection
        if db_url.rstrip("/").endswith(":memory:") or db_url.endswith("://"):
            kwargs["poolclass"] = StaticPool
        return kwargs
    # Scans issue one short query per tracked subscriber
    return {
        "echo": echo,
        "pool_size": 10,
        "max_overflow": 10,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def get_engine(db_url: Optional[str] = None) -> AsyncEngine:
    """The process-wide engine; created on first use from `db_url` or settings."""
    global _engine
    if _engine is None:
        settings = get_settings()
        url = _to_async_url(db_url or settings.database.url)
        _engine = create_async_engine(url, **_engine_kwargs(url, echo=settings.debug))
        logger.info("database_engine_created",
                    dialect=_engine.dialect.name,
                    url=_engine.url.render_as_string(hide_password=True))
    return _engine


def _session_factory() -> async_sessionmaker[AsyncSession]:
    global _sessions
    if _sessions is None:
        _sessions = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _sessions


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Session that commits on clean exit and rolls back on error."""
    async with _session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(db_url: Optional[str] = None) -> None:
    """Create any missing tables."""
    engine = get_engine(db_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    """Dispose the engine. The next get_engine() call builds a fresh one."""
    global _engine, _sessions
    if _engine is not None:
        await _engine.dispose()
        logger.info("database_closed")
    _engine = None
    _sessions = None
