"""Engine and session factory for the durable user store.

Only used when ``DATABASE_URL`` is set; otherwise accounts live in memory and
nothing here is touched.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from ..core.config import get_settings


class Base(DeclarativeBase):
    pass


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _build_engine(database_url: str) -> AsyncEngine:
    options: dict[str, Any] = {}
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        # Every session must see the same in-memory database.
        options["poolclass"] = StaticPool
    return create_async_engine(database_url, **options)


def configure_engine(database_url: str) -> AsyncEngine:
    """Bind the module-level engine to ``database_url``, replacing any previous one."""

    global _engine, _session_factory
    _engine = _build_engine(database_url)
    _session_factory = None
    return _engine


def get_engine() -> AsyncEngine:
    if _engine is None:
        database_url = get_settings().database_url
        if not database_url:
            raise RuntimeError("DATABASE_URL is not configured")
        return configure_engine(database_url)
    return _engine


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


async def init_db() -> None:
    """Create missing tables for every registered model."""

    from .. import models  # noqa: F401  registers the tables on Base.metadata

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
