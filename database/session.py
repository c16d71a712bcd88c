"""
Async engine and session handling for the SQL availability store.

Any configured URL is accepted in its plain form and mapped to an async
driver:

  postgresql:// / postgres://     → postgresql+asyncpg://
  mysql:// / mysql+pymysql://     → mysql+aiomysql://
  sqlite://                       → sqlite+aiosqlite://

The process-wide engine is built lazily from settings.database.url. Scripts
and tests build their own with `create_engine_for(url)` and hand a
`make_session_factory(engine)` to SqlAvailabilityStore.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_SCHEMES = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}

# Server databases only; SQLite keeps the default pool.
_POOL_SETTINGS = {
    "pool_size": 10,
    "max_overflow": 20,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}

_engine: Optional[AsyncEngine] = None
_factory: Optional[async_sessionmaker[AsyncSession]] = None


def _to_async_url(db_url: str) -> str:
    scheme, sep, rest = db_url.partition("://")
    if not sep:
        return db_url
    return f"{_ASYNC_SCHEMES.get(scheme, scheme)}://{rest}"


def _engine_kwargs(db_url: str, echo: bool = False) -> dict:
    if db_url.startswith("sqlite"):
        return {"echo": echo, "connect_args": {"check_same_thread": False}}
    return {"echo": echo, **_POOL_SETTINGS}


def create_engine_for(db_url: str, echo: bool = False) -> AsyncEngine:
    async_url = _to_async_url(db_url)
    return create_async_engine(async_url, **_engine_kwargs(async_url, echo))


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_engine() -> AsyncEngine:
    """The process-wide engine for settings.database.url."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine_for(settings.database.url, echo=settings.debug)
        logger.info("database_engine_created", dialect=_engine.dialect.name,
                    url=_engine.url.render_as_string(hide_password=True))
    return _engine


@asynccontextmanager
async def session_scope(
    factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """One transaction: commit when the block exits cleanly, roll back otherwise."""
    global _factory
    if factory is None:
        if _factory is None:
            _factory = make_session_factory(get_engine())
        factory = _factory
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create any missing tables."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("database_closed", dialect=_engine.dialect.name)
    _engine = None
    _factory = None
