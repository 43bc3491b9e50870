"""
db/session.py — Credential Store Connection
=============================================
One async engine per process, one AsyncSession per operation.
main.py opens the engine on startup (init_db) and disposes it on shutdown.

Routes never build sessions themselves; they take one from get_db(), and
every workflow in modules/ runs inside that single transaction.
"""

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from config import settings

logger = logging.getLogger("umid.db")


def _async_url(url: str) -> str:
    """Plain postgres URLs get the asyncpg driver; anything else is used as given."""
    for prefix in ("postgresql://", "postgres://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix):]
    return url


def _engine_kwargs(url: str) -> dict:
    """SQLite has no connection pool to size; Postgres does."""
    kwargs = {"echo": settings.DEBUG}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"timeout": 15}
    else:
        kwargs["pool_size"] = settings.DB_POOL_SIZE
        kwargs["max_overflow"] = settings.DB_MAX_OVERFLOW
        kwargs["pool_pre_ping"] = True
    return kwargs


def make_engine(url: str) -> AsyncEngine:
    url = _async_url(url)
    return create_async_engine(url, **_engine_kwargs(url))


DATABASE_URL = _async_url(settings.DATABASE_URL)
engine = make_engine(DATABASE_URL)

AsyncSessionLocal = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    """Declarative base for the UMID tables."""


async def init_db(bind: AsyncEngine = None):
    """Create the UMID, version and access-log tables if missing."""
    from db import models  # noqa: F401  registers the tables on Base.metadata

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Credential store schema ready ({len(Base.metadata.tables)} tables)")


async def ping_db() -> bool:
    """Round-trip a trivial query; used by /health-check."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error(f"Credential store ping failed: {exc.__class__.__name__}")
        return False
    return True


async def close_db():
    await engine.dispose()
    logger.info("Credential store connections closed")


async def get_db():
    """
    Request-scoped session. Commits whatever the workflow left pending,
    rolls back on any exception and re-raises it for the error handlers.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
