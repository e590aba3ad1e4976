"""
Async SQLAlchemy engine and session factory.

Postgres (asyncpg) holds users, owned characters and roll history. With
ENVIRONMENT=dev and no DATABASE_URL, a local SQLite file (aiosqlite) is used.
"""
from __future__ import annotations

import asyncio
import logging
import os
from typing import Any

from sqlalchemy import text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

log = logging.getLogger("db")

DEV_SQLITE_URL = "sqlite+aiosqlite:///./gacha.db"

_POSTGRES_POOL = {
    "pool_size": 10,
    "max_overflow": 20,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}

_INIT_ATTEMPTS = 5
_INIT_BASE_DELAY_S = 2.0

_engine: AsyncEngine | None = None
_sessionmaker: async_sessionmaker | None = None


def _is_dev() -> bool:
    return (os.getenv("ENVIRONMENT") or "prod").strip().lower() == "dev"


def normalize_url(url: str) -> str:
    """Point plain Postgres URLs (as hosting providers hand them out) at the asyncpg driver."""
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix):]
    return url


def database_url() -> str:
    url = (os.getenv("DATABASE_URL") or "").strip()
    if url:
        return normalize_url(url)
    if _is_dev():
        return DEV_SQLITE_URL
    raise RuntimeError("DATABASE_URL is not set (use ENVIRONMENT=dev for a local SQLite file)")


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        url = database_url()
        pool = {} if url.startswith("sqlite") else _POSTGRES_POOL
        _engine = create_async_engine(url, echo=False, **pool)
    return _engine


def get_sessionmaker() -> async_sessionmaker:
    global _sessionmaker
    if _sessionmaker is None:
        _sessionmaker = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _sessionmaker


def dialect_insert(session: Any, table: Any):
    """INSERT construct with ``on_conflict_do_*`` for the session's dialect."""
    name = session.bind.dialect.name
    if name == "postgresql":
        return postgresql.insert(table)
    if name == "sqlite":
        return sqlite.insert(table)
    raise RuntimeError(f"No conflict-aware INSERT for dialect {name!r}")


async def ping_db() -> bool:
    """SELECT 1 against the engine. Never raises."""
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception:
        log.exception("DB ping failed")
        return False
    return True


async def init_db() -> None:
    """Connect (retrying while the database boots) and create tables in dev or with DB_AUTO_CREATE."""
    from utils.models import Base

    create = _is_dev() or (os.getenv("DB_AUTO_CREATE") or "").strip().lower() in {"1", "true", "yes", "on"}
    engine = get_engine()

    attempt = 1
    while True:
        try:
            async with engine.begin() as conn:
                if create:
                    await conn.run_sync(Base.metadata.create_all)
                else:
                    await conn.execute(text("SELECT 1"))
            log.info("DB ready (tables created=%s)", create)
            return
        except Exception as exc:
            if attempt >= _INIT_ATTEMPTS:
                log.exception("DB init failed after %d attempts", attempt)
                raise
            delay = _INIT_BASE_DELAY_S * 2 ** (attempt - 1)
            log.warning("DB init attempt %d/%d failed (%s); retrying in %.0fs", attempt, _INIT_ATTEMPTS, exc, delay)
            await asyncio.sleep(delay)
            attempt += 1


async def dispose_engine() -> None:
    global _engine, _sessionmaker
    engine, _engine, _sessionmaker = _engine, None, None
    if engine is not None:
        await engine.dispose()
