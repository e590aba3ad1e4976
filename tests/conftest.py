"""Pytest configuration and fixtures. Run without real Redis/DB by default."""
from __future__ import annotations

import os
import sys

import pytest

# Ensure project root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Avoid loading .env that might point at prod
os.environ.setdefault("ENVIRONMENT", "dev")


@pytest.fixture(autouse=True)
def _no_redis(monkeypatch):
    """By default, make get_redis_or_none return None so tests don't need Redis."""
    from utils import backpressure

    async def _none():
        return None

    monkeypatch.setattr(backpressure, "get_redis_or_none", _none)


@pytest.fixture(autouse=True)
async def _closed_breaker():
    """Every test starts with the catalog circuit breaker closed."""
    from utils import backpressure

    await backpressure.reset()
    yield
    await backpressure.reset()


def _patch_db(engine) -> None:
    """Point utils.db at ``engine`` for the duration of a test."""
    import utils.db as db_mod
    from sqlalchemy.ext.asyncio import async_sessionmaker

    db_mod._engine = engine
    db_mod._sessionmaker = async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def db_engine(tmp_path):
    """A throwaway SQLite database with all tables, wired into utils.db.

    File-backed rather than :memory: so concurrent sessions in one test see the
    same database through separate connections.
    """
    from sqlalchemy.ext.asyncio import create_async_engine
    import utils.db as db_mod
    from utils.models import Base

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    _patch_db(engine)
    yield engine

    db_mod._engine = None
    db_mod._sessionmaker = None
    await engine.dispose()


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start: float = 1000.0):
        self.t = float(start)

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += float(seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scheduler(clock):
    from utils.scheduler import DelayedTaskQueue

    return DelayedTaskQueue(clock=clock)


class SeqRng:
    """Stand-in for random.Random that hands out IDs in a fixed order."""

    def __init__(self, ids=()):
        self.ids = list(ids)

    def randint(self, a, b):
        return self.ids.pop(0)

    def choice(self, seq):
        return seq[0]


@pytest.fixture
def seq_rng():
    return SeqRng


class FakeCatalog:
    """In-memory replacement for the Jikan-backed lookups in utils.catalog."""

    def __init__(self):
        import asyncio

        self.characters = {}
        self.roles = {}
        self.top = {}
        self.calls: list[int] = []
        self.error: Exception | None = None
        self.gate = None
        self.entered = asyncio.Event()

    def add(self, cid: int, *, favorites: int = 0, role: str = "Supporting", name: str | None = None):
        from utils.catalog import AnimeRole, Character

        ch = Character(id=cid, name=name or f"Char {cid}", favorites=favorites)
        self.characters[cid] = ch
        self.roles[cid] = AnimeRole(anime_title="Some Anime", role=role)
        return ch

    async def fetch_character(self, cid: int):
        self.calls.append(cid)
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.characters.get(cid)

    async def fetch_anime_role(self, cid: int):
        from utils.catalog import AnimeRole

        return self.roles.get(cid, AnimeRole())

    async def top_characters(self, page: int = 1):
        from utils.catalog import TopPage

        if self.error is not None:
            raise self.error
        return TopPage(characters=list(self.top.get(page, [])), page=page, has_next_page=False)


@pytest.fixture
def fake_catalog(monkeypatch):
    from utils import catalog

    fake = FakeCatalog()
    monkeypatch.setattr(catalog, "fetch_character", fake.fetch_character)
    monkeypatch.setattr(catalog, "fetch_anime_role", fake.fetch_anime_role)
    monkeypatch.setattr(catalog, "top_characters", fake.top_characters)
    return fake
