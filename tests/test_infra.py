"""Tests for the DB URL handling, Redis URL lookup and JSON cache helpers."""
from __future__ import annotations

import importlib

import pytest

from utils import backpressure, db, redis_kv


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("postgres://u:p@h:5432/d", "postgresql+asyncpg://u:p@h:5432/d"),
        ("postgresql://u:p@h/d", "postgresql+asyncpg://u:p@h/d"),
        ("postgresql+asyncpg://u:p@h/d", "postgresql+asyncpg://u:p@h/d"),
        ("sqlite+aiosqlite:///x.db", "sqlite+aiosqlite:///x.db"),
    ],
)
def test_normalize_url(raw, expected):
    assert db.normalize_url(raw) == expected


def test_database_url_dev_fallback(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("ENVIRONMENT", "dev")
    assert db.database_url() == db.DEV_SQLITE_URL


def test_database_url_required_in_prod(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("ENVIRONMENT", "prod")
    with pytest.raises(RuntimeError):
        db.database_url()


def test_redis_url_precedence(monkeypatch):
    for var in ("REDIS_URL", "REDIS_PRIVATE_URL", "REDIS_PUBLIC_URL"):
        monkeypatch.delenv(var, raising=False)
    assert backpressure.redis_url() is None
    monkeypatch.setenv("REDIS_PUBLIC_URL", "redis://public")
    monkeypatch.setenv("REDIS_PRIVATE_URL", "redis://private")
    assert backpressure.redis_url() == "redis://private"


def test_loads_tolerates_junk():
    assert redis_kv.loads(None, default=1) == 1
    assert redis_kv.loads("{not json", default={}) == {}
    assert redis_kv.loads(b'{"a":1}') == {"a": 1}


async def test_cache_without_redis_is_a_miss():
    assert await redis_kv.kv_set_json("k", {"a": 1}, ex=10) is False
    assert await redis_kv.kv_get_json("k", default="miss") == "miss"


async def test_breaker_extends_but_never_shortens():
    await backpressure.trip(30)
    await backpressure.trip(5)
    assert await backpressure.is_open() > 5
    await backpressure.reset()
    assert await backpressure.is_open() == 0


@pytest.mark.parametrize("name", ["utils.db", "utils.models", "utils.points_store", "utils.redis_kv"])
def test_module_docstrings(name):
    assert importlib.import_module(name).__doc__
