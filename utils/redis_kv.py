"""JSON values in Redis with per-key TTL.

Reads and writes are best-effort: a Redis hiccup turns into a cache miss,
never into a failed command.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from utils import backpressure

logger = logging.getLogger("bot.kv")


def dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def loads(raw: str | bytes | None, default: Any = None) -> Any:
    if raw is None:
        return default
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("Dropping undecodable cache value %r", raw[:80])
        return default


async def kv_get_json(key: str, default: Any = None) -> Any:
    r = await backpressure.get_redis_or_none()
    if r is None:
        return default
    try:
        raw = await r.get(key)
    except Exception:
        logger.warning("Cache read failed key=%s", key, exc_info=True)
        return default
    return loads(raw, default)


async def kv_set_json(key: str, value: Any, *, ex: int | None = None) -> bool:
    r = await backpressure.get_redis_or_none()
    if r is None:
        return False
    try:
        await r.set(key, dumps(value), ex=ex)
    except Exception:
        logger.warning("Cache write failed key=%s", key, exc_info=True)
        return False
    return True
