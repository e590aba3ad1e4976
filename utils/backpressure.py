# utils/backpressure.py
"""Process-wide guards for the catalog's upstreams.

- A circuit breaker that opens when Jikan answers 429, so later rolls fail fast
  as transient errors instead of piling more requests onto a throttled API.
- The shared ``redis.asyncio`` client behind the catalog cache. Redis is
  optional: when it is missing or down every helper here degrades to "no cache".
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Optional

from redis.asyncio import Redis

logger = logging.getLogger("bot.backpressure")


class _Breaker:
    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.open_until = 0.0


_breaker = _Breaker()


def now() -> float:
    return time.time()


async def is_open() -> int:
    """Whole seconds until the breaker closes; 0 when closed."""
    async with _breaker.lock:
        return max(0, int(_breaker.open_until - now()))


async def trip(seconds: int) -> None:
    """Open (or extend) the breaker. Never shortens an already longer opening."""
    seconds = max(1, int(seconds))
    async with _breaker.lock:
        was_open = _breaker.open_until > now()
        _breaker.open_until = max(_breaker.open_until, now() + seconds)
    if not was_open:
        logger.warning("Catalog circuit breaker open for %ss", seconds)


async def reset() -> None:
    async with _breaker.lock:
        _breaker.open_until = 0.0


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------

# Checked in order; hosting platforms tend to expose one of the latter two.
_REDIS_URL_VARS = ("REDIS_URL", "REDIS_PRIVATE_URL", "REDIS_PUBLIC_URL")

_redis: Optional[Redis] = None
_redis_lock = asyncio.Lock()


def redis_url() -> Optional[str]:
    for var in _REDIS_URL_VARS:
        url = (os.getenv(var) or "").strip()
        if url:
            return url
    return None


async def get_redis() -> Redis:
    """The shared client. Raises RuntimeError when no Redis URL is configured."""
    global _redis
    if _redis is None:
        async with _redis_lock:
            if _redis is None:
                url = redis_url()
                if url is None:
                    raise RuntimeError("No Redis URL configured (set REDIS_URL)")
                _redis = Redis.from_url(
                    url,
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                    retry_on_timeout=True,
                    health_check_interval=30,
                )
    return _redis


async def get_redis_or_none() -> Optional[Redis]:
    try:
        return await get_redis()
    except Exception as e:
        logger.debug("Redis unavailable: %s", e)
        return None


async def ping_redis() -> bool:
    r = await get_redis_or_none()
    if r is None:
        return False
    try:
        return bool(await r.ping())
    except Exception:
        logger.warning("Redis ping failed", exc_info=True)
        return False


async def close_redis() -> None:
    global _redis
    client, _redis = _redis, None
    if client is None:
        return
    try:
        await client.aclose()
    except Exception:
        logger.exception("Error closing Redis client")
