# utils/health.py
from __future__ import annotations

import logging
from dataclasses import dataclass

from utils import backpressure, db

logger = logging.getLogger("bot.health")


@dataclass(frozen=True)
class ServiceHealth:
    database: bool
    redis: bool
    catalog_breaker_open_s: int = 0

    @property
    def ok(self) -> bool:
        # Redis is a cache; the bot keeps working without it.
        return self.database


async def check_services() -> ServiceHealth:
    """Ping the database and Redis and report the catalog circuit-breaker state."""
    database = await db.ping_db()
    redis_ok = await backpressure.ping_redis()
    breaker = await backpressure.is_open()
    if not database:
        logger.error("Health check: database unreachable")
    if not redis_ok:
        logger.warning("Health check: Redis unreachable (catalog cache disabled)")
    return ServiceHealth(database=database, redis=redis_ok, catalog_breaker_open_s=int(breaker or 0))
