# utils/ratelimit.py
"""Per-user roll quota (fixed window persisted on the users row) and the lucky-roll counter.

The window is reset lazily on check: once ``ROLL_PERIOD_SECONDS`` have passed
since ``period_start_time`` the counter is zeroed and stamped with now. Checking
never consumes quota; ``increment_rolls`` is called separately once a roll
attempt has actually happened (a failed catalog lookup still costs a roll).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select, update

import config
from utils.db import get_sessionmaker
from utils.models import User
from utils.points_store import ensure_user_row

logger = logging.getLogger("bot.ratelimit")


@dataclass(frozen=True)
class QuotaResult:
    allowed: bool
    rolls_remaining: int = 0
    wait_seconds: float = 0.0


@dataclass(frozen=True)
class LuckyResult:
    is_lucky: bool
    counter: int


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(dt: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


async def check_quota(
    user_id: int,
    *,
    now: datetime | None = None,
    max_rolls: int | None = None,
    period_seconds: int | None = None,
) -> QuotaResult:
    max_r = int(max_rolls if max_rolls is not None else config.MAX_ROLLS_PER_PERIOD)
    period = float(period_seconds if period_seconds is not None else config.ROLL_PERIOD_SECONDS)
    t = now or _now_utc()

    Session = get_sessionmaker()
    async with Session() as session:
        await ensure_user_row(session, user_id, None)
        res = await session.execute(
            select(User.rolls_in_period, User.period_start_time).where(User.user_id == int(user_id))
        )
        used, started = res.one()
        used = int(used or 0)
        started = _as_utc(started) or t

        elapsed = (t - started).total_seconds()
        # A window stamped in the future (clock skew between hosts) counts as stale.
        if elapsed >= period or elapsed < 0:
            await session.execute(
                update(User)
                .where(User.user_id == int(user_id))
                .values(rolls_in_period=0, period_start_time=t)
            )
            await session.commit()
            return QuotaResult(allowed=True, rolls_remaining=max_r)

        await session.commit()

    if used < max_r:
        return QuotaResult(allowed=True, rolls_remaining=max_r - used)
    return QuotaResult(allowed=False, rolls_remaining=0, wait_seconds=max(0.0, period - elapsed))


async def increment_rolls(user_id: int, *, now: datetime | None = None, max_rolls: int | None = None) -> int:
    """Consume one roll from the current window. Returns rolls used in the window."""
    max_r = int(max_rolls if max_rolls is not None else config.MAX_ROLLS_PER_PERIOD)
    t = now or _now_utc()
    Session = get_sessionmaker()
    async with Session() as session:
        await ensure_user_row(session, user_id, None)
        await session.execute(
            update(User)
            .where(User.user_id == int(user_id))
            # Capped so the window counter can never run past the quota.
            .where(User.rolls_in_period < max_r)
            .values(
                rolls_in_period=User.rolls_in_period + 1,
                rolls_count=User.rolls_count + 1,
                last_roll=t,
                updated_at=t,
            )
        )
        res = await session.execute(select(User.rolls_in_period).where(User.user_id == int(user_id)))
        used = int(res.scalar_one() or 0)
        await session.commit()
    return used


async def bump_lucky_counter(user_id: int, *, every: int | None = None) -> LuckyResult:
    """Count one roll toward the next lucky roll; resets to 0 when the lucky roll lands."""
    n = max(1, int(every if every is not None else config.LUCKY_ROLL_EVERY))
    Session = get_sessionmaker()
    async with Session() as session:
        await ensure_user_row(session, user_id, None)
        await session.execute(
            update(User)
            .where(User.user_id == int(user_id))
            .values(lucky_roll_count=User.lucky_roll_count + 1)
        )
        res = await session.execute(select(User.lucky_roll_count).where(User.user_id == int(user_id)))
        count = int(res.scalar_one() or 0)
        lucky = count > 0 and count % n == 0
        if lucky:
            await session.execute(
                update(User).where(User.user_id == int(user_id)).values(lucky_roll_count=0)
            )
        await session.commit()
    if lucky:
        logger.info("Lucky roll for user=%s", user_id)
    return LuckyResult(is_lucky=lucky, counter=0 if lucky else count)


def rolls_until_lucky(counter: int, *, every: int | None = None) -> int:
    """Rolls left before the next lucky roll. A fresh counter (0) reads as a full cycle."""
    n = max(1, int(every if every is not None else config.LUCKY_ROLL_EVERY))
    return n - (max(0, int(counter)) % n)


async def lucky_progress(user_id: int) -> int:
    Session = get_sessionmaker()
    async with Session() as session:
        res = await session.execute(select(User.lucky_roll_count).where(User.user_id == int(user_id)))
        counter = int(res.scalar_one_or_none() or 0)
    return rolls_until_lucky(counter)
