"""Points ledger: per-user balance, keyed by Discord user ID.

All balance changes are single UPDATE statements so concurrent awards never
lose updates. Deductions floor at zero; spends are conditional and fail
instead of going negative.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import case, select, update

from utils.db import dialect_insert, get_sessionmaker
from utils.models import User

logger = logging.getLogger("bot.points")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class UserSnapshot:
    user_id: int
    username: str
    total_points: int
    rolls_count: int
    lucky_roll_count: int


def _snapshot(row: User) -> UserSnapshot:
    return UserSnapshot(
        user_id=int(row.user_id),
        username=str(row.username or ""),
        total_points=int(row.total_points or 0),
        rolls_count=int(row.rolls_count or 0),
        lucky_roll_count=int(row.lucky_roll_count or 0),
    )


async def ensure_user_row(session, user_id: int, username: str | None) -> None:
    now = _now_utc()
    stmt = dialect_insert(session, User.__table__).values(
        user_id=int(user_id),
        username=(username or "")[:100],
        total_points=0,
        rolls_count=0,
        rolls_in_period=0,
        period_start_time=now,
        lucky_roll_count=0,
        created_at=now,
        updated_at=now,
    )
    if username:
        # Display name is last-write-wins.
        stmt = stmt.on_conflict_do_update(
            index_elements=[User.__table__.c.user_id],
            set_={"username": username[:100], "updated_at": now},
        )
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=[User.__table__.c.user_id])
    await session.execute(stmt)


async def upsert_user(user_id: int, username: str | None = None) -> None:
    """Create the user row on first contact; refresh the display name otherwise."""
    Session = get_sessionmaker()
    async with Session() as session:
        await ensure_user_row(session, user_id, username)
        await session.commit()


async def get_user(user_id: int) -> UserSnapshot | None:
    Session = get_sessionmaker()
    async with Session() as session:
        row = await session.get(User, int(user_id))
        return _snapshot(row) if row is not None else None


async def get_balance(user_id: int) -> int:
    user = await get_user(user_id)
    return user.total_points if user else 0


async def _balance_in(session, user_id: int) -> int:
    res = await session.execute(select(User.total_points).where(User.user_id == int(user_id)))
    return int(res.scalar_one_or_none() or 0)


async def add_points(user_id: int, amount: int, *, username: str | None = None) -> int:
    """Atomically add points (upserting the user). Returns the new balance."""
    amt = max(0, int(amount or 0))
    Session = get_sessionmaker()
    async with Session() as session:
        await ensure_user_row(session, user_id, username)
        if amt:
            await session.execute(
                update(User)
                .where(User.user_id == int(user_id))
                .values(total_points=User.total_points + amt, updated_at=_now_utc())
            )
        balance = await _balance_in(session, user_id)
        await session.commit()
    return balance


async def deduct_points(user_id: int, amount: int) -> int:
    """Atomically subtract points, flooring the balance at zero. Returns the new balance."""
    amt = max(0, int(amount or 0))
    Session = get_sessionmaker()
    async with Session() as session:
        await ensure_user_row(session, user_id, None)
        if amt:
            await session.execute(
                update(User)
                .where(User.user_id == int(user_id))
                .values(
                    total_points=case(
                        (User.total_points - amt < 0, 0),
                        else_=User.total_points - amt,
                    ),
                    updated_at=_now_utc(),
                )
            )
        balance = await _balance_in(session, user_id)
        await session.commit()
    return balance


async def spend_points(user_id: int, cost: int) -> tuple[bool, int]:
    """Spend points only if the balance covers ``cost``. Returns (ok, balance)."""
    amt = max(0, int(cost or 0))
    Session = get_sessionmaker()
    async with Session() as session:
        await ensure_user_row(session, user_id, None)
        ok = True
        if amt:
            res = await session.execute(
                update(User)
                .where(User.user_id == int(user_id))
                .where(User.total_points >= amt)
                .values(total_points=User.total_points - amt, updated_at=_now_utc())
            )
            ok = int(res.rowcount or 0) == 1
        balance = await _balance_in(session, user_id)
        await session.commit()
    return ok, balance


async def top_users(limit: int = 10) -> list[UserSnapshot]:
    Session = get_sessionmaker()
    async with Session() as session:
        res = await session.execute(
            select(User)
            .order_by(User.total_points.desc(), User.user_id.asc())
            .limit(max(1, int(limit)))
        )
        return [_snapshot(row) for row in res.scalars().all()]
