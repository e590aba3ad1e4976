"""Character ownership persistence.

Characters are globally unique: the unique index on user_characters.character_id
is the only thing that decides who owns a character. Every claim goes through a
conflict-aware INSERT, never a check-then-insert.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import delete, func, select, update

import config
from utils.db import dialect_insert, get_sessionmaker
from utils.models import RollHistory, UserCharacter
from utils.points_store import ensure_user_row

logger = logging.getLogger("bot.characters")


class OwnershipChanged(Exception):
    """Raised inside a transfer transaction when an owner no longer holds a character."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CharacterMeta:
    """Display metadata captured at claim time."""

    character_id: int
    name: str = ""
    image_url: str = ""
    anime_title: str = ""
    role: str = ""
    favorites: int = 0


@dataclass(frozen=True)
class OwnedCharacter:
    user_id: int
    character_id: int
    name: str
    image_url: str
    anime_title: str
    role: str
    favorites: int
    claimed_at: datetime


def _owned(row: UserCharacter) -> OwnedCharacter:
    return OwnedCharacter(
        user_id=int(row.user_id),
        character_id=int(row.character_id),
        name=str(row.character_name or ""),
        image_url=str(row.character_image_url or ""),
        anime_title=str(row.anime_title or ""),
        role=str(row.character_role or ""),
        favorites=int(row.character_favorites or 0),
        claimed_at=row.claimed_at,
    )


async def claim_if_unowned(user_id: int, meta: CharacterMeta) -> bool:
    """Insert an ownership record iff nobody owns the character. Returns True on success."""
    Session = get_sessionmaker()
    async with Session() as session:
        await ensure_user_row(session, user_id, None)
        stmt = (
            dialect_insert(session, UserCharacter.__table__)
            .values(
                user_id=int(user_id),
                character_id=int(meta.character_id),
                character_name=(meta.name or "")[:255],
                character_image_url=meta.image_url or "",
                anime_title=(meta.anime_title or "")[:255],
                character_role=(meta.role or "")[:50],
                character_favorites=int(meta.favorites or 0),
                claimed_at=_now_utc(),
            )
            .on_conflict_do_nothing(index_elements=[UserCharacter.__table__.c.character_id])
        )
        res = await session.execute(stmt)
        await session.commit()
    inserted = int(res.rowcount or 0) == 1
    if inserted:
        logger.info("Character %s claimed by user=%s", meta.character_id, user_id)
    return inserted


async def owner_of(character_id: int) -> int | None:
    Session = get_sessionmaker()
    async with Session() as session:
        res = await session.execute(
            select(UserCharacter.user_id).where(UserCharacter.character_id == int(character_id))
        )
        owner = res.scalar_one_or_none()
        return int(owner) if owner is not None else None


async def user_owns(user_id: int, character_id: int) -> bool:
    return (await owner_of(character_id)) == int(user_id)


async def get_owned(character_id: int) -> OwnedCharacter | None:
    Session = get_sessionmaker()
    async with Session() as session:
        res = await session.execute(
            select(UserCharacter).where(UserCharacter.character_id == int(character_id))
        )
        row = res.scalar_one_or_none()
        return _owned(row) if row is not None else None


async def _move(session, character_id: int, from_user: int, to_user: int) -> None:
    res = await session.execute(
        update(UserCharacter)
        .where(UserCharacter.character_id == int(character_id))
        .where(UserCharacter.user_id == int(from_user))
        .values(user_id=int(to_user))
    )
    if int(res.rowcount or 0) != 1:
        raise OwnershipChanged(f"user {from_user} no longer owns character {character_id}")


async def swap_ownership(user_a: int, user_b: int, character_of_a: int, character_of_b: int) -> bool:
    """Atomically exchange two characters. Returns False (nothing changed) if either owner changed."""
    Session = get_sessionmaker()
    try:
        async with Session() as session:
            async with session.begin():
                # Each conditional UPDATE re-checks ownership at commit time.
                await _move(session, character_of_a, user_a, user_b)
                await _move(session, character_of_b, user_b, user_a)
    except OwnershipChanged as e:
        logger.info("Swap aborted: %s", e)
        return False
    logger.info(
        "Swapped characters: %s (%s -> %s), %s (%s -> %s)",
        character_of_a, user_a, user_b, character_of_b, user_b, user_a,
    )
    return True


async def remove_character(character_id: int) -> int | None:
    """Admin override: delete an ownership record. Returns the previous owner, if any."""
    Session = get_sessionmaker()
    async with Session() as session:
        async with session.begin():
            res = await session.execute(
                select(UserCharacter.user_id).where(UserCharacter.character_id == int(character_id))
            )
            owner = res.scalar_one_or_none()
            if owner is None:
                return None
            await session.execute(delete(UserCharacter).where(UserCharacter.character_id == int(character_id)))
    logger.warning("Character %s removed from user=%s (admin override)", character_id, owner)
    return int(owner)


async def list_collection(user_id: int, *, page: int = 0, per_page: int = 10) -> tuple[list[OwnedCharacter], int]:
    """One page of a user's characters (oldest claim first) and the total count."""
    per = max(1, int(per_page))
    offset = max(0, int(page)) * per
    Session = get_sessionmaker()
    async with Session() as session:
        total = await session.execute(
            select(func.count()).select_from(UserCharacter).where(UserCharacter.user_id == int(user_id))
        )
        rows = await session.execute(
            select(UserCharacter)
            .where(UserCharacter.user_id == int(user_id))
            .order_by(UserCharacter.claimed_at.asc(), UserCharacter.id.asc())
            .offset(offset)
            .limit(per)
        )
        return [_owned(r) for r in rows.scalars().all()], int(total.scalar_one() or 0)


async def record_roll(
    user_id: int,
    character_id: int,
    points: int,
    is_duplicate: bool,
    *,
    name: str = "",
    favorites: int = 0,
) -> None:
    """Append a roll to rolls_history.

    Best-effort unless ROLL_HISTORY_STRICT is set, in which case failures propagate.
    """
    try:
        Session = get_sessionmaker()
        async with Session() as session:
            session.add(
                RollHistory(
                    user_id=int(user_id),
                    character_id=int(character_id),
                    character_name=(name or "")[:255],
                    character_favorites=int(favorites or 0),
                    points_earned=int(points),
                    is_duplicate=bool(is_duplicate),
                    rolled_at=_now_utc(),
                )
            )
            await session.commit()
    except Exception:
        if config.ROLL_HISTORY_STRICT:
            raise
        logger.exception("record_roll failed user=%s character=%s", user_id, character_id)
