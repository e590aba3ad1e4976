# utils/gifts.py
"""Admin-only character gifting and removal.

A gift is staged first (so the admin sees exactly which character goes to whom)
and only lands in the ownership store on confirm, through the same
conflict-aware claim as a normal roll.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional

import config
from utils import catalog, character_store
from utils.catalog import AnimeRole, Character
from utils.claims import to_meta
from utils.owner import is_bot_owner
from utils.scheduler import DelayedTaskQueue
from utils.tokens import GiftToken, now_ms

logger = logging.getLogger("bot.gifts")


class GiftKind(str, enum.Enum):
    PENDING = "pending"
    GIVEN = "given"
    CANCELLED = "cancelled"
    REMOVED = "removed"
    NOT_ADMIN = "not_admin"
    ALREADY_OWNED = "already_owned"
    NOT_FOUND = "not_found"
    NOT_OWNED = "not_owned"
    UNAVAILABLE = "unavailable"


@dataclass
class PendingGift:
    token: GiftToken
    character: Character
    anime: AnimeRole


@dataclass(frozen=True)
class GiftResult:
    kind: GiftKind
    gift: Optional[PendingGift] = None
    character_id: int = 0
    owner_id: Optional[int] = None


class GiftCoordinator:
    def __init__(self, scheduler: DelayedTaskQueue, *, confirm_s: int | None = None):
        self._scheduler = scheduler
        self._confirm_s = int(confirm_s if confirm_s is not None else config.GIFT_CONFIRM_SECONDS)
        self._gifts: dict[GiftToken, PendingGift] = {}

    @property
    def confirm_s(self) -> int:
        return self._confirm_s

    def get(self, token: GiftToken) -> Optional[PendingGift]:
        return self._gifts.get(token)

    def _drop(self, token: GiftToken) -> Optional[PendingGift]:
        self._scheduler.cancel(("gift", token))
        return self._gifts.pop(token, None)

    async def give(self, admin_id: int, target_id: int, character_id: int) -> GiftResult:
        cid = int(character_id)
        if not is_bot_owner(admin_id):
            return GiftResult(kind=GiftKind.NOT_ADMIN, character_id=cid)

        owner = await character_store.owner_of(cid)
        if owner is not None:
            return GiftResult(kind=GiftKind.ALREADY_OWNED, character_id=cid, owner_id=owner)

        character = await catalog.fetch_character(cid)
        if character is None:
            return GiftResult(kind=GiftKind.NOT_FOUND, character_id=cid)
        anime = await catalog.fetch_anime_role(cid)

        token = GiftToken(admin_id=int(admin_id), target_id=int(target_id), character_id=cid, created_ms=now_ms())
        gift = PendingGift(token=token, character=character, anime=anime)
        self._gifts[token] = gift
        self._scheduler.schedule(("gift", token), self._confirm_s, lambda: self.expire(token))
        return GiftResult(kind=GiftKind.PENDING, gift=gift, character_id=cid)

    async def confirm(self, token: GiftToken, user_id: int) -> GiftResult:
        if int(user_id) != token.admin_id or not is_bot_owner(user_id):
            return GiftResult(kind=GiftKind.NOT_ADMIN, character_id=token.character_id)
        gift = self._drop(token)
        if gift is None:
            return GiftResult(kind=GiftKind.UNAVAILABLE, character_id=token.character_id)

        if await character_store.claim_if_unowned(token.target_id, to_meta(gift.character, gift.anime)):
            logger.info(
                "Admin %s gave character=%s to user=%s", token.admin_id, token.character_id, token.target_id,
            )
            return GiftResult(kind=GiftKind.GIVEN, gift=gift, character_id=token.character_id)

        owner = await character_store.owner_of(token.character_id)
        return GiftResult(kind=GiftKind.ALREADY_OWNED, gift=gift, character_id=token.character_id, owner_id=owner)

    async def cancel(self, token: GiftToken, user_id: int) -> GiftResult:
        if int(user_id) != token.admin_id:
            return GiftResult(kind=GiftKind.NOT_ADMIN, character_id=token.character_id)
        gift = self._drop(token)
        if gift is None:
            return GiftResult(kind=GiftKind.UNAVAILABLE, character_id=token.character_id)
        return GiftResult(kind=GiftKind.CANCELLED, gift=gift, character_id=token.character_id)

    async def expire(self, token: GiftToken) -> None:
        self._gifts.pop(token, None)

    async def remove(self, admin_id: int, character_id: int) -> GiftResult:
        cid = int(character_id)
        if not is_bot_owner(admin_id):
            return GiftResult(kind=GiftKind.NOT_ADMIN, character_id=cid)
        previous = await character_store.remove_character(cid)
        if previous is None:
            return GiftResult(kind=GiftKind.NOT_OWNED, character_id=cid)
        return GiftResult(kind=GiftKind.REMOVED, character_id=cid, owner_id=previous)
