# utils/packs.py
"""Point-bought character packs.

A pack is offered, paid for on confirm, rolled into ``PACK_SIZE`` slots and then
revealed slot by slot. Pack rolls bypass the roll quota and the lucky counter;
revealed characters are auto-claimed (or converted to the duplicate bonus).

Pack lifecycle::

    OFFERED --confirm (paid)--> OPENED --all slots revealed--> DONE
    OFFERED --cancel / timeout--> CANCELLED / EXPIRED
    OFFERED --catalog error on confirm--> REFUNDED
    OPENED --timeout--> remaining slots auto-revealed --> DONE
"""
from __future__ import annotations

import enum
import logging
import random
from dataclasses import dataclass, field
from typing import Optional

import config
from utils import catalog, character_store, points_store, scoring
from utils.catalog import AnimeRole, Character, CatalogError
from utils.claims import pick_random_character, to_meta
from utils.scheduler import DelayedTaskQueue
from utils.tokens import PackToken, now_ms

logger = logging.getLogger("bot.packs")


class PackStatus(str, enum.Enum):
    OFFERED = "offered"
    OPENED = "opened"
    DONE = "done"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REFUNDED = "refunded"


class PackKind(str, enum.Enum):
    OFFERED = "offered"
    OPENED = "opened"
    REVEALED = "revealed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    INSUFFICIENT_POINTS = "insufficient_points"
    PACK_BUSY = "pack_busy"
    NOT_YOURS = "not_yours"
    NOT_READY = "not_ready"
    BAD_SLOT = "bad_slot"
    IN_PROGRESS = "in_progress"
    UNAVAILABLE = "unavailable"


class SlotKind(str, enum.Enum):
    CLAIMED = "claimed"
    DUPLICATE = "duplicate"
    RESERVED = "reserved"
    EMPTY = "empty"


@dataclass(frozen=True)
class SlotReveal:
    kind: SlotKind
    points: int = 0
    balance: int = 0


@dataclass
class PackSlot:
    index: int
    character: Optional[Character]
    anime: Optional[AnimeRole]
    guaranteed: bool = False
    result: Optional[SlotReveal] = None
    revealing: bool = False

    @property
    def revealed(self) -> bool:
        return self.result is not None


@dataclass
class Pack:
    token: PackToken
    cost: int
    expires_at: float
    status: PackStatus = PackStatus.OFFERED
    slots: list[PackSlot] = field(default_factory=list)
    confirming: bool = False

    @property
    def unrevealed(self) -> list[PackSlot]:
        return [s for s in self.slots if not s.revealed]


@dataclass(frozen=True)
class PackResult:
    kind: PackKind
    pack: Optional[Pack] = None
    slot: Optional[PackSlot] = None
    cost: int = 0
    balance: int = 0


class PackCoordinator:
    def __init__(
        self,
        scheduler: DelayedTaskQueue,
        *,
        rng: random.Random | None = None,
        cost: int | None = None,
        size: int | None = None,
        reserved_ids: frozenset[int] | None = None,
    ):
        self._scheduler = scheduler
        self._rng = rng or random.Random()
        self._cost = int(cost if cost is not None else config.PACK_COST)
        self._size = max(1, int(size if size is not None else config.PACK_SIZE))
        self._reserved = frozenset(reserved_ids if reserved_ids is not None else config.RESERVED_CHARACTER_IDS)
        self._packs: dict[PackToken, Pack] = {}
        self._by_user: dict[int, PackToken] = {}

    @property
    def cost(self) -> int:
        return self._cost

    def now(self) -> float:
        return self._scheduler.now()

    def get(self, token: PackToken) -> Optional[Pack]:
        return self._packs.get(token)

    def open_pack_for(self, user_id: int) -> Optional[Pack]:
        token = self._by_user.get(int(user_id))
        return self._packs.get(token) if token else None

    def _close(self, pack: Pack, status: PackStatus) -> None:
        pack.status = status
        self._packs.pop(pack.token, None)
        if self._by_user.get(pack.token.user_id) == pack.token:
            del self._by_user[pack.token.user_id]
        self._scheduler.cancel(("pack", pack.token))

    def _owned_pack(self, token: PackToken, user_id: int) -> tuple[Optional[Pack], Optional[PackResult]]:
        pack = self.get(token)
        if pack is None:
            return None, PackResult(kind=PackKind.UNAVAILABLE)
        if int(user_id) != token.user_id:
            return None, PackResult(kind=PackKind.NOT_YOURS, pack=pack)
        return pack, None

    # ------------------------------------------------------------------
    # Offer / confirm / cancel
    # ------------------------------------------------------------------
    async def offer(self, user_id: int, username: str | None = None) -> PackResult:
        uid = int(user_id)
        existing = self.open_pack_for(uid)
        if existing is not None:
            return PackResult(kind=PackKind.PACK_BUSY, pack=existing)

        await points_store.upsert_user(uid, username)
        balance = await points_store.get_balance(uid)

        # Re-check after the await: a second /pack may have raced this one.
        existing = self.open_pack_for(uid)
        if existing is not None:
            return PackResult(kind=PackKind.PACK_BUSY, pack=existing)

        token = PackToken(user_id=uid, created_ms=now_ms())
        pack = Pack(token=token, cost=self._cost, expires_at=self._scheduler.now() + config.PACK_OFFER_SECONDS)
        self._packs[token] = pack
        self._by_user[uid] = token
        self._scheduler.schedule(("pack", token), config.PACK_OFFER_SECONDS, lambda: self.expire(token))
        return PackResult(kind=PackKind.OFFERED, pack=pack, cost=self._cost, balance=balance)

    async def confirm(self, token: PackToken, user_id: int) -> PackResult:
        pack, err = self._owned_pack(token, user_id)
        if err is not None:
            return err
        if pack.status is not PackStatus.OFFERED:
            return PackResult(kind=PackKind.NOT_READY, pack=pack)
        if pack.confirming:
            return PackResult(kind=PackKind.IN_PROGRESS, pack=pack)

        pack.confirming = True
        try:
            ok, balance = await points_store.spend_points(token.user_id, pack.cost)
            if not ok:
                self._close(pack, PackStatus.CANCELLED)
                return PackResult(kind=PackKind.INSUFFICIENT_POINTS, pack=pack, cost=pack.cost, balance=balance)

            try:
                slots = await self._roll_slots()
            except CatalogError:
                balance = await points_store.add_points(token.user_id, pack.cost)
                self._close(pack, PackStatus.REFUNDED)
                logger.warning("Pack for user=%s refunded after catalog failure", token.user_id)
                return PackResult(kind=PackKind.REFUNDED, pack=pack, cost=pack.cost, balance=balance)
            except Exception:
                await points_store.add_points(token.user_id, pack.cost)
                self._close(pack, PackStatus.REFUNDED)
                raise
        finally:
            pack.confirming = False

        pack.slots = slots
        pack.status = PackStatus.OPENED
        pack.expires_at = self._scheduler.now() + config.PACK_REVEAL_SECONDS
        self._scheduler.schedule(("pack", token), config.PACK_REVEAL_SECONDS, lambda: self.expire(token))
        logger.info("Pack opened user=%s slots=%s", token.user_id, len(slots))
        return PackResult(kind=PackKind.OPENED, pack=pack, cost=pack.cost, balance=balance)

    async def cancel(self, token: PackToken, user_id: int) -> PackResult:
        pack, err = self._owned_pack(token, user_id)
        if err is not None:
            return err
        if pack.status is not PackStatus.OFFERED:
            return PackResult(kind=PackKind.NOT_READY, pack=pack)
        if pack.confirming:
            return PackResult(kind=PackKind.IN_PROGRESS, pack=pack)
        self._close(pack, PackStatus.CANCELLED)
        return PackResult(kind=PackKind.CANCELLED, pack=pack)

    # ------------------------------------------------------------------
    # Slots
    # ------------------------------------------------------------------
    async def _roll_slots(self) -> list[PackSlot]:
        slots: list[PackSlot] = []
        for i in range(self._size - 1):
            character, anime = await pick_random_character(self._rng)
            slots.append(PackSlot(index=i, character=character, anime=anime))
        character, anime = await self._guaranteed_pick()
        slots.append(PackSlot(index=self._size - 1, character=character, anime=anime, guaranteed=True))
        return slots

    async def _guaranteed_pick(self) -> tuple[Optional[Character], Optional[AnimeRole]]:
        page = self._rng.randint(1, max(1, config.PACK_GUARANTEED_TOP_PAGES))
        top = await catalog.top_characters(page)
        pool = [c for c in top.characters if c.favorites >= config.PACK_GUARANTEED_MIN_FAVORITES]
        if not pool and page != 1:
            top = await catalog.top_characters(1)
            pool = [c for c in top.characters if c.favorites >= config.PACK_GUARANTEED_MIN_FAVORITES]
        if not pool:
            logger.warning("No top-list character met the guaranteed favorites floor")
            return await pick_random_character(self._rng)
        character = self._rng.choice(pool)
        return character, await catalog.fetch_anime_role(character.id)

    async def reveal(self, token: PackToken, user_id: int, slot_index: int) -> PackResult:
        pack, err = self._owned_pack(token, user_id)
        if err is not None:
            return err
        if pack.status is not PackStatus.OPENED:
            return PackResult(kind=PackKind.NOT_READY, pack=pack)
        if not 0 <= int(slot_index) < len(pack.slots):
            return PackResult(kind=PackKind.BAD_SLOT, pack=pack)

        slot = pack.slots[int(slot_index)]
        if slot.revealed:
            return PackResult(kind=PackKind.REVEALED, pack=pack, slot=slot)
        if slot.revealing:
            return PackResult(kind=PackKind.IN_PROGRESS, pack=pack, slot=slot)

        await self._reveal_slot(pack, slot)
        if not pack.unrevealed and self.get(token) is pack:
            self._close(pack, PackStatus.DONE)
        return PackResult(kind=PackKind.REVEALED, pack=pack, slot=slot)

    async def _reveal_slot(self, pack: Pack, slot: PackSlot) -> SlotReveal:
        uid = pack.token.user_id
        slot.revealing = True
        try:
            slot.result = await self._resolve_slot(uid, slot)
        finally:
            slot.revealing = False
        return slot.result

    async def _resolve_slot(self, user_id: int, slot: PackSlot) -> SlotReveal:
        character, anime = slot.character, slot.anime
        if character is None or anime is None:
            return SlotReveal(kind=SlotKind.EMPTY, balance=await points_store.get_balance(user_id))

        points = scoring.roll_points(character.favorites, is_main=anime.is_main, is_lucky=False)
        if character.id in self._reserved:
            kind = SlotKind.RESERVED
        elif await character_store.claim_if_unowned(user_id, to_meta(character, anime)):
            kind = SlotKind.CLAIMED
        else:
            kind = SlotKind.DUPLICATE
            points = scoring.DUPLICATE_BONUS

        balance = await points_store.add_points(user_id, points)
        await character_store.record_roll(
            user_id, character.id, points, kind is SlotKind.DUPLICATE,
            name=character.name, favorites=character.favorites,
        )
        return SlotReveal(kind=kind, points=points, balance=balance)

    async def expire(self, token: PackToken) -> None:
        pack = self.get(token)
        if pack is None:
            return
        if pack.confirming or any(s.revealing for s in pack.slots):
            self._scheduler.schedule(("pack", token), 1.0, lambda: self.expire(token))
            return
        if pack.status is PackStatus.OFFERED:
            self._close(pack, PackStatus.EXPIRED)
            return
        # Paid slots are never forfeited. The user may keep revealing while
        # this runs, so every slot is re-checked right before it is resolved.
        for slot in pack.unrevealed:
            if slot.revealed or slot.revealing:
                continue
            await self._reveal_slot(pack, slot)
        if any(s.revealing for s in pack.slots):
            self._scheduler.schedule(("pack", token), 1.0, lambda: self.expire(token))
            return
        if self.get(token) is pack:
            self._close(pack, PackStatus.DONE)
            logger.info("Pack for user=%s auto-revealed on timeout", token.user_id)
