# utils/claims.py
"""Roll / claim / snipe coordinator.

Owns the in-memory workflow state for rolls: pending claims, per-user roll
locks and snipe cooldowns. None of that state is trusted as ground truth for
ownership; every resolution goes through ``character_store.claim_if_unowned``
and the unique index behind it.

Pending claim lifecycle::

    OPEN --claim (roller)--> CLAIMED
    OPEN --snipe (other)---> SNIPED
    OPEN --30s timer-------> EXPIRED
"""
from __future__ import annotations

import enum
import logging
import random
from dataclasses import dataclass, field
from typing import Optional

import config
from utils import catalog, character_store, points_store, ratelimit, scoring
from utils.catalog import AnimeRole, Character
from utils.character_store import CharacterMeta
from utils.scheduler import DelayedTaskQueue
from utils.tokens import ClaimToken, now_ms

logger = logging.getLogger("bot.claims")


class RollKind(str, enum.Enum):
    FRESH = "fresh"
    LUCKY = "lucky"
    DUPLICATE = "duplicate"
    RESERVED = "reserved"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    BUSY = "busy"


class ClaimState(str, enum.Enum):
    OPEN = "open"
    CLAIMED = "claimed"
    SNIPED = "sniped"
    EXPIRED = "expired"


class ClaimKind(str, enum.Enum):
    CLAIMED = "claimed"
    ALREADY_CLAIMED = "already_claimed"
    NOT_YOURS = "not_yours"
    IN_PROGRESS = "in_progress"
    UNAVAILABLE = "unavailable"


class SnipeKind(str, enum.Enum):
    SNIPED = "sniped"
    FAILED = "failed"
    OWN_ROLL = "own_roll"
    NOT_SNIPEABLE = "not_snipeable"
    COOLDOWN = "cooldown"
    INSUFFICIENT_POINTS = "insufficient_points"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class RollOutcome:
    """Result of a roll command, rendered by ``core.ui.render_roll``."""

    kind: RollKind
    user_id: int
    character: Optional[Character] = None
    anime: Optional[AnimeRole] = None
    # FRESH/LUCKY: value awarded on claim. DUPLICATE/RESERVED: value already awarded.
    points: int = 0
    token: Optional[ClaimToken] = None
    snipeable: bool = False
    snipe_cost: int = 0
    claim_window_s: int = 0
    rolls_remaining: int = 0
    wait_seconds: float = 0.0
    owner_id: Optional[int] = None
    balance: Optional[int] = None


@dataclass(frozen=True)
class ClaimResult:
    kind: ClaimKind
    points: int = 0
    balance: int = 0
    character: Optional[Character] = None


@dataclass(frozen=True)
class SnipeResult:
    kind: SnipeKind
    cost: int = 0
    balance: int = 0
    cooldown_s: float = 0.0
    character: Optional[Character] = None
    roller_id: Optional[int] = None


@dataclass
class PendingClaim:
    token: ClaimToken
    character: Character
    anime: AnimeRole
    points: int
    lucky: bool
    expires_at: float
    state: ClaimState = ClaimState.OPEN
    # Set while the roller's claim is awaiting the store; blocks a double click.
    claiming: bool = False
    snipe_cost: int = field(default=0)

    @property
    def snipeable(self) -> bool:
        return not self.lucky

    def meta(self) -> CharacterMeta:
        return to_meta(self.character, self.anime)


def to_meta(character: Character, anime: AnimeRole) -> CharacterMeta:
    return CharacterMeta(
        character_id=character.id,
        name=character.name,
        image_url=character.image_url,
        anime_title=anime.anime_title,
        role=anime.role,
        favorites=character.favorites,
    )


async def pick_random_character(
    rng: random.Random,
    *,
    attempts: int | None = None,
    max_character_id: int | None = None,
) -> tuple[Optional[Character], Optional[AnimeRole]]:
    """Draw random catalog IDs until one exists (bounded). Transient catalog errors propagate."""
    tries = max(1, int(attempts if attempts is not None else config.ROLL_FETCH_ATTEMPTS))
    upper = max(1, int(max_character_id if max_character_id is not None else config.MAX_CHARACTER_ID))
    for _ in range(tries):
        cid = rng.randint(1, upper)
        character = await catalog.fetch_character(cid)
        if character is None:
            logger.debug("Catalog has no character %s; re-rolling", cid)
            continue
        anime = await catalog.fetch_anime_role(cid)
        return character, anime
    return None, None


class ClaimCoordinator:
    def __init__(
        self,
        scheduler: DelayedTaskQueue,
        *,
        rng: random.Random | None = None,
        claim_window_s: int | None = None,
        reserved_ids: frozenset[int] | None = None,
    ):
        self._scheduler = scheduler
        self._rng = rng or random.Random()
        self._claim_window_s = int(claim_window_s if claim_window_s is not None else config.CLAIM_WINDOW_SECONDS)
        self._reserved = frozenset(reserved_ids if reserved_ids is not None else config.RESERVED_CHARACTER_IDS)
        self._pending: dict[ClaimToken, PendingClaim] = {}
        self._cooldowns: dict[int, float] = {}
        self._roll_locks: set[int] = set()

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------
    def get(self, token: ClaimToken) -> Optional[PendingClaim]:
        return self._pending.get(token)

    def active_count(self) -> int:
        return len(self._pending)

    def is_rolling(self, user_id: int) -> bool:
        return int(user_id) in self._roll_locks

    def snipe_cooldown_remaining(self, user_id: int) -> float:
        until = self._cooldowns.get(int(user_id))
        if until is None:
            return 0.0
        remaining = until - self._scheduler.now()
        if remaining <= 0:
            self._cooldowns.pop(int(user_id), None)
            return 0.0
        return remaining

    # ------------------------------------------------------------------
    # Roll
    # ------------------------------------------------------------------
    async def handle_roll(self, user_id: int, username: str | None = None) -> RollOutcome:
        uid = int(user_id)
        if uid in self._roll_locks:
            return RollOutcome(kind=RollKind.BUSY, user_id=uid)
        self._roll_locks.add(uid)
        try:
            return await self._roll(uid, username)
        finally:
            self._roll_locks.discard(uid)

    async def _roll(self, uid: int, username: str | None) -> RollOutcome:
        await points_store.upsert_user(uid, username)

        quota = await ratelimit.check_quota(uid)
        if not quota.allowed:
            return RollOutcome(
                kind=RollKind.RATE_LIMITED,
                user_id=uid,
                rolls_remaining=0,
                wait_seconds=quota.wait_seconds,
            )

        # Catalog errors propagate from here, before anything is written.
        character, anime = await pick_random_character(self._rng)

        used = await ratelimit.increment_rolls(uid)
        remaining = max(0, config.MAX_ROLLS_PER_PERIOD - used)
        # Every performed roll advances the lucky counter, found or not.
        lucky = (await ratelimit.bump_lucky_counter(uid)).is_lucky
        if character is None or anime is None:
            return RollOutcome(kind=RollKind.NOT_FOUND, user_id=uid, rolls_remaining=remaining)

        points = scoring.roll_points(character.favorites, is_main=anime.is_main, is_lucky=lucky)

        owner = await character_store.owner_of(character.id)
        if owner is not None:
            balance = await points_store.add_points(uid, scoring.DUPLICATE_BONUS)
            await character_store.record_roll(
                uid, character.id, scoring.DUPLICATE_BONUS, True,
                name=character.name, favorites=character.favorites,
            )
            return RollOutcome(
                kind=RollKind.DUPLICATE,
                user_id=uid,
                character=character,
                anime=anime,
                points=scoring.DUPLICATE_BONUS,
                rolls_remaining=remaining,
                owner_id=owner,
                balance=balance,
            )

        if character.id in self._reserved:
            balance = await points_store.add_points(uid, points)
            await character_store.record_roll(
                uid, character.id, points, False, name=character.name, favorites=character.favorites,
            )
            return RollOutcome(
                kind=RollKind.RESERVED,
                user_id=uid,
                character=character,
                anime=anime,
                points=points,
                rolls_remaining=remaining,
                balance=balance,
            )

        await character_store.record_roll(
            uid, character.id, points, False, name=character.name, favorites=character.favorites,
        )
        token = ClaimToken(roller_id=uid, character_id=character.id, issued_ms=now_ms())
        pending = PendingClaim(
            token=token,
            character=character,
            anime=anime,
            points=points,
            lucky=lucky,
            expires_at=self._scheduler.now() + self._claim_window_s,
            snipe_cost=scoring.snipe_cost(character.favorites),
        )
        self._pending[token] = pending
        self._scheduler.schedule(("claim", token), self._claim_window_s, lambda: self.expire(token))
        logger.info(
            "Roll user=%s character=%s points=%s lucky=%s", uid, character.id, points, lucky,
        )
        return RollOutcome(
            kind=RollKind.LUCKY if lucky else RollKind.FRESH,
            user_id=uid,
            character=character,
            anime=anime,
            points=points,
            token=token,
            snipeable=pending.snipeable,
            snipe_cost=pending.snipe_cost,
            claim_window_s=self._claim_window_s,
            rolls_remaining=remaining,
        )

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------
    def _open(self, token: ClaimToken) -> Optional[PendingClaim]:
        pending = self._pending.get(token)
        if pending is None:
            return None
        if self._scheduler.now() >= pending.expires_at and not pending.claiming:
            self._finish(token, ClaimState.EXPIRED)
            return None
        return pending

    def _finish(self, token: ClaimToken, state: ClaimState) -> None:
        pending = self._pending.pop(token, None)
        self._scheduler.cancel(("claim", token))
        if pending is not None and pending.state is ClaimState.OPEN:
            pending.state = state

    async def handle_claim(self, token: ClaimToken, user_id: int) -> ClaimResult:
        pending = self._open(token)
        if pending is None:
            return ClaimResult(kind=ClaimKind.UNAVAILABLE)
        if int(user_id) != token.roller_id:
            return ClaimResult(kind=ClaimKind.NOT_YOURS, character=pending.character)
        if pending.claiming:
            return ClaimResult(kind=ClaimKind.IN_PROGRESS, character=pending.character)

        pending.claiming = True
        try:
            won = await character_store.claim_if_unowned(token.roller_id, pending.meta())
        except Exception:
            pending.claiming = False
            raise

        if won:
            self._finish(token, ClaimState.CLAIMED)
            balance = await points_store.add_points(token.roller_id, pending.points)
            return ClaimResult(
                kind=ClaimKind.CLAIMED, points=pending.points, balance=balance, character=pending.character,
            )

        # Lost the race (a snipe or another claim landed first): duplicate bonus instead.
        self._finish(token, ClaimState.EXPIRED)
        balance = await points_store.add_points(token.roller_id, scoring.DUPLICATE_BONUS)
        logger.info("Claim lost race user=%s character=%s", token.roller_id, token.character_id)
        return ClaimResult(
            kind=ClaimKind.ALREADY_CLAIMED,
            points=scoring.DUPLICATE_BONUS,
            balance=balance,
            character=pending.character,
        )

    async def handle_snipe(self, token: ClaimToken, user_id: int) -> SnipeResult:
        uid = int(user_id)
        pending = self._open(token)
        if pending is None:
            return SnipeResult(kind=SnipeKind.UNAVAILABLE)
        if not pending.snipeable:
            return SnipeResult(kind=SnipeKind.NOT_SNIPEABLE, character=pending.character)
        if uid == token.roller_id:
            return SnipeResult(kind=SnipeKind.OWN_ROLL, character=pending.character)

        remaining = self.snipe_cooldown_remaining(uid)
        if remaining > 0:
            return SnipeResult(kind=SnipeKind.COOLDOWN, cooldown_s=remaining, character=pending.character)

        cost = pending.snipe_cost
        ok, balance = await points_store.spend_points(uid, cost)
        if not ok:
            return SnipeResult(
                kind=SnipeKind.INSUFFICIENT_POINTS, cost=cost, balance=balance, character=pending.character,
            )

        try:
            won = await character_store.claim_if_unowned(uid, pending.meta())
        except Exception:
            await points_store.add_points(uid, cost)
            raise

        if not won:
            balance = await points_store.add_points(uid, cost)
            logger.info("Snipe lost race user=%s character=%s (refunded %s)", uid, token.character_id, cost)
            return SnipeResult(kind=SnipeKind.FAILED, cost=cost, balance=balance, character=pending.character)

        self._finish(token, ClaimState.SNIPED)
        cooldown = float(
            config.SNIPE_COOLDOWN_MAIN_SECONDS if pending.anime.is_main else config.SNIPE_COOLDOWN_OTHER_SECONDS
        )
        self._cooldowns[uid] = self._scheduler.now() + cooldown
        self._scheduler.schedule(("snipe_cooldown", uid), cooldown, lambda: self._decay_cooldown(uid))
        logger.info("Snipe user=%s took character=%s from roller=%s", uid, token.character_id, token.roller_id)
        return SnipeResult(
            kind=SnipeKind.SNIPED,
            cost=cost,
            balance=balance,
            cooldown_s=cooldown,
            character=pending.character,
            roller_id=token.roller_id,
        )

    async def expire(self, token: ClaimToken) -> None:
        pending = self._pending.get(token)
        if pending is None or pending.state is not ClaimState.OPEN:
            return
        if pending.claiming:
            # A claim is mid-flight; look again shortly instead of deleting under it.
            self._scheduler.schedule(("claim", token), 1.0, lambda: self.expire(token))
            return
        self._finish(token, ClaimState.EXPIRED)
        logger.debug("Claim expired user=%s character=%s", token.roller_id, token.character_id)

    async def _decay_cooldown(self, user_id: int) -> None:
        self.snipe_cooldown_remaining(user_id)
