# utils/trades.py
"""Two-party character-for-character trades.

Trade lifecycle::

    AWAITING_TARGET_OFFER --target offers--> AWAITING_CONFIRMATIONS
    AWAITING_CONFIRMATIONS --both confirm--> COMPLETED | FAILED
    any open state --cancel--> CANCELLED
    any open state --timeout-> EXPIRED

Only the final swap touches the ownership store; everything before it is
in-memory bookkeeping. At most one open trade exists per unordered user pair.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional

import config
from utils import character_store
from utils.character_store import OwnedCharacter
from utils.scheduler import DelayedTaskQueue
from utils.tokens import TradeToken, now_ms

logger = logging.getLogger("bot.trades")


class TradeStatus(str, enum.Enum):
    AWAITING_TARGET_OFFER = "awaiting_target_offer"
    AWAITING_CONFIRMATIONS = "awaiting_confirmations"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({TradeStatus.COMPLETED, TradeStatus.CANCELLED, TradeStatus.EXPIRED, TradeStatus.FAILED})


class TradeKind(str, enum.Enum):
    PROPOSED = "proposed"
    OFFERED = "offered"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SELF_TRADE = "self_trade"
    PAIR_BUSY = "pair_busy"
    NOT_OWNER = "not_owner"
    NO_TRADE = "no_trade"
    NOT_PARTY = "not_party"
    NOT_READY = "not_ready"
    IN_PROGRESS = "in_progress"


@dataclass
class PendingTrade:
    token: TradeToken
    initiator_character: OwnedCharacter
    expires_at: float
    target_character: Optional[OwnedCharacter] = None
    initiator_confirmed: bool = False
    target_confirmed: bool = False
    status: TradeStatus = TradeStatus.AWAITING_TARGET_OFFER
    # Set once both parties confirmed and the swap is awaiting the store.
    completing: bool = False

    def is_party(self, user_id: int) -> bool:
        return int(user_id) in (self.token.initiator_id, self.token.target_id)


@dataclass(frozen=True)
class TradeResult:
    kind: TradeKind
    trade: Optional[PendingTrade] = None
    detail: str = ""


class TradeCoordinator:
    def __init__(self, scheduler: DelayedTaskQueue, *, timeout_s: int | None = None):
        self._scheduler = scheduler
        self._timeout_s = int(timeout_s if timeout_s is not None else config.TRADE_TIMEOUT_SECONDS)
        self._trades: dict[TradeToken, PendingTrade] = {}
        self._by_pair: dict[frozenset[int], TradeToken] = {}

    @property
    def timeout_s(self) -> int:
        return self._timeout_s

    def now(self) -> float:
        return self._scheduler.now()

    def get(self, token: TradeToken) -> Optional[PendingTrade]:
        """The open trade for ``token``; None once it reached a terminal state."""
        return self._trades.get(token)

    def find(self, user_a: int, user_b: int) -> Optional[PendingTrade]:
        token = self._by_pair.get(frozenset((int(user_a), int(user_b))))
        return self._trades.get(token) if token else None

    def active_count(self) -> int:
        return len(self._trades)

    def _close(self, trade: PendingTrade, status: TradeStatus) -> None:
        trade.status = status
        self._trades.pop(trade.token, None)
        if self._by_pair.get(trade.token.pair) == trade.token:
            del self._by_pair[trade.token.pair]
        self._scheduler.cancel(("trade", trade.token))

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    async def propose(self, initiator_id: int, target_id: int, character_id: int) -> TradeResult:
        a, b = int(initiator_id), int(target_id)
        if a == b:
            return TradeResult(kind=TradeKind.SELF_TRADE)
        if self.find(a, b) is not None:
            return TradeResult(kind=TradeKind.PAIR_BUSY, trade=self.find(a, b))

        owned = await character_store.get_owned(character_id)
        if owned is None or owned.user_id != a:
            return TradeResult(kind=TradeKind.NOT_OWNER, detail=str(character_id))

        # Another proposal for this pair may have landed while we awaited the store.
        if self.find(a, b) is not None:
            return TradeResult(kind=TradeKind.PAIR_BUSY, trade=self.find(a, b))

        token = TradeToken(initiator_id=a, target_id=b, created_ms=now_ms())
        trade = PendingTrade(
            token=token,
            initiator_character=owned,
            expires_at=self._scheduler.now() + self._timeout_s,
        )
        self._trades[token] = trade
        self._by_pair[token.pair] = token
        self._scheduler.schedule(("trade", token), self._timeout_s, lambda: self.expire(token))
        logger.info("Trade proposed %s -> %s character=%s", a, b, owned.character_id)
        return TradeResult(kind=TradeKind.PROPOSED, trade=trade)

    async def offer(self, target_id: int, initiator_id: int, character_id: int) -> TradeResult:
        """The target names the character they give in return."""
        trade = self.find(initiator_id, target_id)
        if trade is None or trade.token.target_id != int(target_id):
            return TradeResult(kind=TradeKind.NO_TRADE)
        if trade.status is not TradeStatus.AWAITING_TARGET_OFFER:
            return TradeResult(kind=TradeKind.NOT_READY, trade=trade)

        owned = await character_store.get_owned(character_id)
        if owned is None or owned.user_id != int(target_id):
            return TradeResult(kind=TradeKind.NOT_OWNER, trade=trade, detail=str(character_id))

        if self.get(trade.token) is not trade or trade.status is not TradeStatus.AWAITING_TARGET_OFFER:
            return TradeResult(kind=TradeKind.NO_TRADE)

        trade.target_character = owned
        trade.status = TradeStatus.AWAITING_CONFIRMATIONS
        logger.info("Trade offer %s character=%s", trade.token, owned.character_id)
        return TradeResult(kind=TradeKind.OFFERED, trade=trade)

    async def confirm(self, token: TradeToken, user_id: int) -> TradeResult:
        trade = self.get(token)
        if trade is None:
            return TradeResult(kind=TradeKind.NO_TRADE)
        uid = int(user_id)
        if not trade.is_party(uid):
            return TradeResult(kind=TradeKind.NOT_PARTY, trade=trade)
        if trade.status is not TradeStatus.AWAITING_CONFIRMATIONS:
            return TradeResult(kind=TradeKind.NOT_READY, trade=trade)
        if trade.completing:
            return TradeResult(kind=TradeKind.IN_PROGRESS, trade=trade)

        if uid == token.initiator_id:
            trade.initiator_confirmed = True
        else:
            trade.target_confirmed = True

        if not (trade.initiator_confirmed and trade.target_confirmed):
            return TradeResult(kind=TradeKind.CONFIRMED, trade=trade)

        trade.completing = True
        return await self._complete(trade)

    async def _complete(self, trade: PendingTrade) -> TradeResult:
        token = trade.token
        mine = trade.initiator_character
        theirs = trade.target_character
        if theirs is None:
            trade.completing = False
            return TradeResult(kind=TradeKind.NOT_READY, trade=trade)

        try:
            still_a = await character_store.user_owns(token.initiator_id, mine.character_id)
            still_b = await character_store.user_owns(token.target_id, theirs.character_id)
            if not (still_a and still_b):
                self._close(trade, TradeStatus.FAILED)
                lost = mine if not still_a else theirs
                logger.info("Trade %s failed: %s no longer owned by its offerer", token, lost.character_id)
                return TradeResult(kind=TradeKind.FAILED, trade=trade, detail=lost.name)

            swapped = await character_store.swap_ownership(
                token.initiator_id, token.target_id, mine.character_id, theirs.character_id,
            )
        except Exception:
            trade.completing = False
            raise

        if not swapped:
            self._close(trade, TradeStatus.FAILED)
            return TradeResult(kind=TradeKind.FAILED, trade=trade)

        self._close(trade, TradeStatus.COMPLETED)
        return TradeResult(kind=TradeKind.COMPLETED, trade=trade)

    async def cancel(self, token: TradeToken, user_id: int) -> TradeResult:
        trade = self.get(token)
        if trade is None:
            return TradeResult(kind=TradeKind.NO_TRADE)
        if not trade.is_party(user_id):
            return TradeResult(kind=TradeKind.NOT_PARTY, trade=trade)
        if trade.completing:
            return TradeResult(kind=TradeKind.IN_PROGRESS, trade=trade)
        self._close(trade, TradeStatus.CANCELLED)
        logger.info("Trade %s cancelled by %s", token, user_id)
        return TradeResult(kind=TradeKind.CANCELLED, trade=trade)

    async def expire(self, token: TradeToken) -> None:
        trade = self.get(token)
        if trade is None:
            return
        if trade.completing:
            # The swap may still fail and hand the trade back; check again shortly.
            self._scheduler.schedule(("trade", token), 1.0, lambda: self.expire(token))
            return
        self._close(trade, TradeStatus.EXPIRED)
        logger.info("Trade %s expired", token)
