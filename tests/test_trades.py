"""Tests for the trade coordinator (utils/trades.py)."""
from __future__ import annotations

import asyncio

import pytest

from utils import character_store
from utils.character_store import CharacterMeta, claim_if_unowned, owner_of, remove_character
from utils.trades import TradeCoordinator, TradeKind, TradeStatus

ALICE, BOB, CAROL = 1, 2, 3


def _meta(cid: int, name: str) -> CharacterMeta:
    return CharacterMeta(character_id=cid, name=name, image_url="", anime_title="A", role="Main", favorites=10)


async def _seed():
    await claim_if_unowned(ALICE, _meta(100, "Asuka"))
    await claim_if_unowned(BOB, _meta(200, "Rei"))


async def _ready_trade(trades: TradeCoordinator):
    proposed = await trades.propose(ALICE, BOB, 100)
    assert proposed.kind is TradeKind.PROPOSED
    offered = await trades.offer(BOB, ALICE, 200)
    assert offered.kind is TradeKind.OFFERED
    return offered.trade


async def test_full_trade_swaps_owners(db_engine, scheduler):
    await _seed()
    trades = TradeCoordinator(scheduler)
    trade = await _ready_trade(trades)
    assert trade.status is TradeStatus.AWAITING_CONFIRMATIONS

    first = await trades.confirm(trade.token, ALICE)
    assert first.kind is TradeKind.CONFIRMED
    # Repeated confirm from the same side is a no-op.
    again = await trades.confirm(trade.token, ALICE)
    assert again.kind is TradeKind.CONFIRMED

    done = await trades.confirm(trade.token, BOB)
    assert done.kind is TradeKind.COMPLETED
    assert trade.status is TradeStatus.COMPLETED
    assert await owner_of(100) == BOB
    assert await owner_of(200) == ALICE
    assert trades.get(trade.token) is None
    assert ("trade", trade.token) not in scheduler


async def test_trade_expires_after_timeout(db_engine, scheduler, clock):
    await _seed()
    trades = TradeCoordinator(scheduler)
    proposed = await trades.propose(ALICE, BOB, 100)
    token = proposed.trade.token

    clock.advance(599)
    await scheduler.run_due()
    assert trades.get(token) is not None

    clock.advance(1)
    await scheduler.run_due()
    assert trades.get(token) is None
    assert trades.find(ALICE, BOB) is None
    assert proposed.trade.status is TradeStatus.EXPIRED

    late = await trades.confirm(token, ALICE)
    assert late.kind is TradeKind.NO_TRADE
    assert await owner_of(100) == ALICE


async def test_self_trade_rejected(db_engine, scheduler):
    await _seed()
    trades = TradeCoordinator(scheduler)
    assert (await trades.propose(ALICE, ALICE, 100)).kind is TradeKind.SELF_TRADE


async def test_one_open_trade_per_pair(db_engine, scheduler):
    await _seed()
    trades = TradeCoordinator(scheduler)
    await trades.propose(ALICE, BOB, 100)
    # Either direction counts as the same pair.
    assert (await trades.propose(BOB, ALICE, 200)).kind is TradeKind.PAIR_BUSY
    assert (await trades.propose(ALICE, CAROL, 100)).kind is TradeKind.PROPOSED
    assert trades.active_count() == 2


async def test_must_own_offered_characters(db_engine, scheduler):
    await _seed()
    trades = TradeCoordinator(scheduler)
    assert (await trades.propose(ALICE, BOB, 200)).kind is TradeKind.NOT_OWNER
    assert (await trades.propose(ALICE, BOB, 999)).kind is TradeKind.NOT_OWNER

    await trades.propose(ALICE, BOB, 100)
    bad = await trades.offer(BOB, ALICE, 100)
    assert bad.kind is TradeKind.NOT_OWNER
    assert trades.find(ALICE, BOB).status is TradeStatus.AWAITING_TARGET_OFFER


async def test_offer_without_trade(db_engine, scheduler):
    await _seed()
    trades = TradeCoordinator(scheduler)
    assert (await trades.offer(BOB, ALICE, 200)).kind is TradeKind.NO_TRADE
    await trades.propose(ALICE, BOB, 100)
    # Only the target may answer.
    assert (await trades.offer(ALICE, BOB, 100)).kind is TradeKind.NO_TRADE


async def test_confirm_before_offer_not_ready(db_engine, scheduler):
    await _seed()
    trades = TradeCoordinator(scheduler)
    proposed = await trades.propose(ALICE, BOB, 100)
    assert (await trades.confirm(proposed.trade.token, ALICE)).kind is TradeKind.NOT_READY


async def test_outsider_cannot_touch_trade(db_engine, scheduler):
    await _seed()
    trades = TradeCoordinator(scheduler)
    trade = await _ready_trade(trades)
    assert (await trades.confirm(trade.token, CAROL)).kind is TradeKind.NOT_PARTY
    assert (await trades.cancel(trade.token, CAROL)).kind is TradeKind.NOT_PARTY


async def test_cancel_frees_pair(db_engine, scheduler):
    await _seed()
    trades = TradeCoordinator(scheduler)
    trade = await _ready_trade(trades)

    result = await trades.cancel(trade.token, BOB)
    assert result.kind is TradeKind.CANCELLED
    assert trade.status is TradeStatus.CANCELLED
    assert ("trade", trade.token) not in scheduler
    assert (await trades.propose(ALICE, BOB, 100)).kind is TradeKind.PROPOSED


async def test_fails_when_ownership_changed(db_engine, scheduler):
    await _seed()
    trades = TradeCoordinator(scheduler)
    trade = await _ready_trade(trades)
    await trades.confirm(trade.token, ALICE)

    # Admin removal between offer and final confirm.
    await remove_character(200)

    result = await trades.confirm(trade.token, BOB)
    assert result.kind is TradeKind.FAILED
    assert result.detail == "Rei"
    assert trade.status is TradeStatus.FAILED
    assert await owner_of(100) == ALICE
    assert await character_store.owner_of(200) is None
    assert trades.find(ALICE, BOB) is None


async def test_trade_still_expires_after_failed_swap(db_engine, scheduler, clock, monkeypatch):
    await _seed()
    trades = TradeCoordinator(scheduler)
    trade = await _ready_trade(trades)
    await trades.confirm(trade.token, ALICE)

    entered, gate = asyncio.Event(), asyncio.Event()

    async def broken_swap(*args):
        entered.set()
        await gate.wait()
        raise RuntimeError("db went away")

    monkeypatch.setattr(character_store, "swap_ownership", broken_swap)
    finishing = asyncio.create_task(trades.confirm(trade.token, BOB))
    await asyncio.wait_for(entered.wait(), timeout=5)

    # Timeout lands while the swap is in flight.
    clock.advance(601)
    await scheduler.run_due()
    assert trades.get(trade.token) is trade

    gate.set()
    with pytest.raises(RuntimeError):
        await finishing

    clock.advance(1)
    await scheduler.run_due()
    assert trade.status is TradeStatus.EXPIRED
    assert trades.get(trade.token) is None
    assert await owner_of(100) == ALICE
    assert (await trades.propose(ALICE, BOB, 100)).kind is TradeKind.PROPOSED


async def test_confirm_without_counter_offer_is_not_ready(db_engine, scheduler):
    await _seed()
    trades = TradeCoordinator(scheduler)
    trade = await _ready_trade(trades)
    trade.target_character = None

    await trades.confirm(trade.token, ALICE)
    result = await trades.confirm(trade.token, BOB)
    assert result.kind is TradeKind.NOT_READY
    assert trade.completing is False
    assert trades.get(trade.token) is trade
