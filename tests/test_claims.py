"""Tests for the roll / claim / snipe coordinator (utils/claims.py)."""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

import config
from utils import character_store
from utils.catalog import CatalogUnavailable
from utils.claims import (
    ClaimCoordinator,
    ClaimKind,
    ClaimState,
    RollKind,
    SnipeKind,
)
from utils.points_store import add_points, get_balance
from utils.ratelimit import check_quota, lucky_progress


@pytest.fixture
def many_rolls(monkeypatch):
    monkeypatch.setattr(config, "MAX_ROLLS_PER_PERIOD", 100)


@pytest.fixture
def claims_for(scheduler, seq_rng):
    def _make(ids, *, reserved_ids=frozenset()) -> ClaimCoordinator:
        return ClaimCoordinator(scheduler, rng=seq_rng(ids), reserved_ids=reserved_ids)

    return _make


class TestRoll:
    async def test_fresh_roll_then_claim(self, db_engine, scheduler, claims_for, fake_catalog):
        fake_catalog.add(10, favorites=0)
        claims = claims_for([10])

        outcome = await claims.handle_roll(1, "alice")
        assert outcome.kind is RollKind.FRESH
        assert outcome.points == 1
        assert outcome.snipeable is True
        assert outcome.token is not None
        assert ("claim", outcome.token) in scheduler

        result = await claims.handle_claim(outcome.token, 1)
        assert result.kind is ClaimKind.CLAIMED
        assert result.points == 1
        assert await character_store.owner_of(10) == 1
        assert await get_balance(1) == 1
        assert claims.get(outcome.token) is None
        assert ("claim", outcome.token) not in scheduler

    async def test_duplicate_awards_bonus_immediately(self, db_engine, scheduler, claims_for, fake_catalog):
        fake_catalog.add(11, favorites=0)
        claims = claims_for([11, 11])

        first = await claims.handle_roll(1, "alice")
        await claims.handle_claim(first.token, 1)

        dup = await claims.handle_roll(2, "bob")
        assert dup.kind is RollKind.DUPLICATE
        assert dup.points == 150
        assert dup.owner_id == 1
        assert dup.token is None
        assert await get_balance(2) == 150

    async def test_reserved_character(self, db_engine, scheduler, claims_for, fake_catalog):
        fake_catalog.add(12, favorites=120)
        claims = claims_for([12], reserved_ids=frozenset({12}))

        outcome = await claims.handle_roll(1, "alice")
        assert outcome.kind is RollKind.RESERVED
        assert outcome.token is None
        assert outcome.points == 25
        assert await get_balance(1) == 25
        assert await character_store.owner_of(12) is None

    async def test_tenth_roll_is_lucky(self, db_engine, scheduler, claims_for, fake_catalog, many_rolls):
        for cid in range(1, 11):
            fake_catalog.add(cid, favorites=0)
        claims = claims_for(list(range(1, 11)))

        kinds = []
        for _ in range(10):
            outcome = await claims.handle_roll(1, "alice")
            kinds.append(outcome.kind)
        assert kinds == [RollKind.FRESH] * 9 + [RollKind.LUCKY]
        # 1 point raised to the lucky floor.
        assert outcome.points == 500
        assert outcome.snipeable is False

    async def test_lucky_main_is_not_lowered(self, db_engine, scheduler, claims_for, fake_catalog, many_rolls, monkeypatch):
        monkeypatch.setattr(config, "LUCKY_ROLL_EVERY", 1)
        fake_catalog.add(20, favorites=5, role="Main")
        claims = claims_for([20])

        outcome = await claims.handle_roll(1, "alice")
        assert outcome.kind is RollKind.LUCKY
        assert outcome.points == 502

    async def test_rate_limited_fourth_roll(self, db_engine, scheduler, claims_for, fake_catalog, monkeypatch):
        monkeypatch.setattr(config, "MAX_ROLLS_PER_PERIOD", 3)
        monkeypatch.setattr(config, "ROLL_PERIOD_SECONDS", 60)
        for cid in (31, 32, 33):
            fake_catalog.add(cid)
        claims = claims_for([31, 32, 33])

        remaining = [(await claims.handle_roll(1, "alice")).rolls_remaining for _ in range(3)]
        assert remaining == [2, 1, 0]

        denied = await claims.handle_roll(1, "alice")
        assert denied.kind is RollKind.RATE_LIMITED
        assert denied.rolls_remaining == 0
        assert denied.wait_seconds > 0
        # No catalog call for a denied roll.
        assert fake_catalog.calls == [31, 32, 33]

    async def test_not_found_consumes_quota(self, db_engine, scheduler, claims_for, fake_catalog, monkeypatch):
        monkeypatch.setattr(config, "MAX_ROLLS_PER_PERIOD", 3)
        monkeypatch.setattr(config, "ROLL_FETCH_ATTEMPTS", 5)
        claims = claims_for([1, 2, 3, 4, 5])

        outcome = await claims.handle_roll(1, "alice")
        assert outcome.kind is RollKind.NOT_FOUND
        assert outcome.rolls_remaining == 2
        assert fake_catalog.calls == [1, 2, 3, 4, 5]

    async def test_not_found_advances_lucky_counter(self, db_engine, scheduler, claims_for, fake_catalog, many_rolls, monkeypatch):
        monkeypatch.setattr(config, "ROLL_FETCH_ATTEMPTS", 1)
        fake_catalog.add(50)
        claims = claims_for(list(range(1, 10)) + [50])

        assert (await claims.handle_roll(1, "alice")).kind is RollKind.NOT_FOUND
        assert await lucky_progress(1) == 9

        for _ in range(8):
            assert (await claims.handle_roll(1, "alice")).kind is RollKind.NOT_FOUND
        outcome = await claims.handle_roll(1, "alice")
        assert outcome.kind is RollKind.LUCKY
        assert await lucky_progress(1) == 10

    async def test_retries_until_found(self, db_engine, scheduler, claims_for, fake_catalog):
        fake_catalog.add(3)
        claims = claims_for([1, 2, 3])
        outcome = await claims.handle_roll(1, "alice")
        assert outcome.kind is RollKind.FRESH
        assert outcome.character.id == 3

    async def test_transient_error_propagates_without_mutation(self, db_engine, scheduler, claims_for, fake_catalog, monkeypatch):
        monkeypatch.setattr(config, "MAX_ROLLS_PER_PERIOD", 3)
        fake_catalog.error = CatalogUnavailable("down", status_code=503)
        claims = claims_for([1])

        with pytest.raises(CatalogUnavailable):
            await claims.handle_roll(1, "alice")
        assert claims.is_rolling(1) is False
        assert (await check_quota(1)).rolls_remaining == 3

    async def test_concurrent_roll_is_rejected(self, db_engine, scheduler, claims_for, fake_catalog):
        fake_catalog.add(40)
        fake_catalog.gate = asyncio.Event()
        claims = claims_for([40])

        first = asyncio.create_task(claims.handle_roll(1, "alice"))
        await asyncio.wait_for(fake_catalog.entered.wait(), timeout=5)
        assert claims.is_rolling(1)

        busy = await claims.handle_roll(1, "alice")
        assert busy.kind is RollKind.BUSY

        fake_catalog.gate.set()
        assert (await first).kind is RollKind.FRESH
        assert claims.is_rolling(1) is False


class TestClaim:
    async def test_only_roller_can_claim(self, db_engine, scheduler, claims_for, fake_catalog):
        fake_catalog.add(50)
        claims = claims_for([50])
        outcome = await claims.handle_roll(1, "alice")

        result = await claims.handle_claim(outcome.token, 2)
        assert result.kind is ClaimKind.NOT_YOURS
        assert claims.get(outcome.token) is not None

    async def test_expired_claim(self, db_engine, scheduler, claims_for, clock, fake_catalog):
        fake_catalog.add(51)
        claims = claims_for([51])
        outcome = await claims.handle_roll(1, "alice")
        pending = claims.get(outcome.token)

        clock.advance(config.CLAIM_WINDOW_SECONDS)
        await scheduler.run_due()
        assert pending.state is ClaimState.EXPIRED
        assert claims.get(outcome.token) is None

        result = await claims.handle_claim(outcome.token, 1)
        assert result.kind is ClaimKind.UNAVAILABLE
        assert await character_store.owner_of(51) is None
        assert await get_balance(1) == 0

    async def test_late_click_before_timer_fires(self, db_engine, scheduler, claims_for, clock, fake_catalog):
        fake_catalog.add(52)
        claims = claims_for([52])
        outcome = await claims.handle_roll(1, "alice")

        clock.advance(config.CLAIM_WINDOW_SECONDS + 1)
        result = await claims.handle_claim(outcome.token, 1)
        assert result.kind is ClaimKind.UNAVAILABLE

    async def test_claim_after_external_claim_gets_duplicate_bonus(self, db_engine, scheduler, claims_for, fake_catalog):
        fake_catalog.add(53, favorites=600)
        claims = claims_for([53])
        outcome = await claims.handle_roll(1, "alice")

        # Someone else got it through another path (e.g. a pack) after the roll.
        assert await character_store.claim_if_unowned(3, claims.get(outcome.token).meta())

        result = await claims.handle_claim(outcome.token, 1)
        assert result.kind is ClaimKind.ALREADY_CLAIMED
        assert result.points == 150
        assert await get_balance(1) == 150
        assert await character_store.owner_of(53) == 3

    async def test_double_click_awards_once(self, db_engine, scheduler, claims_for, fake_catalog):
        fake_catalog.add(54, favorites=50)
        claims = claims_for([54])
        outcome = await claims.handle_roll(1, "alice")

        a, b = await asyncio.gather(
            claims.handle_claim(outcome.token, 1),
            claims.handle_claim(outcome.token, 1),
        )
        kinds = sorted([a.kind.value, b.kind.value])
        assert ClaimKind.CLAIMED.value in kinds
        assert kinds.count(ClaimKind.CLAIMED.value) == 1
        assert await get_balance(1) == 10


class TestSnipe:
    async def test_snipe_main_character(self, db_engine, scheduler, claims_for, fake_catalog):
        fake_catalog.add(60, favorites=100, role="Main")
        claims = claims_for([60])
        await add_points(2, 1000)
        outcome = await claims.handle_roll(1, "alice")
        assert outcome.snipe_cost == 300

        result = await claims.handle_snipe(outcome.token, 2)
        assert result.kind is SnipeKind.SNIPED
        assert result.cost == 300
        assert result.balance == 700
        assert result.cooldown_s == 600
        assert await character_store.owner_of(60) == 2
        assert claims.snipe_cooldown_remaining(2) == pytest.approx(600)

        # Roller's claim now finds nothing to claim.
        assert (await claims.handle_claim(outcome.token, 1)).kind is ClaimKind.UNAVAILABLE

    async def test_cooldowns_by_role(self, db_engine, scheduler, claims_for, clock, fake_catalog, many_rolls):
        fake_catalog.add(61, favorites=1, role="Supporting")
        fake_catalog.add(62, favorites=1, role="Supporting")
        fake_catalog.add(63, favorites=1, role="Supporting")
        claims = claims_for([61, 62, 63])
        await add_points(2, 100)

        first = await claims.handle_roll(1, "alice")
        sniped = await claims.handle_snipe(first.token, 2)
        assert sniped.kind is SnipeKind.SNIPED
        assert sniped.cooldown_s == 60

        clock.advance(20)
        second = await claims.handle_roll(1, "alice")
        denied = await claims.handle_snipe(second.token, 2)
        assert denied.kind is SnipeKind.COOLDOWN
        assert denied.cooldown_s == pytest.approx(40)
        assert await get_balance(2) == 97

        clock.advance(40)
        await scheduler.run_due()
        third = await claims.handle_roll(1, "alice")
        assert (await claims.handle_snipe(third.token, 2)).kind is SnipeKind.SNIPED

    async def test_cannot_snipe_own_roll(self, db_engine, scheduler, claims_for, fake_catalog):
        fake_catalog.add(64)
        claims = claims_for([64])
        outcome = await claims.handle_roll(1, "alice")
        assert (await claims.handle_snipe(outcome.token, 1)).kind is SnipeKind.OWN_ROLL

    async def test_lucky_roll_not_snipeable(self, db_engine, scheduler, claims_for, fake_catalog, monkeypatch):
        monkeypatch.setattr(config, "LUCKY_ROLL_EVERY", 1)
        fake_catalog.add(65)
        claims = claims_for([65])
        await add_points(2, 10_000)
        outcome = await claims.handle_roll(1, "alice")

        result = await claims.handle_snipe(outcome.token, 2)
        assert result.kind is SnipeKind.NOT_SNIPEABLE
        assert await get_balance(2) == 10_000

    async def test_insufficient_points_leaves_claim_open(self, db_engine, scheduler, claims_for, fake_catalog):
        fake_catalog.add(66, favorites=1000)
        claims = claims_for([66])
        await add_points(2, 2999)
        outcome = await claims.handle_roll(1, "alice")

        result = await claims.handle_snipe(outcome.token, 2)
        assert result.kind is SnipeKind.INSUFFICIENT_POINTS
        assert result.cost == 3000
        assert await get_balance(2) == 2999
        assert claims.get(outcome.token) is not None

    async def test_lost_race_refunds(self, db_engine, scheduler, claims_for, fake_catalog):
        fake_catalog.add(67, favorites=10)
        claims = claims_for([67])
        await add_points(2, 100)
        outcome = await claims.handle_roll(1, "alice")
        await character_store.claim_if_unowned(3, claims.get(outcome.token).meta())

        result = await claims.handle_snipe(outcome.token, 2)
        assert result.kind is SnipeKind.FAILED
        assert await get_balance(2) == 100
        assert claims.snipe_cooldown_remaining(2) == 0

    async def test_claim_and_snipe_race_has_one_winner(self, db_engine, scheduler, claims_for, fake_catalog):
        fake_catalog.add(68, favorites=10)
        claims = claims_for([68])
        await add_points(2, 100)
        outcome = await claims.handle_roll(1, "alice")

        claim, snipe = await asyncio.gather(
            claims.handle_claim(outcome.token, 1),
            claims.handle_snipe(outcome.token, 2),
        )
        owner = await character_store.owner_of(68)
        assert owner in (1, 2)
        if owner == 1:
            assert claim.kind is ClaimKind.CLAIMED
            assert snipe.kind in (SnipeKind.FAILED, SnipeKind.UNAVAILABLE)
            assert await get_balance(2) == 100
        else:
            assert snipe.kind is SnipeKind.SNIPED
            assert claim.kind is ClaimKind.ALREADY_CLAIMED
            assert await get_balance(2) == 70
            assert await get_balance(1) == 150

    async def test_store_error_during_snipe_refunds(self, db_engine, scheduler, claims_for, fake_catalog):
        fake_catalog.add(69, favorites=10)
        claims = claims_for([69])
        await add_points(2, 100)
        outcome = await claims.handle_roll(1, "alice")

        with patch("utils.character_store.claim_if_unowned", new_callable=AsyncMock, side_effect=RuntimeError("db")):
            with pytest.raises(RuntimeError):
                await claims.handle_snipe(outcome.token, 2)
        assert await get_balance(2) == 100
        # Still open for the roller.
        assert (await claims.handle_claim(outcome.token, 1)).kind is ClaimKind.CLAIMED
