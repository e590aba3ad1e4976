"""Tests for admin gift/remove (utils/gifts.py) and the health probe."""
from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

import config
from utils import backpressure, character_store
from utils.character_store import CharacterMeta
from utils.gifts import GiftCoordinator, GiftKind
from utils.health import check_services
from utils.owner import is_bot_owner

ADMIN, USER, OTHER = 42, 1, 2


@pytest.fixture
def admins(monkeypatch):
    monkeypatch.setattr(config, "BOT_OWNER_IDS", {ADMIN})


def test_is_bot_owner(admins):
    assert is_bot_owner(ADMIN) is True
    assert is_bot_owner(str(ADMIN)) is True
    assert is_bot_owner(USER) is False
    assert is_bot_owner(None) is False


def test_no_admins_configured(monkeypatch):
    monkeypatch.setattr(config, "BOT_OWNER_IDS", set())
    assert is_bot_owner(ADMIN) is False


async def test_give_then_confirm(db_engine, scheduler, fake_catalog, admins):
    fake_catalog.add(417, favorites=170000, role="Main", name="Lelouch")
    gifts = GiftCoordinator(scheduler)

    staged = await gifts.give(ADMIN, USER, 417)
    assert staged.kind is GiftKind.PENDING
    assert staged.gift.character.name == "Lelouch"
    # Nothing lands until confirmed.
    assert await character_store.owner_of(417) is None

    done = await gifts.confirm(staged.gift.token, ADMIN)
    assert done.kind is GiftKind.GIVEN
    assert await character_store.owner_of(417) == USER
    owned = await character_store.get_owned(417)
    assert owned.role == "Main"
    assert gifts.get(staged.gift.token) is None


async def test_non_admin_rejected(db_engine, scheduler, fake_catalog, admins):
    fake_catalog.add(5)
    gifts = GiftCoordinator(scheduler)
    assert (await gifts.give(USER, OTHER, 5)).kind is GiftKind.NOT_ADMIN
    assert (await gifts.remove(USER, 5)).kind is GiftKind.NOT_ADMIN
    assert fake_catalog.calls == []


async def test_give_already_owned(db_engine, scheduler, fake_catalog, admins):
    await character_store.claim_if_unowned(
        OTHER, CharacterMeta(character_id=7, name="X", image_url="", anime_title="", role="", favorites=0),
    )
    gifts = GiftCoordinator(scheduler)
    result = await gifts.give(ADMIN, USER, 7)
    assert result.kind is GiftKind.ALREADY_OWNED
    assert result.owner_id == OTHER


async def test_give_unknown_character(db_engine, scheduler, fake_catalog, admins):
    gifts = GiftCoordinator(scheduler)
    assert (await gifts.give(ADMIN, USER, 12345)).kind is GiftKind.NOT_FOUND


async def test_claimed_between_stage_and_confirm(db_engine, scheduler, fake_catalog, admins):
    fake_catalog.add(8)
    gifts = GiftCoordinator(scheduler)
    staged = await gifts.give(ADMIN, USER, 8)
    await character_store.claim_if_unowned(
        OTHER, CharacterMeta(character_id=8, name="Char 8", image_url="", anime_title="", role="", favorites=0),
    )

    result = await gifts.confirm(staged.gift.token, ADMIN)
    assert result.kind is GiftKind.ALREADY_OWNED
    assert result.owner_id == OTHER


async def test_cancel_and_expiry(db_engine, scheduler, clock, fake_catalog, admins):
    fake_catalog.add(9)
    fake_catalog.add(10)
    gifts = GiftCoordinator(scheduler, confirm_s=60)

    first = await gifts.give(ADMIN, USER, 9)
    assert (await gifts.cancel(first.gift.token, ADMIN)).kind is GiftKind.CANCELLED
    assert (await gifts.confirm(first.gift.token, ADMIN)).kind is GiftKind.UNAVAILABLE

    second = await gifts.give(ADMIN, USER, 10)
    clock.advance(60)
    await scheduler.run_due()
    assert gifts.get(second.gift.token) is None
    assert (await gifts.confirm(second.gift.token, ADMIN)).kind is GiftKind.UNAVAILABLE
    assert await character_store.owner_of(10) is None


async def test_remove(db_engine, scheduler, admins):
    await character_store.claim_if_unowned(
        USER, CharacterMeta(character_id=11, name="Y", image_url="", anime_title="", role="", favorites=0),
    )
    gifts = GiftCoordinator(scheduler)
    removed = await gifts.remove(ADMIN, 11)
    assert removed.kind is GiftKind.REMOVED
    assert removed.owner_id == USER
    assert (await gifts.remove(ADMIN, 11)).kind is GiftKind.NOT_OWNED


async def test_health_without_redis(db_engine):
    health = await check_services()
    assert health.database is True
    assert health.redis is False
    assert health.ok is True
    assert health.catalog_breaker_open_s == 0


async def test_health_reports_open_breaker(db_engine):
    await backpressure.trip(30)
    health = await check_services()
    assert 0 < health.catalog_breaker_open_s <= 30


async def test_health_database_down():
    with patch("utils.db.ping_db", new_callable=AsyncMock, return_value=False):
        health = await check_services()
    assert health.database is False
    assert health.ok is False
