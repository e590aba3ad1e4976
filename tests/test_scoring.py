"""Tests for roll point values (utils/scoring.py)."""
from __future__ import annotations

import pytest

from utils.scoring import (
    DUPLICATE_BONUS,
    points_for_favorites,
    roll_points,
    snipe_cost,
)


class TestPointsForFavorites:
    @pytest.mark.parametrize(
        "favorites,expected",
        [
            (0, 1),
            (1, 2),
            (9, 2),
            (10, 5),
            (49, 5),
            (50, 10),
            (99, 10),
            (100, 25),
            (499, 25),
            (500, 50),
            (999, 50),
            (1000, 100),
            (4999, 100),
            (5000, 250),
            (250_000, 250),
        ],
    )
    def test_tiers(self, favorites, expected):
        assert points_for_favorites(favorites) == expected

    def test_negative_or_missing_counts_as_zero(self):
        assert points_for_favorites(-5) == 1
        assert points_for_favorites(None) == 1  # type: ignore[arg-type]


class TestRollPoints:
    def test_zero_favorites_non_main_is_one_point(self):
        assert roll_points(0, is_main=False, is_lucky=False) == 1

    def test_main_role_bonus(self):
        assert roll_points(5, is_main=True, is_lucky=False) == 502

    def test_lucky_does_not_lower_a_higher_value(self):
        # 2 + 500 main bonus is already above the lucky floor.
        assert roll_points(5, is_main=True, is_lucky=True) == 502

    def test_lucky_raises_to_floor(self):
        assert roll_points(0, is_main=False, is_lucky=True) == 500

    def test_lucky_high_tier_main(self):
        assert roll_points(10_000, is_main=True, is_lucky=True) == 750


def test_duplicate_bonus_value():
    assert DUPLICATE_BONUS == 150


def test_snipe_cost_is_three_per_favorite():
    assert snipe_cost(0) == 0
    assert snipe_cost(120) == 360
