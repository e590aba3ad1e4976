# utils/scoring.py
"""Point values for rolled characters."""
from __future__ import annotations

DUPLICATE_BONUS = 150
MAIN_ROLE_BONUS = 500
LUCKY_FLOOR = 500
SNIPE_COST_PER_FAVORITE = 3

# (exclusive upper bound on favorites, points)
_FAVORITE_TIERS: tuple[tuple[int, int], ...] = (
    (10, 2),
    (50, 5),
    (100, 10),
    (500, 25),
    (1000, 50),
    (5000, 100),
)


def points_for_favorites(favorites: int) -> int:
    fav = max(0, int(favorites or 0))
    if fav == 0:
        return 1
    for bound, pts in _FAVORITE_TIERS:
        if fav < bound:
            return pts
    return 250


def roll_points(favorites: int, *, is_main: bool, is_lucky: bool) -> int:
    """Base tier points, +500 for a main role, raised to the lucky floor on lucky rolls."""
    pts = points_for_favorites(favorites)
    if is_main:
        pts += MAIN_ROLE_BONUS
    if is_lucky:
        pts = max(pts, LUCKY_FLOOR)
    return pts


def snipe_cost(favorites: int) -> int:
    return SNIPE_COST_PER_FAVORITE * max(0, int(favorites or 0))
