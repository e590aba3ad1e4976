# utils/tokens.py
"""Typed tokens for pending claims, trades, packs, gifts and paginated views.

Tokens round-trip through Discord button custom_ids as ``kind|action|field|field...``
(all fields are integers). Everything inside the core works with the dataclasses;
only the frontend deals with strings.
"""
from __future__ import annotations

import time
from dataclasses import astuple, dataclass, fields
from typing import ClassVar, Union

_SEP = "|"
_MAX_CUSTOM_ID = 100


class TokenError(ValueError):
    """A custom_id that does not decode to a known token."""


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class ClaimToken:
    """One rolled character awaiting claim/snipe: roller + character + roll instant."""

    KIND: ClassVar[str] = "claim"
    roller_id: int
    character_id: int
    issued_ms: int


@dataclass(frozen=True)
class TradeToken:
    KIND: ClassVar[str] = "trade"
    initiator_id: int
    target_id: int
    created_ms: int

    @property
    def pair(self) -> frozenset[int]:
        return frozenset((self.initiator_id, self.target_id))


@dataclass(frozen=True)
class PackToken:
    KIND: ClassVar[str] = "pack"
    user_id: int
    created_ms: int


@dataclass(frozen=True)
class GiftToken:
    KIND: ClassVar[str] = "gift"
    admin_id: int
    target_id: int
    character_id: int
    created_ms: int


@dataclass(frozen=True)
class PageToken:
    """Pagination state for collection / top views. ``owner_id`` is 0 for global lists."""

    KIND: ClassVar[str] = "page"
    view: int
    owner_id: int
    page: int


Token = Union[ClaimToken, TradeToken, PackToken, GiftToken, PageToken]

_TOKEN_TYPES: dict[str, type] = {
    cls.KIND: cls for cls in (ClaimToken, TradeToken, PackToken, GiftToken, PageToken)
}


def encode(action: str, token: Token, *extra: int) -> str:
    """Serialize ``token`` plus an action name (and optional trailing ints) into a custom_id."""
    act = (action or "").strip()
    if not act or _SEP in act:
        raise TokenError(f"invalid action {action!r}")
    parts = [token.KIND, act, *(str(int(v)) for v in astuple(token)), *(str(int(v)) for v in extra)]
    out = _SEP.join(parts)
    if len(out) > _MAX_CUSTOM_ID:
        raise TokenError("custom_id too long")
    return out


def decode(custom_id: str) -> tuple[str, Token, tuple[int, ...]]:
    """Parse a custom_id back into (action, token, extra ints)."""
    parts = (custom_id or "").split(_SEP)
    if len(parts) < 2:
        raise TokenError(f"malformed custom_id {custom_id!r}")
    kind, action, *raw = parts
    cls = _TOKEN_TYPES.get(kind)
    if cls is None:
        raise TokenError(f"unknown token kind {kind!r}")
    n = len(fields(cls))
    if len(raw) < n:
        raise TokenError(f"custom_id {custom_id!r} is missing fields")
    try:
        values = [int(v) for v in raw]
    except ValueError as e:
        raise TokenError(f"non-integer field in {custom_id!r}") from e
    return action, cls(*values[:n]), tuple(values[n:])
