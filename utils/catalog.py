# utils/catalog.py
"""Character catalog client (Jikan v4), memoized through the Redis cache.

A 404 from the catalog is a definitive "not found" and is returned as ``None``.
Network failures, timeouts, 429 and 5xx responses raise ``CatalogUnavailable``
so callers can tell a missing character from an unreachable catalog.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Optional

import httpx

import config
from utils import backpressure
from utils.redis_kv import kv_get_json, kv_set_json

logger = logging.getLogger("bot.catalog")


# ----------------------------
# Stable exception types
# ----------------------------
class CatalogError(RuntimeError):
    """Base class for catalog errors."""


class CatalogUnavailable(CatalogError):
    """Transient failure reaching the catalog (retryable by the user)."""

    def __init__(self, message: str = "", *, status_code: int | None = None, retry_after_s: int | None = None):
        super().__init__(message or "Character catalog is unavailable")
        self.status_code = status_code
        self.retry_after_s = retry_after_s


@dataclass(frozen=True)
class Character:
    id: int
    name: str
    favorites: int = 0
    image_url: str = ""
    about: str = ""


@dataclass(frozen=True)
class AnimeRole:
    anime_title: str = ""
    role: str = ""

    @property
    def is_main(self) -> bool:
        return self.role.strip().lower() == "main"


@dataclass(frozen=True)
class TopPage:
    characters: list[Character]
    page: int
    has_next_page: bool


# ----------------------------
# Cache keys
# ----------------------------
_MISSING = {"missing": True}


def _character_key(character_id: int) -> str:
    return f"character:{int(character_id)}"


def _role_key(character_id: int) -> str:
    return f"character:{int(character_id)}:anime"


# ----------------------------
# Shared AsyncClient
# ----------------------------
_client: Optional[httpx.AsyncClient] = None
_client_lock = asyncio.Lock()


async def _get_client() -> httpx.AsyncClient:
    global _client
    if _client is not None:
        return _client

    async with _client_lock:
        if _client is not None:
            return _client

        limits = httpx.Limits(max_connections=20, max_keepalive_connections=10, keepalive_expiry=30.0)
        _client = httpx.AsyncClient(
            base_url=config.JIKAN_BASE_URL,
            limits=limits,
            timeout=config.CATALOG_TIMEOUT_S,
            follow_redirects=True,
        )
        return _client


async def aclose_catalog_client() -> None:
    global _client
    async with _client_lock:
        if _client is not None:
            try:
                await _client.aclose()
            except Exception:
                logger.exception("Catalog client close failed")
            _client = None


def _parse_retry_after_seconds(r: httpx.Response) -> Optional[int]:
    try:
        ra = (r.headers.get("Retry-After") or "").strip()
        return int(ra) if ra else None
    except ValueError:
        return None


async def _get_json(path: str, *, params: dict[str, Any] | None = None) -> Optional[dict[str, Any]]:
    """GET a catalog path. Returns None on 404, raises CatalogUnavailable on transient failures."""
    remaining = await backpressure.is_open()
    if remaining:
        raise CatalogUnavailable("Catalog is rate-limiting us", retry_after_s=remaining)

    client = await _get_client()
    try:
        r = await client.get(path, params=params)
    except httpx.TimeoutException as e:
        raise CatalogUnavailable(f"Catalog request timed out: {path}") from e
    except httpx.TransportError as e:
        raise CatalogUnavailable(f"Catalog connection failed: {path}") from e

    if r.status_code == 404:
        return None
    if r.status_code == 429:
        retry_after = _parse_retry_after_seconds(r) or config.CATALOG_BACKOFF_SECONDS
        await backpressure.trip(retry_after)
        raise CatalogUnavailable("Catalog rate limit hit", status_code=429, retry_after_s=retry_after)
    if r.status_code >= 500:
        raise CatalogUnavailable(f"Catalog error {r.status_code}", status_code=r.status_code)
    if r.status_code >= 400:
        raise CatalogError(f"Catalog rejected request {path} (status {r.status_code})")

    try:
        data = r.json()
    except ValueError as e:
        raise CatalogUnavailable(f"Catalog returned invalid JSON for {path}") from e
    return data if isinstance(data, dict) else {}


def _character_from_payload(raw: dict[str, Any]) -> Character:
    images = raw.get("images") or {}
    jpg = images.get("jpg") or {}
    image_url = jpg.get("image_url") or raw.get("image_url") or ""
    return Character(
        id=int(raw.get("mal_id") or raw.get("id") or 0),
        name=str(raw.get("name") or "Unknown Character"),
        favorites=int(raw.get("favorites") or 0),
        image_url=str(image_url or ""),
        about=str(raw.get("about") or ""),
    )


# ----------------------------
# Public API
# ----------------------------
async def fetch_character(character_id: int) -> Optional[Character]:
    """Return the character for ``character_id`` or None when the catalog has no such ID."""
    cid = int(character_id)
    cached = await kv_get_json(_character_key(cid))
    if isinstance(cached, dict):
        if cached.get("missing"):
            return None
        return Character(**cached)

    payload = await _get_json(f"/characters/{cid}")
    if payload is None:
        await kv_set_json(_character_key(cid), _MISSING, ex=config.CACHE_TTL)
        return None

    character = _character_from_payload(payload.get("data") or {})
    if not character.id:
        character = Character(**{**asdict(character), "id": cid})
    await kv_set_json(_character_key(cid), asdict(character), ex=config.CACHE_TTL)
    return character


async def fetch_anime_role(character_id: int) -> AnimeRole:
    """Primary anime appearance (first listed) and the character's role in it."""
    cid = int(character_id)
    cached = await kv_get_json(_role_key(cid))
    if isinstance(cached, dict):
        return AnimeRole(**cached)

    payload = await _get_json(f"/characters/{cid}/anime")
    entries = (payload or {}).get("data") or []
    role = AnimeRole()
    if entries:
        first = entries[0] or {}
        anime = first.get("anime") or {}
        role = AnimeRole(anime_title=str(anime.get("title") or ""), role=str(first.get("role") or ""))

    await kv_set_json(_role_key(cid), asdict(role), ex=config.CACHE_TTL)
    return role


async def search_characters(name: str, *, limit: int = 10) -> list[Character]:
    q = (name or "").strip()
    if not q:
        return []
    payload = await _get_json(
        "/characters",
        params={"q": q, "order_by": "favorites", "sort": "desc", "limit": max(1, min(25, int(limit)))},
    )
    return [_character_from_payload(raw) for raw in (payload or {}).get("data") or []]


async def top_characters(page: int = 1) -> TopPage:
    """One page of the catalog's characters ordered by favorites (descending)."""
    p = max(1, int(page))
    payload = await _get_json("/top/characters", params={"page": p})
    data = (payload or {}).get("data") or []
    pagination = (payload or {}).get("pagination") or {}
    return TopPage(
        characters=[_character_from_payload(raw) for raw in data],
        page=p,
        has_next_page=bool(pagination.get("has_next_page")),
    )
