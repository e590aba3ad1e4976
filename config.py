"""Environment-driven settings, read once at import.

``bot.py`` loads ``.env`` before importing this module. Tests override values by
monkeypatching the module attributes, so callers read them as ``config.X`` at
call time rather than binding them at import.
"""
import logging
import os
import sys

_config_log = logging.getLogger("config")

_TRUTHY = {"1", "true", "yes", "y", "on"}


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _env_bool(name: str, default: bool = False) -> bool:
    raw = _env_str(name)
    return raw.lower() in _TRUTHY if raw else default


def _env_int(name: str, default: int) -> int:
    raw = _env_str(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        _config_log.warning("Invalid integer for %s=%r; using default %s", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = _env_str(name)
    try:
        return float(raw) if raw else default
    except ValueError:
        _config_log.warning("Invalid number for %s=%r; using default %s", name, raw, default)
        return default


def _env_ids(name: str) -> tuple[int, ...]:
    """Comma-separated Discord/catalog IDs; junk entries are skipped, order kept, duplicates dropped."""
    parts = (p.strip() for p in _env_str(name).split(","))
    return tuple(dict.fromkeys(int(p) for p in parts if p.isdigit()))


# ---- Discord ----
DISCORD_TOKEN = _env_str("DISCORD_TOKEN") or _env_str("TOKEN") or None
# Unset lets discord.py ask the gateway for the recommended shard count.
SHARD_COUNT = _env_int("SHARD_COUNT", 0) or None

# ---- Environment ----
ENVIRONMENT = _env_str("ENVIRONMENT", "prod").lower()
BOT_NAME = _env_str("BOT_NAME", "WaifuRoller")
# dev only: slash commands are copied to these guilds for instant sync.
SYNC_GUILD_IDS = _env_ids("SYNC_GUILD_ID")

# ---- Logging ----
LOG_LEVEL = _env_str("LOG_LEVEL", "INFO").upper()
LOG_DIR = _env_str("LOG_DIR", os.path.join(os.path.dirname(os.path.abspath(__file__)), "logs"))

# ---- Admins ----
# /give, /remove and /health are restricted to these Discord user IDs.
BOT_OWNER_IDS = set(_env_ids("BOT_OWNER_IDS"))

# ---- Character catalog (Jikan) ----
JIKAN_BASE_URL = _env_str("JIKAN_BASE_URL", "https://api.jikan.moe/v4").rstrip("/")
CATALOG_TIMEOUT_S = _env_float("CATALOG_TIMEOUT_S", 10.0)
# Rolls pick uniformly in [1, MAX_CHARACTER_ID].
MAX_CHARACTER_ID = _env_int("MAX_CHARACTER_ID", 276935)
CACHE_TTL = _env_int("CACHE_TTL", 3600)
# Not-found IDs are re-rolled this many times per command.
ROLL_FETCH_ATTEMPTS = _env_int("ROLL_FETCH_ATTEMPTS", 5)
# Circuit breaker open time after a 429 without Retry-After.
CATALOG_BACKOFF_SECONDS = _env_int("CATALOG_BACKOFF_SECONDS", 5)

# ---- Roll quota ----
ROLL_PERIOD_SECONDS = _env_int("ROLL_PERIOD_SECONDS", 10)
MAX_ROLLS_PER_PERIOD = _env_int("MAX_ROLLS_PER_PERIOD", 3)
LUCKY_ROLL_EVERY = _env_int("LUCKY_ROLL_EVERY", 10)

# ---- Claims / snipes / trades ----
CLAIM_WINDOW_SECONDS = _env_int("CLAIM_WINDOW_SECONDS", 30)
TRADE_TIMEOUT_SECONDS = _env_int("TRADE_TIMEOUT_SECONDS", 600)
SNIPE_COOLDOWN_MAIN_SECONDS = _env_int("SNIPE_COOLDOWN_MAIN_SECONDS", 600)
SNIPE_COOLDOWN_OTHER_SECONDS = _env_int("SNIPE_COOLDOWN_OTHER_SECONDS", 60)

# When true, a failed rolls_history write fails the roll instead of being logged.
ROLL_HISTORY_STRICT = _env_bool("ROLL_HISTORY_STRICT", False)

# Held back for admin gifting: rolling one awards points but never offers a claim.
RESERVED_CHARACTER_IDS = frozenset(_env_ids("RESERVED_CHARACTER_IDS"))

# ---- Packs ----
PACK_COST = _env_int("PACK_COST", 2500)
PACK_SIZE = _env_int("PACK_SIZE", 5)
# The last slot of every pack has at least this many favorites.
PACK_GUARANTEED_MIN_FAVORITES = _env_int("PACK_GUARANTEED_MIN_FAVORITES", 1000)
PACK_OFFER_SECONDS = _env_int("PACK_OFFER_SECONDS", 60)
# Unrevealed slots of an opened pack are revealed automatically after this long.
PACK_REVEAL_SECONDS = _env_int("PACK_REVEAL_SECONDS", 300)
# Top-list pages sampled for the guaranteed slot.
PACK_GUARANTEED_TOP_PAGES = _env_int("PACK_GUARANTEED_TOP_PAGES", 10)

# ---- Admin gifts ----
GIFT_CONFIRM_SECONDS = _env_int("GIFT_CONFIRM_SECONDS", 60)


# ---------------------------------------------------------------------------
# Startup validation
# ---------------------------------------------------------------------------

# Lower bounds that must hold in every environment.
_MINIMUMS = {
    "MAX_ROLLS_PER_PERIOD": 1,
    "ROLL_PERIOD_SECONDS": 1,
    "LUCKY_ROLL_EVERY": 1,
    "MAX_CHARACTER_ID": 1,
    "PACK_SIZE": 1,
    "CLAIM_WINDOW_SECONDS": 1,
}


def validate_config() -> list[str]:
    """Log problems with the environment; exit in production when any is fatal.

    Returns the fatal problems (useful in dev, where nothing exits).
    """
    is_prod = ENVIRONMENT != "dev"
    errors: list[str] = []
    warnings: list[str] = []

    if not DISCORD_TOKEN:
        (errors if is_prod else warnings).append("DISCORD_TOKEN (or TOKEN) is not set; the bot cannot connect.")
    if is_prod and not os.getenv("DATABASE_URL"):
        errors.append("DATABASE_URL is not set; Postgres is required in production.")
    if is_prod and not (os.getenv("REDIS_URL") or os.getenv("REDIS_PRIVATE_URL")):
        warnings.append("REDIS_URL is not set; every roll will hit the catalog API uncached.")

    module = sys.modules[__name__]
    for name, minimum in _MINIMUMS.items():
        if getattr(module, name) < minimum:
            errors.append(f"{name} must be at least {minimum}.")

    if not BOT_OWNER_IDS:
        warnings.append("BOT_OWNER_IDS is not set; /give, /remove and /health are unusable.")

    for w in warnings:
        _config_log.warning("CONFIG WARNING: %s", w)
    for e in errors:
        _config_log.critical("CONFIG ERROR: %s", e)
    if errors and is_prod:
        sys.exit(1)
    return errors


validate_config()
