# bot.py
import asyncio
import logging
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import discord
from discord import app_commands
from discord.ext import commands
from dotenv import load_dotenv
from pythonjsonlogger.json import JsonFormatter

# .env must be loaded before config reads the environment.
load_dotenv()

import config  # noqa: E402

from core.ui import GENERIC_FAILURE, send_ui_error  # noqa: E402
from utils import backpressure  # noqa: E402
from utils.catalog import aclose_catalog_client  # noqa: E402
from utils.claims import ClaimCoordinator  # noqa: E402
from utils.db import dispose_engine, init_db  # noqa: E402
from utils.gifts import GiftCoordinator  # noqa: E402
from utils.health import check_services  # noqa: E402
from utils.packs import PackCoordinator  # noqa: E402
from utils.scheduler import DelayedTaskQueue  # noqa: E402
from utils.trades import TradeCoordinator  # noqa: E402

EXTENSIONS = (
    "commands.slash.roll",
    "commands.slash.trade",
    "commands.slash.packs",
    "commands.slash.admin",
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

CONSOLE_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# (file name, max bytes, backups, minimum level)
_FILE_LOGS = (
    ("bot.log", 5_000_000, 5, logging.NOTSET),
    ("errors.log", 2_000_000, 3, logging.ERROR),
)

logger = logging.getLogger("bot")


def setup_logging(log_dir: Path | None = None) -> None:
    """Console plus rotating JSON files. Calling it twice is a no-op."""
    root = logging.getLogger()
    if any(getattr(h, "_gacha_handler", False) for h in root.handlers):
        return
    root.setLevel(config.LOG_LEVEL)

    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    handlers: list[logging.Handler] = [console]

    target = log_dir or Path(config.LOG_DIR)
    target.mkdir(parents=True, exist_ok=True)
    json_fmt = JsonFormatter(
        "{asctime}{levelname}{name}{message}",
        style="{",
        rename_fields={"asctime": "timestamp", "levelname": "level"},
    )
    for name, max_bytes, backups, level in _FILE_LOGS:
        fh = RotatingFileHandler(target / name, maxBytes=max_bytes, backupCount=backups, encoding="utf-8")
        fh.setLevel(level)
        fh.setFormatter(json_fmt)
        handlers.append(fh)

    for h in handlers:
        h._gacha_handler = True  # type: ignore[attr-defined]
        root.addHandler(h)

    # discord.py is chatty at INFO about gateway resumes.
    logging.getLogger("discord.gateway").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Bot
# ---------------------------------------------------------------------------


async def wait_for_redis(attempts: int = 5, delay_s: float = 1.0) -> bool:
    """Give Redis a few chances on cold start. A miss only disables the catalog cache."""
    for attempt in range(1, attempts + 1):
        if await backpressure.ping_redis():
            return True
        if attempt < attempts:
            await asyncio.sleep(delay_s)
    return False


class GachaBot(commands.AutoShardedBot):
    """Slash-only bot that owns the in-memory game coordinators.

    One process holds every pending claim, trade, pack and gift; cogs get the
    coordinators from the bot instead of module globals.
    """

    def __init__(self, **kwargs):
        super().__init__(command_prefix=commands.when_mentioned, help_command=None, **kwargs)
        self.scheduler = DelayedTaskQueue()
        self.claims = ClaimCoordinator(self.scheduler)
        self.trades = TradeCoordinator(self.scheduler)
        self.packs = PackCoordinator(self.scheduler)
        self.gifts = GiftCoordinator(self.scheduler)
        self.tree.error(self.on_tree_error)

    async def setup_hook(self) -> None:
        if not await wait_for_redis():
            logger.warning("Redis unavailable at startup; catalog cache disabled")

        await init_db()
        health = await check_services()
        if not health.ok:
            raise RuntimeError("Database unreachable at startup")

        self.scheduler.start()
        failed = await self.load_all_extensions()
        if failed:
            logger.error("Extensions that failed to load: %s", failed)

        try:
            await self.sync_tree()
        except discord.HTTPException:
            logger.exception("Slash command sync failed")

    async def load_all_extensions(self) -> list[str]:
        """Load every cog; a broken one is logged and skipped."""
        failed: list[str] = []
        for ext in EXTENSIONS:
            try:
                await self.load_extension(ext)
            except commands.ExtensionError:
                logger.exception("Failed loading extension %s", ext)
                failed.append(ext)
            else:
                logger.info("Loaded extension %s", ext)
        return failed

    async def sync_tree(self) -> None:
        if config.ENVIRONMENT != "dev":
            synced = await self.tree.sync()
            logger.info("Synced %d slash commands globally", len(synced))
            return
        if not config.SYNC_GUILD_IDS:
            logger.warning("ENVIRONMENT=dev but SYNC_GUILD_ID is empty; slash commands not synced")
            return
        for guild_id in config.SYNC_GUILD_IDS:
            guild = discord.Object(id=guild_id)
            # Guild-scoped copies show up instantly; global ones can take an hour.
            self.tree.copy_global_to(guild=guild)
            synced = await self.tree.sync(guild=guild)
            logger.info("Synced %d slash commands to guild=%s", len(synced), guild_id)

    async def on_tree_error(
        self, interaction: discord.Interaction, error: app_commands.AppCommandError
    ) -> None:
        command = interaction.command.qualified_name if interaction.command else "?"
        logger.error("Unhandled error in /%s user=%s", command, interaction.user.id, exc_info=error)
        await send_ui_error(interaction, GENERIC_FAILURE)

    async def on_ready(self) -> None:
        logger.info("%s ready as %s (shards=%s)", config.BOT_NAME, self.user, self.shard_count)

    async def close(self) -> None:
        await self.scheduler.stop()
        await super().close()


def create_bot() -> GachaBot:
    return GachaBot(intents=discord.Intents.default(), shard_count=config.SHARD_COUNT)


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------


async def main() -> None:
    bot = create_bot()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda s=sig: asyncio.ensure_future(_shutdown(bot, s)))
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still raises KeyboardInterrupt.
            pass

    try:
        await bot.start(config.DISCORD_TOKEN)
    finally:
        if not bot.is_closed():
            await bot.close()
        await aclose_catalog_client()
        await backpressure.close_redis()
        await dispose_engine()
        logger.info("Shutdown complete")


async def _shutdown(bot: GachaBot, sig: signal.Signals) -> None:
    logger.info("Received %s, shutting down", sig.name)
    await bot.close()


if __name__ == "__main__":
    setup_logging()
    if not config.DISCORD_TOKEN:
        logger.critical("DISCORD_TOKEN is not set")
        sys.exit(1)
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
