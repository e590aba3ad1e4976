# commands/slash/roll.py
from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

import discord
from discord import app_commands
from discord.ext import commands

from core.ui import (
    CATALOG_DOWN,
    GENERIC_FAILURE,
    UiError,
    collection_embed,
    leaderboard_embed,
    points_embed,
    render_claim,
    render_roll,
    render_snipe,
    safe_defer,
    safe_edit,
    safe_ephemeral_send,
    safe_send,
    search_embed,
    send_ui_error,
    top_embed,
)
from utils import catalog
from utils.catalog import CatalogUnavailable
from utils.character_store import list_collection
from utils.claims import ClaimCoordinator, ClaimKind, RollKind, SnipeKind
from utils.points_store import get_user, top_users
from utils.ratelimit import lucky_progress
from utils.tokens import ClaimToken, PageToken, TokenError, decode, encode

logger = logging.getLogger("bot.roll")

VIEW_COLLECTION = 1
VIEW_TOP = 2
COLLECTION_PER_PAGE = 10


def _custom_id(interaction: discord.Interaction) -> str:
    return str((interaction.data or {}).get("custom_id") or "")


async def _report_catalog_down(interaction: discord.Interaction, e: CatalogUnavailable) -> None:
    logger.warning("Catalog unavailable (status=%s retry_after=%s)", e.status_code, e.retry_after_s)
    await send_ui_error(interaction, UiError(CATALOG_DOWN.message, e.retry_after_s))


class ClaimView(discord.ui.View):
    """Claim / Snipe buttons under a rolled character."""

    def __init__(self, claims: ClaimCoordinator, token: ClaimToken, *, snipeable: bool, timeout: float):
        super().__init__(timeout=timeout)
        self.claims = claims
        self.message: Optional[discord.Message] = None

        claim_btn = discord.ui.Button(
            label="Claim", style=discord.ButtonStyle.success, emoji="💖", custom_id=encode("claim", token),
        )
        claim_btn.callback = self._on_click  # type: ignore
        self.add_item(claim_btn)

        if snipeable:
            snipe_btn = discord.ui.Button(
                label="Snipe", style=discord.ButtonStyle.danger, emoji="🎯", custom_id=encode("snipe", token),
            )
            snipe_btn.callback = self._on_click  # type: ignore
            self.add_item(snipe_btn)

    async def _close(self) -> None:
        for item in self.children:
            if isinstance(item, discord.ui.Button):
                item.disabled = True
        self.stop()
        if self.message is not None:
            try:
                await self.message.edit(view=self)
            except discord.HTTPException:
                pass

    async def on_timeout(self) -> None:
        await self._close()

    async def _on_click(self, interaction: discord.Interaction) -> None:
        try:
            action, token, _ = decode(_custom_id(interaction))
        except TokenError:
            await safe_ephemeral_send(interaction, "That button is no longer valid.")
            return
        if not isinstance(token, ClaimToken):
            await safe_ephemeral_send(interaction, "That button is no longer valid.")
            return

        uid = int(interaction.user.id)
        try:
            if action == "claim":
                result = await self.claims.handle_claim(token, uid)
                text = render_claim(result)
                if result.kind in (ClaimKind.CLAIMED, ClaimKind.ALREADY_CLAIMED):
                    await safe_send(interaction, f"<@{uid}> {text}")
                    await self._close()
                else:
                    if result.kind is ClaimKind.UNAVAILABLE:
                        await self._close()
                    await safe_ephemeral_send(interaction, text)
            elif action == "snipe":
                await safe_defer(interaction, ephemeral=True)
                result = await self.claims.handle_snipe(token, uid)
                text = render_snipe(result)
                if result.kind is SnipeKind.SNIPED:
                    await safe_send(interaction, f"<@{uid}> sniped from <@{result.roller_id}>! {text}")
                    await self._close()
                else:
                    if result.kind is SnipeKind.UNAVAILABLE:
                        await self._close()
                    await safe_ephemeral_send(interaction, text)
            else:
                await safe_ephemeral_send(interaction, "Unknown action.")
        except Exception:
            logger.exception("Claim button failed action=%s token=%s user=%s", action, token, uid)
            await send_ui_error(interaction, GENERIC_FAILURE)


PageLoader = Callable[[PageToken], Awaitable[tuple[discord.Embed, bool]]]


class PageView(discord.ui.View):
    """Prev/Next pagination driven by PageTokens in the button custom_ids."""

    def __init__(self, token: PageToken, loader: PageLoader, *, has_next: bool, timeout: float = 300.0):
        super().__init__(timeout=timeout)
        self.loader = loader

        prev_btn = discord.ui.Button(
            label="Prev",
            style=discord.ButtonStyle.secondary,
            emoji="◀️",
            custom_id=encode("page", PageToken(token.view, token.owner_id, max(0, token.page - 1))),
            disabled=token.page <= 0,
        )
        next_btn = discord.ui.Button(
            label="Next",
            style=discord.ButtonStyle.secondary,
            emoji="▶️",
            custom_id=encode("page", PageToken(token.view, token.owner_id, token.page + 1)),
            disabled=not has_next,
        )
        prev_btn.callback = self._on_click  # type: ignore
        next_btn.callback = self._on_click  # type: ignore
        self.add_item(prev_btn)
        self.add_item(next_btn)

    async def _on_click(self, interaction: discord.Interaction) -> None:
        try:
            _, token, _ = decode(_custom_id(interaction))
        except TokenError:
            await safe_ephemeral_send(interaction, "That button is no longer valid.")
            return
        if not isinstance(token, PageToken):
            await safe_ephemeral_send(interaction, "That button is no longer valid.")
            return
        try:
            embed, has_next = await self.loader(token)
        except CatalogUnavailable as e:
            await _report_catalog_down(interaction, e)
            return
        except Exception:
            logger.exception("Page load failed token=%s", token)
            await send_ui_error(interaction, GENERIC_FAILURE)
            return
        self.stop()
        await safe_edit(interaction, embed=embed, view=PageView(token, self.loader, has_next=has_next))


def collection_loader(display_name: str) -> PageLoader:
    async def _load(token: PageToken) -> tuple[discord.Embed, bool]:
        items, total = await list_collection(token.owner_id, page=token.page, per_page=COLLECTION_PER_PAGE)
        embed = collection_embed(display_name, items, total=total, page=token.page, per_page=COLLECTION_PER_PAGE)
        return embed, (token.page + 1) * COLLECTION_PER_PAGE < total

    return _load


async def load_top_page(token: PageToken) -> tuple[discord.Embed, bool]:
    # Catalog pages are 1-based.
    top = await catalog.top_characters(token.page + 1)
    return top_embed(top), top.has_next_page


class SlashRoll(commands.Cog):
    """Rolling, claiming and browsing characters."""

    def __init__(self, bot: commands.Bot, claims: ClaimCoordinator):
        self.bot = bot
        self.claims = claims

    @app_commands.command(name="roll", description="Roll a random anime character")
    async def roll(self, interaction: discord.Interaction):
        uid = int(interaction.user.id)
        await safe_defer(interaction, ephemeral=False)
        try:
            outcome = await self.claims.handle_roll(uid, interaction.user.name)
        except CatalogUnavailable as e:
            await _report_catalog_down(interaction, e)
            return
        except Exception:
            logger.exception("/roll failed user=%s", uid)
            await send_ui_error(interaction, GENERIC_FAILURE)
            return

        text, embed = render_roll(outcome)
        if embed is None:
            await safe_send(interaction, text, ephemeral=outcome.kind in (RollKind.BUSY, RollKind.RATE_LIMITED))
            return

        if outcome.token is None:
            await safe_send(interaction, embed=embed)
            return

        view = ClaimView(
            self.claims, outcome.token, snipeable=outcome.snipeable, timeout=float(outcome.claim_window_s),
        )
        await safe_send(interaction, embed=embed, view=view)
        try:
            view.message = await interaction.original_response()
        except discord.HTTPException:
            pass

    @app_commands.command(name="points", description="Show your points and roll stats")
    @app_commands.describe(user="Whose points to show (default: you)")
    async def points(self, interaction: discord.Interaction, user: Optional[discord.User] = None):
        target = user or interaction.user
        try:
            snapshot = await get_user(int(target.id))
            until = await lucky_progress(int(target.id))
        except Exception:
            logger.exception("/points failed user=%s", target.id)
            await send_ui_error(interaction, GENERIC_FAILURE)
            return
        await safe_send(interaction, embed=points_embed(target.display_name, snapshot, rolls_until_lucky=until))

    @app_commands.command(name="lucky", description="How many rolls until your next lucky roll")
    async def lucky(self, interaction: discord.Interaction):
        try:
            until = await lucky_progress(int(interaction.user.id))
        except Exception:
            logger.exception("/lucky failed user=%s", interaction.user.id)
            await send_ui_error(interaction, GENERIC_FAILURE)
            return
        await safe_ephemeral_send(interaction, f"🍀 Your next lucky roll is in **{until}** roll(s).")

    @app_commands.command(name="leaderboard", description="Top players by points")
    @app_commands.describe(limit="How many players to show (default 10, max 25)")
    async def leaderboard(self, interaction: discord.Interaction, limit: int = 10):
        try:
            users = await top_users(max(1, min(25, int(limit or 10))))
        except Exception:
            logger.exception("/leaderboard failed")
            await send_ui_error(interaction, GENERIC_FAILURE)
            return
        await safe_send(interaction, embed=leaderboard_embed(users))

    @app_commands.command(name="collection", description="Browse a character collection")
    @app_commands.describe(user="Whose collection to show (default: you)")
    async def collection(self, interaction: discord.Interaction, user: Optional[discord.User] = None):
        target = user or interaction.user
        token = PageToken(view=VIEW_COLLECTION, owner_id=int(target.id), page=0)
        try:
            items, total = await list_collection(token.owner_id, page=0, per_page=COLLECTION_PER_PAGE)
        except Exception:
            logger.exception("/collection failed user=%s", target.id)
            await send_ui_error(interaction, GENERIC_FAILURE)
            return
        embed = collection_embed(target.display_name, items, total=total, page=0, per_page=COLLECTION_PER_PAGE)
        view = PageView(token, collection_loader(target.display_name), has_next=total > COLLECTION_PER_PAGE)
        await safe_send(interaction, embed=embed, view=view)

    @app_commands.command(name="top", description="Most favorited characters in the catalog")
    async def top(self, interaction: discord.Interaction):
        await safe_defer(interaction, ephemeral=False)
        token = PageToken(view=VIEW_TOP, owner_id=0, page=0)
        try:
            embed, has_next = await load_top_page(token)
        except CatalogUnavailable as e:
            await _report_catalog_down(interaction, e)
            return
        except Exception:
            logger.exception("/top failed")
            await send_ui_error(interaction, GENERIC_FAILURE)
            return
        await safe_send(interaction, embed=embed, view=PageView(token, load_top_page, has_next=has_next))

    @app_commands.command(name="search", description="Search the catalog for a character by name")
    @app_commands.describe(name="Character name")
    async def search(self, interaction: discord.Interaction, name: str):
        await safe_defer(interaction, ephemeral=True)
        try:
            results = await catalog.search_characters(name, limit=10)
        except CatalogUnavailable as e:
            await _report_catalog_down(interaction, e)
            return
        except Exception:
            logger.exception("/search failed q=%r", name)
            await send_ui_error(interaction, GENERIC_FAILURE)
            return
        await safe_send(interaction, embed=search_embed(name, results), ephemeral=True)


async def setup(bot: commands.Bot):
    await bot.add_cog(SlashRoll(bot, bot.claims))  # type: ignore[attr-defined]
