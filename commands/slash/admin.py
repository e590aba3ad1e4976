# commands/slash/admin.py
from __future__ import annotations

import logging

import discord
from discord import app_commands
from discord.ext import commands

from core.ui import (
    CATALOG_DOWN,
    GENERIC_FAILURE,
    UiError,
    render_gift,
    safe_edit,
    safe_ephemeral_send,
    safe_send,
    send_ui_error,
)
from utils.catalog import CatalogUnavailable
from utils.gifts import GiftCoordinator, GiftKind
from utils.health import check_services
from utils.owner import is_bot_owner
from utils.tokens import GiftToken, TokenError, decode, encode

logger = logging.getLogger("bot.admin")


class GiftView(discord.ui.View):
    def __init__(self, gifts: GiftCoordinator, token: GiftToken, *, timeout: float):
        super().__init__(timeout=timeout)
        self.gifts = gifts
        self.admin_id = token.admin_id

        confirm_btn = discord.ui.Button(
            label="Give", style=discord.ButtonStyle.success, emoji="🎀", custom_id=encode("confirm", token),
        )
        cancel_btn = discord.ui.Button(
            label="Cancel", style=discord.ButtonStyle.secondary, custom_id=encode("cancel", token),
        )
        for btn in (confirm_btn, cancel_btn):
            btn.callback = self._on_click  # type: ignore
            self.add_item(btn)

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        if int(interaction.user.id) != self.admin_id:
            await safe_ephemeral_send(interaction, "Only the admin who started this gift can use these buttons.")
            return False
        return True

    async def _on_click(self, interaction: discord.Interaction) -> None:
        try:
            action, token, _ = decode(str((interaction.data or {}).get("custom_id") or ""))
        except TokenError:
            await safe_ephemeral_send(interaction, "That button is no longer valid.")
            return
        if not isinstance(token, GiftToken):
            await safe_ephemeral_send(interaction, "That button is no longer valid.")
            return

        uid = int(interaction.user.id)
        try:
            if action == "confirm":
                result = await self.gifts.confirm(token, uid)
            elif action == "cancel":
                result = await self.gifts.cancel(token, uid)
            else:
                await safe_ephemeral_send(interaction, "Unknown action.")
                return
        except Exception:
            logger.exception("Gift button failed action=%s token=%s", action, token)
            await send_ui_error(interaction, GENERIC_FAILURE)
            return

        self.stop()
        text, _ = render_gift(result)
        await safe_edit(interaction, content=text, embed=None, view=None)


class SlashAdmin(commands.Cog):
    """Admin-only character management."""

    def __init__(self, bot: commands.Bot, gifts: GiftCoordinator):
        self.bot = bot
        self.gifts = gifts

    @app_commands.command(name="give", description="(Admin) Give an unowned character to a player")
    @app_commands.describe(user="Who receives the character", character_id="Catalog ID of the character")
    async def give(self, interaction: discord.Interaction, user: discord.User, character_id: int):
        if not is_bot_owner(interaction.user):
            await safe_ephemeral_send(interaction, "This command is restricted to bot admins.")
            return
        try:
            result = await self.gifts.give(int(interaction.user.id), int(user.id), int(character_id))
        except CatalogUnavailable as e:
            await send_ui_error(interaction, UiError(CATALOG_DOWN.message, e.retry_after_s))
            return
        except Exception:
            logger.exception("/give failed admin=%s character=%s", interaction.user.id, character_id)
            await send_ui_error(interaction, GENERIC_FAILURE)
            return

        text, embed = render_gift(result)
        if result.kind is GiftKind.PENDING and result.gift is not None:
            view = GiftView(self.gifts, result.gift.token, timeout=float(self.gifts.confirm_s))
            await safe_send(interaction, embed=embed, view=view, ephemeral=True)
            return
        await safe_ephemeral_send(interaction, text or "Nothing to do.")

    @app_commands.command(name="remove", description="(Admin) Remove a character from its owner")
    @app_commands.describe(character_id="Catalog ID of the character")
    async def remove(self, interaction: discord.Interaction, character_id: int):
        if not is_bot_owner(interaction.user):
            await safe_ephemeral_send(interaction, "This command is restricted to bot admins.")
            return
        try:
            result = await self.gifts.remove(int(interaction.user.id), int(character_id))
        except Exception:
            logger.exception("/remove failed admin=%s character=%s", interaction.user.id, character_id)
            await send_ui_error(interaction, GENERIC_FAILURE)
            return
        text, _ = render_gift(result)
        await safe_ephemeral_send(interaction, text or "Nothing to do.")

    @app_commands.command(name="health", description="(Admin) Database, Redis and catalog status")
    async def health(self, interaction: discord.Interaction):
        if not is_bot_owner(interaction.user):
            await safe_ephemeral_send(interaction, "This command is restricted to bot admins.")
            return
        status = await check_services()

        def _mark(ok: bool) -> str:
            return "✅" if ok else "❌"

        lines = [
            f"{_mark(status.database)} Database",
            f"{_mark(status.redis)} Redis",
            f"{_mark(not status.catalog_breaker_open_s)} Catalog"
            + (f" (backing off {status.catalog_breaker_open_s}s)" if status.catalog_breaker_open_s else ""),
        ]
        await safe_ephemeral_send(interaction, "\n".join(lines))


async def setup(bot: commands.Bot):
    await bot.add_cog(SlashAdmin(bot, bot.gifts))  # type: ignore[attr-defined]
