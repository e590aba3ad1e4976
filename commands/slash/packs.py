# commands/slash/packs.py
from __future__ import annotations

import logging

import discord
from discord import app_commands
from discord.ext import commands

from core.ui import (
    CATALOG_DOWN,
    GENERIC_FAILURE,
    UiError,
    render_pack,
    safe_defer,
    safe_edit,
    safe_ephemeral_send,
    safe_send,
    send_ui_error,
)
from utils.catalog import CatalogUnavailable
from utils.packs import Pack, PackCoordinator, PackKind, PackStatus
from utils.tokens import PackToken, TokenError, decode, encode

logger = logging.getLogger("bot.packs")


class PackView(discord.ui.View):
    """Confirm/Cancel while offered; one reveal button per slot once opened."""

    def __init__(self, packs: PackCoordinator, pack: Pack, *, timeout: float):
        super().__init__(timeout=timeout)
        self.packs = packs
        self.user_id = pack.token.user_id
        token = pack.token

        if pack.status is PackStatus.OFFERED:
            confirm_btn = discord.ui.Button(
                label=f"Open ({pack.cost:,} pts)",
                style=discord.ButtonStyle.success,
                emoji="🎁",
                custom_id=encode("confirm", token),
            )
            cancel_btn = discord.ui.Button(
                label="Cancel", style=discord.ButtonStyle.secondary, custom_id=encode("cancel", token),
            )
            for btn in (confirm_btn, cancel_btn):
                btn.callback = self._on_click  # type: ignore
                self.add_item(btn)
            return

        for slot in pack.slots:
            btn = discord.ui.Button(
                label=str(slot.index + 1),
                emoji="⭐" if slot.guaranteed else "❔",
                style=discord.ButtonStyle.secondary if slot.revealed else discord.ButtonStyle.primary,
                custom_id=encode("slot", token, slot.index),
                disabled=slot.revealed,
            )
            btn.callback = self._on_click  # type: ignore
            self.add_item(btn)

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        if int(interaction.user.id) != self.user_id:
            await safe_ephemeral_send(interaction, "This pack isn't yours.")
            return False
        return True

    async def _on_click(self, interaction: discord.Interaction) -> None:
        try:
            action, token, extra = decode(str((interaction.data or {}).get("custom_id") or ""))
        except TokenError:
            await safe_ephemeral_send(interaction, "That button is no longer valid.")
            return
        if not isinstance(token, PackToken):
            await safe_ephemeral_send(interaction, "That button is no longer valid.")
            return

        uid = int(interaction.user.id)
        try:
            if action == "confirm":
                await safe_defer(interaction, ephemeral=True)
                result = await self.packs.confirm(token, uid)
            elif action == "cancel":
                result = await self.packs.cancel(token, uid)
            elif action == "slot" and extra:
                await safe_defer(interaction, ephemeral=True)
                result = await self.packs.reveal(token, uid, extra[0])
            else:
                await safe_ephemeral_send(interaction, "Unknown action.")
                return
        except CatalogUnavailable as e:
            await send_ui_error(interaction, UiError(CATALOG_DOWN.message, e.retry_after_s))
            return
        except Exception:
            logger.exception("Pack button failed action=%s token=%s user=%s", action, token, uid)
            await send_ui_error(interaction, GENERIC_FAILURE)
            return

        text, embed = render_pack(result)
        pack = result.pack
        if result.kind in (PackKind.OPENED, PackKind.REVEALED) and pack is not None:
            self.stop()
            done = pack.status is not PackStatus.OPENED
            view = None if done else PackView(self.packs, pack, timeout=max(1.0, pack.expires_at - self.packs.now()))
            await safe_edit(interaction, embed=embed, view=view)
        elif result.kind in (PackKind.CANCELLED, PackKind.REFUNDED, PackKind.INSUFFICIENT_POINTS):
            self.stop()
            await safe_edit(interaction, content=text, embed=None, view=None)
        else:
            await safe_ephemeral_send(interaction, text or "This pack has expired.")


class SlashPacks(commands.Cog):
    """Character packs bought with points."""

    def __init__(self, bot: commands.Bot, packs: PackCoordinator):
        self.bot = bot
        self.packs = packs

    @app_commands.command(name="pack", description="Buy a pack of characters with your points")
    async def pack(self, interaction: discord.Interaction):
        try:
            result = await self.packs.offer(int(interaction.user.id), interaction.user.name)
        except Exception:
            logger.exception("/pack failed user=%s", interaction.user.id)
            await send_ui_error(interaction, GENERIC_FAILURE)
            return

        text, embed = render_pack(result)
        if result.pack is None or embed is None:
            await safe_ephemeral_send(interaction, text or "Could not create a pack.")
            return
        view = PackView(self.packs, result.pack, timeout=max(1.0, result.pack.expires_at - self.packs.now()))
        await safe_send(interaction, embed=embed, view=view, ephemeral=True)


async def setup(bot: commands.Bot):
    await bot.add_cog(SlashPacks(bot, bot.packs))  # type: ignore[attr-defined]
