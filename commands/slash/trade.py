# commands/slash/trade.py
from __future__ import annotations

import logging
from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands

from core.ui import (
    GENERIC_FAILURE,
    render_trade,
    safe_defer,
    safe_edit,
    safe_ephemeral_send,
    safe_send,
    send_ui_error,
)
from utils.tokens import TokenError, TradeToken, decode, encode
from utils.trades import TradeCoordinator, TradeKind

logger = logging.getLogger("bot.trade")

_PUBLIC = {TradeKind.PROPOSED, TradeKind.OFFERED, TradeKind.CONFIRMED, TradeKind.COMPLETED, TradeKind.FAILED}


class TradeView(discord.ui.View):
    """Confirm / Cancel buttons for a pending trade."""

    def __init__(self, trades: TradeCoordinator, token: TradeToken, *, confirmable: bool, timeout: float):
        super().__init__(timeout=timeout)
        self.trades = trades

        if confirmable:
            confirm_btn = discord.ui.Button(
                label="Confirm", style=discord.ButtonStyle.success, emoji="✅", custom_id=encode("confirm", token),
            )
            confirm_btn.callback = self._on_click  # type: ignore
            self.add_item(confirm_btn)

        cancel_btn = discord.ui.Button(
            label="Cancel", style=discord.ButtonStyle.secondary, emoji="✖️", custom_id=encode("cancel", token),
        )
        cancel_btn.callback = self._on_click  # type: ignore
        self.add_item(cancel_btn)

    async def _on_click(self, interaction: discord.Interaction) -> None:
        try:
            action, token, _ = decode(str((interaction.data or {}).get("custom_id") or ""))
        except TokenError:
            await safe_ephemeral_send(interaction, "That button is no longer valid.")
            return
        if not isinstance(token, TradeToken):
            await safe_ephemeral_send(interaction, "That button is no longer valid.")
            return

        uid = int(interaction.user.id)
        try:
            if action == "confirm":
                result = await self.trades.confirm(token, uid)
            elif action == "cancel":
                result = await self.trades.cancel(token, uid)
            else:
                await safe_ephemeral_send(interaction, "Unknown action.")
                return
        except Exception:
            logger.exception("Trade button failed action=%s token=%s user=%s", action, token, uid)
            await send_ui_error(interaction, GENERIC_FAILURE)
            return

        text, embed = render_trade(result)
        if result.kind is TradeKind.CONFIRMED:
            await safe_edit(interaction, embed=embed, view=self)
        elif result.kind in (TradeKind.COMPLETED, TradeKind.FAILED, TradeKind.CANCELLED):
            self.stop()
            await safe_edit(interaction, content=text, embed=embed, view=None)
        else:
            await safe_ephemeral_send(interaction, text or "Trade update.")


class SlashTrade(commands.Cog):
    """Character-for-character trades between two players."""

    def __init__(self, bot: commands.Bot, trades: TradeCoordinator):
        self.bot = bot
        self.trades = trades

    trade = app_commands.Group(name="trade", description="Trade characters with another player")

    async def _reply(self, interaction: discord.Interaction, result, *, view: Optional[discord.ui.View] = None) -> None:
        text, embed = render_trade(result)
        public = result.kind in _PUBLIC
        if embed is not None:
            await safe_send(interaction, text, embed=embed, view=view, ephemeral=not public)
        else:
            await safe_send(interaction, text, ephemeral=not public)

    @trade.command(name="propose", description="Offer one of your characters to another player")
    @app_commands.describe(user="Who to trade with", character_id="Catalog ID of the character you give")
    async def trade_propose(self, interaction: discord.Interaction, user: discord.User, character_id: int):
        await safe_defer(interaction, ephemeral=False)
        try:
            result = await self.trades.propose(int(interaction.user.id), int(user.id), int(character_id))
        except Exception:
            logger.exception("/trade propose failed user=%s", interaction.user.id)
            await send_ui_error(interaction, GENERIC_FAILURE)
            return

        view = None
        if result.kind is TradeKind.PROPOSED and result.trade is not None:
            view = TradeView(self.trades, result.trade.token, confirmable=False, timeout=self.trades.timeout_s)
        await self._reply(interaction, result, view=view)

    @trade.command(name="offer", description="Answer a trade with one of your characters")
    @app_commands.describe(user="Who proposed the trade", character_id="Catalog ID of the character you give back")
    async def trade_offer(self, interaction: discord.Interaction, user: discord.User, character_id: int):
        await safe_defer(interaction, ephemeral=False)
        try:
            result = await self.trades.offer(int(interaction.user.id), int(user.id), int(character_id))
        except Exception:
            logger.exception("/trade offer failed user=%s", interaction.user.id)
            await send_ui_error(interaction, GENERIC_FAILURE)
            return

        view = None
        if result.kind is TradeKind.OFFERED and result.trade is not None:
            remaining = max(1.0, result.trade.expires_at - self.trades.now())
            view = TradeView(self.trades, result.trade.token, confirmable=True, timeout=remaining)
        await self._reply(interaction, result, view=view)

    @trade.command(name="cancel", description="Cancel your pending trade with a player")
    @app_commands.describe(user="The other side of the trade")
    async def trade_cancel(self, interaction: discord.Interaction, user: discord.User):
        pending = self.trades.find(int(interaction.user.id), int(user.id))
        if pending is None:
            await safe_ephemeral_send(interaction, "No pending trade with that player.")
            return
        try:
            result = await self.trades.cancel(pending.token, int(interaction.user.id))
        except Exception:
            logger.exception("/trade cancel failed user=%s", interaction.user.id)
            await send_ui_error(interaction, GENERIC_FAILURE)
            return
        await self._reply(interaction, result)


async def setup(bot: commands.Bot):
    await bot.add_cog(SlashTrade(bot, bot.trades))  # type: ignore[attr-defined]
