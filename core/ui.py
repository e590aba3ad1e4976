from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Sequence

import discord

import config
from utils.catalog import AnimeRole, Character, TopPage
from utils.character_store import OwnedCharacter
from utils.claims import ClaimKind, ClaimResult, RollKind, RollOutcome, SnipeKind, SnipeResult
from utils.gifts import GiftKind, GiftResult
from utils.packs import PackKind, PackResult, PackSlot, SlotKind
from utils.points_store import UserSnapshot
from utils.trades import PendingTrade, TradeKind, TradeResult

COLOR_FRESH = 0x5865F2
COLOR_LUCKY = 0xF1C40F
COLOR_DUPLICATE = 0x95A5A6
COLOR_RESERVED = 0x9B59B6
COLOR_TRADE = 0x1ABC9C
COLOR_PACK = 0xE67E22


async def safe_ephemeral_send(interaction: discord.Interaction, content: str) -> None:
    """Safely send an ephemeral message.

    Uses followups if the initial interaction response has already been used.
    Never raises.
    """
    await safe_send(interaction, content, ephemeral=True)


async def safe_send(
    interaction: discord.Interaction,
    content: Optional[str] = None,
    *,
    embed: Optional[discord.Embed] = None,
    view: Optional[discord.ui.View] = None,
    ephemeral: bool = False,
) -> None:
    """Safely send a message (ephemeral optional)."""
    kwargs = {"content": content, "embed": embed, "ephemeral": ephemeral}
    if view is not None:
        kwargs["view"] = view
    try:
        if interaction.response.is_done():
            await interaction.followup.send(**kwargs)
        else:
            await interaction.response.send_message(**kwargs)
    except discord.HTTPException:
        pass


async def safe_send_embed(interaction: discord.Interaction, embed: discord.Embed, *, ephemeral: bool = False) -> None:
    """Safely send an embed (ephemeral optional)."""
    await safe_send(interaction, embed=embed, ephemeral=ephemeral)


async def safe_defer(interaction: discord.Interaction, *, ephemeral: bool = True) -> None:
    """Safely defer an interaction response."""
    try:
        if not interaction.response.is_done():
            await interaction.response.defer(ephemeral=ephemeral)
    except discord.HTTPException:
        pass


async def safe_edit(
    interaction: discord.Interaction,
    *,
    content: Optional[str] = None,
    embed: Optional[discord.Embed] = None,
    view: Optional[discord.ui.View] = None,
) -> None:
    """Edit the message a component belongs to (button clicks)."""
    try:
        if interaction.response.is_done():
            await interaction.edit_original_response(content=content, embed=embed, view=view)
        else:
            await interaction.response.edit_message(content=content, embed=embed, view=view)
    except discord.HTTPException:
        pass


def format_retry_after(seconds: Optional[float]) -> str:
    if not seconds or seconds <= 0:
        return ""
    seconds = max(1, int(round(seconds)))
    if seconds < 60:
        return f" Try again in {seconds}s."
    minutes, sec = divmod(seconds, 60)
    if minutes < 60:
        return f" Try again in {minutes}m {sec}s."
    hours, minutes = divmod(minutes, 60)
    return f" Try again in {hours}h {minutes}m."


@dataclass(frozen=True)
class UiError:
    """A structured, user-facing error."""

    message: str
    retry_after_s: Optional[float] = None

    def render(self) -> str:
        return f"⚠️ {self.message}{format_retry_after(self.retry_after_s)}"


async def send_ui_error(interaction: discord.Interaction, err: UiError) -> None:
    await safe_ephemeral_send(interaction, err.render())


GENERIC_FAILURE = UiError("Something went wrong. Please try again.")
CATALOG_DOWN = UiError("The character catalog is not responding right now.")


# ---------------------------------------------------------------------------
# Embeds
# ---------------------------------------------------------------------------

def _base_embed(*, title: str, description: str = "", color: int = COLOR_FRESH) -> discord.Embed:
    e = discord.Embed(title=title, description=description, color=color)
    e.timestamp = datetime.now(timezone.utc)
    e.set_footer(text=str(config.BOT_NAME))
    return e


def _character_embed(
    character: Character,
    anime: Optional[AnimeRole],
    *,
    title: str,
    color: int,
    lines: Sequence[str] = (),
) -> discord.Embed:
    e = _base_embed(title=title, description="\n".join(lines), color=color)
    e.add_field(name="Character", value=f"**{character.name}** (`#{character.id}`)", inline=False)
    if anime is not None and anime.anime_title:
        e.add_field(name="Anime", value=anime.anime_title, inline=True)
    if anime is not None and anime.role:
        e.add_field(name="Role", value=anime.role, inline=True)
    e.add_field(name="Favorites", value=f"{character.favorites:,}", inline=True)
    if character.image_url:
        e.set_image(url=character.image_url)
    return e


def render_roll(outcome: RollOutcome) -> tuple[Optional[str], Optional[discord.Embed]]:
    """Turn a roll outcome into (plain message, embed). Exactly one of them is set."""
    kind = outcome.kind
    if kind is RollKind.BUSY:
        return "⏳ Your previous roll is still in progress.", None
    if kind is RollKind.RATE_LIMITED:
        return UiError("You're out of rolls for now.", outcome.wait_seconds).render(), None
    if kind is RollKind.NOT_FOUND:
        return (
            f"🎲 The roll came up empty. ({outcome.rolls_remaining} roll(s) left this period.)",
            None,
        )

    character = outcome.character
    assert character is not None
    left = f"Rolls left this period: **{outcome.rolls_remaining}**"

    if kind is RollKind.DUPLICATE:
        owner = f"<@{outcome.owner_id}>" if outcome.owner_id else "someone"
        lines = [
            f"Already owned by {owner}. Duplicate bonus: **+{outcome.points}** points.",
            f"Balance: **{outcome.balance or 0:,}**",
            left,
        ]
        return None, _character_embed(character, outcome.anime, title="🔁 Duplicate", color=COLOR_DUPLICATE, lines=lines)

    if kind is RollKind.RESERVED:
        lines = [
            f"This character is reserved and can't be claimed. **+{outcome.points}** points.",
            f"Balance: **{outcome.balance or 0:,}**",
            left,
        ]
        return None, _character_embed(character, outcome.anime, title="🔒 Reserved", color=COLOR_RESERVED, lines=lines)

    lines = [
        f"<@{outcome.user_id}> has **{outcome.claim_window_s}s** to claim for **{outcome.points}** points.",
    ]
    if outcome.snipeable:
        lines.append(f"Anyone else can snipe it for **{outcome.snipe_cost:,}** points.")
    else:
        lines.append("Lucky rolls can't be sniped.")
    lines.append(left)
    if kind is RollKind.LUCKY:
        return None, _character_embed(character, outcome.anime, title="🍀 Lucky Roll!", color=COLOR_LUCKY, lines=lines)
    return None, _character_embed(character, outcome.anime, title="🎲 Roll", color=COLOR_FRESH, lines=lines)


def render_claim(result: ClaimResult) -> str:
    name = result.character.name if result.character else "this character"
    if result.kind is ClaimKind.CLAIMED:
        return f"✅ You claimed **{name}**! +{result.points} points (balance {result.balance:,})."
    if result.kind is ClaimKind.ALREADY_CLAIMED:
        return (
            f"⚠️ **{name}** was already claimed. You get the duplicate bonus instead: "
            f"+{result.points} points (balance {result.balance:,})."
        )
    if result.kind is ClaimKind.NOT_YOURS:
        return "Only the person who rolled can claim this. Try sniping it instead."
    if result.kind is ClaimKind.IN_PROGRESS:
        return "Your claim is already being processed."
    return "This roll has expired or was already resolved."


def render_snipe(result: SnipeResult) -> str:
    name = result.character.name if result.character else "this character"
    kind = result.kind
    if kind is SnipeKind.SNIPED:
        return (
            f"🎯 You sniped **{name}** for {result.cost:,} points (balance {result.balance:,}). "
            f"Snipe cooldown: {int(result.cooldown_s)}s."
        )
    if kind is SnipeKind.FAILED:
        return f"Someone got **{name}** first. Your {result.cost:,} points were refunded."
    if kind is SnipeKind.OWN_ROLL:
        return "You can't snipe your own roll. Use Claim."
    if kind is SnipeKind.NOT_SNIPEABLE:
        return "Lucky rolls can't be sniped."
    if kind is SnipeKind.COOLDOWN:
        return UiError("You're on snipe cooldown.", result.cooldown_s).render()
    if kind is SnipeKind.INSUFFICIENT_POINTS:
        return f"Sniping **{name}** costs {result.cost:,} points; you have {result.balance:,}."
    return "This roll has expired or was already resolved."


def _trade_line(owned: Optional[OwnedCharacter]) -> str:
    if owned is None:
        return "*waiting for an offer*"
    return f"**{owned.name}** (`#{owned.character_id}`)"


def trade_embed(trade: PendingTrade, *, title: str = "🔄 Trade") -> discord.Embed:
    t = trade.token
    e = _base_embed(title=title, color=COLOR_TRADE)
    a_mark = "✅" if trade.initiator_confirmed else "⌛"
    b_mark = "✅" if trade.target_confirmed else "⌛"
    e.add_field(name="Offer", value=f"{a_mark} <@{t.initiator_id}> gives {_trade_line(trade.initiator_character)}", inline=False)
    e.add_field(name="Return", value=f"{b_mark} <@{t.target_id}> gives {_trade_line(trade.target_character)}", inline=False)
    e.add_field(name="Status", value=trade.status.value.replace("_", " "), inline=False)
    return e


def render_trade(result: TradeResult) -> tuple[Optional[str], Optional[discord.Embed]]:
    kind = result.kind
    trade = result.trade
    if kind is TradeKind.PROPOSED and trade is not None:
        e = trade_embed(trade, title="🔄 Trade proposed")
        e.description = (
            f"<@{trade.token.target_id}>, answer with `/trade offer` naming one of your characters."
        )
        return None, e
    if kind is TradeKind.OFFERED and trade is not None:
        e = trade_embed(trade, title="🔄 Trade ready")
        e.description = "Both sides must confirm."
        return None, e
    if kind is TradeKind.CONFIRMED and trade is not None:
        return None, trade_embed(trade)
    if kind is TradeKind.COMPLETED and trade is not None:
        return None, trade_embed(trade, title="✅ Trade completed")
    if kind is TradeKind.FAILED:
        lost = f" **{result.detail}** changed hands." if result.detail else ""
        return f"❌ The trade could not be completed.{lost} Nothing was exchanged.", None
    if kind is TradeKind.CANCELLED:
        return "Trade cancelled.", None
    messages = {
        TradeKind.SELF_TRADE: "You can't trade with yourself.",
        TradeKind.PAIR_BUSY: "There's already a pending trade between you two.",
        TradeKind.NOT_OWNER: f"You don't own character `#{result.detail}`." if result.detail else "You don't own that character.",
        TradeKind.NO_TRADE: "No pending trade found (it may have expired).",
        TradeKind.NOT_PARTY: "This trade isn't yours.",
        TradeKind.NOT_READY: "This trade isn't waiting for that step.",
        TradeKind.IN_PROGRESS: "The trade is being completed.",
    }
    return messages.get(kind, "Trade update."), None


def _slot_line(slot: PackSlot) -> str:
    label = f"Slot {slot.index + 1}" + (" ⭐" if slot.guaranteed else "")
    if slot.result is None:
        return f"{label}: ❔"
    if slot.result.kind is SlotKind.EMPTY or slot.character is None:
        return f"{label}: empty"
    suffix = {
        SlotKind.CLAIMED: f"claimed, +{slot.result.points}",
        SlotKind.DUPLICATE: f"duplicate, +{slot.result.points}",
        SlotKind.RESERVED: f"reserved, +{slot.result.points}",
    }[slot.result.kind]
    return f"{label}: **{slot.character.name}** ({suffix})"


def render_pack(result: PackResult) -> tuple[Optional[str], Optional[discord.Embed]]:
    kind = result.kind
    pack = result.pack
    if kind is PackKind.OFFERED:
        e = _base_embed(
            title="🎁 Character Pack",
            description=(
                f"Open a pack of {config.PACK_SIZE} characters for **{result.cost:,}** points?\n"
                f"The last slot is guaranteed to be a popular character.\n"
                f"Your balance: **{result.balance:,}**"
            ),
            color=COLOR_PACK,
        )
        return None, e
    if kind in (PackKind.OPENED, PackKind.REVEALED) and pack is not None:
        e = _base_embed(title="🎁 Pack opened", color=COLOR_PACK)
        e.description = "\n".join(_slot_line(s) for s in pack.slots)
        slot = result.slot
        if slot is not None and slot.character is not None:
            if slot.character.image_url:
                e.set_thumbnail(url=slot.character.image_url)
            if slot.result is not None:
                e.add_field(name="Balance", value=f"{slot.result.balance:,}", inline=True)
        return None, e
    messages = {
        PackKind.CANCELLED: "Pack cancelled.",
        PackKind.REFUNDED: f"The catalog is unavailable. Your {result.cost:,} points were refunded.",
        PackKind.INSUFFICIENT_POINTS: f"A pack costs {result.cost:,} points; you have {result.balance:,}.",
        PackKind.PACK_BUSY: "You already have a pack open.",
        PackKind.NOT_YOURS: "This pack isn't yours.",
        PackKind.NOT_READY: "This pack isn't waiting for that step.",
        PackKind.BAD_SLOT: "That slot doesn't exist.",
        PackKind.IN_PROGRESS: "Still working on it.",
    }
    return messages.get(kind, "This pack has expired."), None


def render_gift(result: GiftResult) -> tuple[Optional[str], Optional[discord.Embed]]:
    kind = result.kind
    if kind is GiftKind.PENDING and result.gift is not None:
        g = result.gift
        e = _character_embed(
            g.character,
            g.anime,
            title="🎀 Confirm gift",
            color=COLOR_RESERVED,
            lines=[f"Give this character to <@{g.token.target_id}>?"],
        )
        return None, e
    messages = {
        GiftKind.GIVEN: f"✅ Character `#{result.character_id}` given.",
        GiftKind.CANCELLED: "Gift cancelled.",
        GiftKind.REMOVED: f"🗑️ Character `#{result.character_id}` removed from <@{result.owner_id}>.",
        GiftKind.NOT_ADMIN: "This command is restricted to bot admins.",
        GiftKind.ALREADY_OWNED: f"Character `#{result.character_id}` is already owned by <@{result.owner_id}>.",
        GiftKind.NOT_FOUND: f"No character `#{result.character_id}` in the catalog.",
        GiftKind.NOT_OWNED: f"Nobody owns character `#{result.character_id}`.",
    }
    return messages.get(kind, "This gift has expired."), None


def collection_embed(
    display_name: str,
    items: Sequence[OwnedCharacter],
    *,
    total: int,
    page: int,
    per_page: int,
) -> discord.Embed:
    pages = max(1, -(-int(total) // max(1, per_page)))
    e = _base_embed(title=f"📚 {display_name}'s collection", color=COLOR_FRESH)
    if not items:
        e.description = "No characters yet. Use `/roll` to find some!"
    else:
        start = page * per_page
        e.description = "\n".join(
            f"`{start + i + 1}.` **{c.name}** (`#{c.character_id}`) · {c.anime_title or 'unknown'} · {c.favorites:,} ❤"
            for i, c in enumerate(items)
        )
    e.set_footer(text=f"Page {page + 1}/{pages} · {total} character(s) · {config.BOT_NAME}")
    return e


def _medal(rank: int) -> str:
    return {0: "🥇", 1: "🥈", 2: "🥉"}.get(rank, "")


def leaderboard_embed(users: Sequence[UserSnapshot]) -> discord.Embed:
    e = _base_embed(title="🏆 Points Leaderboard", color=COLOR_FRESH)
    if not users:
        e.description = "*No rankings available yet.*"
        return e
    lines = []
    for rank, u in enumerate(users):
        medal = _medal(rank)
        prefix = f"{medal} **#{rank + 1}**" if medal else f"**#{rank + 1}**"
        name = u.username or f"<@{u.user_id}>"
        lines.append(f"{prefix} {name}: {u.total_points:,}")
    e.description = "\n".join(lines)
    return e


def points_embed(display_name: str, snapshot: Optional[UserSnapshot], *, rolls_until_lucky: int) -> discord.Embed:
    points = snapshot.total_points if snapshot else 0
    rolls = snapshot.rolls_count if snapshot else 0
    e = _base_embed(title=f"💰 {display_name}", color=COLOR_FRESH)
    e.add_field(name="Points", value=f"{points:,}", inline=True)
    e.add_field(name="Rolls", value=f"{rolls:,}", inline=True)
    e.add_field(name="Next lucky roll", value=f"in {rolls_until_lucky} roll(s)", inline=True)
    return e


def top_embed(top: TopPage) -> discord.Embed:
    e = _base_embed(title="⭐ Most favorited characters", color=COLOR_LUCKY)
    if not top.characters:
        e.description = "*Nothing here.*"
    else:
        e.description = "\n".join(
            f"**{c.name}** (`#{c.id}`): {c.favorites:,} ❤" for c in top.characters[:25]
        )
    e.set_footer(text=f"Page {top.page} · {config.BOT_NAME}")
    return e


def search_embed(query: str, results: Sequence[Character]) -> discord.Embed:
    e = _base_embed(title=f"🔎 {query}", color=COLOR_FRESH)
    if not results:
        e.description = "No characters found."
    else:
        e.description = "\n".join(f"**{c.name}** (`#{c.id}`): {c.favorites:,} ❤" for c in results)
    return e
