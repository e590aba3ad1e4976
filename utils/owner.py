from __future__ import annotations

import config


def is_bot_owner(user_or_id) -> bool:
    """Return True if user is in BOT_OWNER_IDS (the bot's admins).

    Accepts a discord User/Member or a raw int ID.
    """
    try:
        user_id = int(getattr(user_or_id, "id", user_or_id))
    except (TypeError, ValueError):
        return False
    return bool(config.BOT_OWNER_IDS) and (user_id in config.BOT_OWNER_IDS)
