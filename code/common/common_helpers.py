# =============================================================================
#  Guildvault
#  Copyright (C) 2021 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import aiohttp
from discord.http import Route

from common.config import MESSAGE_HARD_CAP

CAPTURE_EXCLUSIONS = (
    "roles",
    "bans",
    "emojis",
    "channels",
    "scheduled_events",
    "onboarding",
)


def resolve_options(defaults: dict, overrides: dict | None = None) -> dict:
    """
    Precedence:
      1) explicit overrides (keys whose value is None are ignored)
      2) defaults (already carrying env / app_config values)

    Unknown keys are kept so callers can pass through extras.
    """
    eff = dict(defaults)

    for k, v in (overrides or {}).items():
        if v is None:
            continue
        eff[k] = v

    if "max_messages_per_channel" in eff:
        try:
            n = int(eff["max_messages_per_channel"])
        except (TypeError, ValueError):
            n = int(defaults.get("max_messages_per_channel") or 10)
        eff["max_messages_per_channel"] = max(0, min(MESSAGE_HARD_CAP, n))

    if "do_not_backup" in eff:
        eff["do_not_backup"] = frozenset(
            str(x).strip().lower()
            for x in (eff.get("do_not_backup") or ())
            if str(x).strip().lower() in CAPTURE_EXCLUSIONS
        )

    if "save_images" in eff:
        mode = str(eff.get("save_images") or "url").lower()
        eff["save_images"] = "base64" if mode == "base64" else "url"

    return eff


async def fetch_bytes(url: str, session: aiohttp.ClientSession | None = None) -> bytes:
    """GET `url` and return the body; non-2xx responses raise."""
    own = session is None or session.closed
    sess = aiohttp.ClientSession() if own else session
    try:
        async with sess.get(url) as resp:
            resp.raise_for_status()
            return await resp.read()
    finally:
        if own:
            await sess.close()



def http_client_and_route(guild):
    """
    The guild's low-level HTTP client plus discord.py's Route, for endpoints
    and fields the library does not wrap. (None, None) when unavailable.
    """
    state = getattr(guild, "_state", None)
    http_client = getattr(state, "http", None)
    if http_client is None:
        return None, None
    return http_client, Route
