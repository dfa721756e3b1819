# =============================================================================
#  Guildvault
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================


from __future__ import annotations
from typing import Dict, Iterable, List, NamedTuple, Optional

import discord

from common.models import ChannelKind, Snapshot

_KIND_BY_TYPE = {
    discord.ChannelType.text: ChannelKind.TEXT,
    discord.ChannelType.news: ChannelKind.TEXT,
    discord.ChannelType.voice: ChannelKind.VOICE,
    discord.ChannelType.stage_voice: ChannelKind.STAGE,
    discord.ChannelType.forum: ChannelKind.FORUM,
    discord.ChannelType.category: ChannelKind.CATEGORY,
}


def live_kind(ch) -> Optional[ChannelKind]:
    """ChannelKind of a live channel; announcement channels count as text."""
    return _KIND_BY_TYPE.get(getattr(ch, "type", None))


class ChannelMeta(NamedTuple):
    name: str
    kind: ChannelKind
    parent: Optional[str]


class IdentifierReconciler:
    """
    Maps ids stored in a snapshot onto live ids in the target guild.

    Roles: (name, position) first, then name only; first match wins.
    Channels: an id that already exists live is returned as-is; otherwise
    the snapshot's (name, kind, parent name) tuple is matched exactly.
    Anything unresolved comes back as None and callers drop it.
    """

    def __init__(self, guild, snapshot: Snapshot):
        self.guild = guild
        self.snapshot = snapshot
        self._role_map: Optional[Dict[str, int]] = None
        self._channel_meta: Optional[Dict[str, ChannelMeta]] = None

    # ── roles ─────────────────────────────────────────────────────────────────

    def role_id_map(self) -> Dict[str, int]:
        if self._role_map is not None:
            return self._role_map

        live = list(getattr(self.guild, "roles", None) or [])
        out: Dict[str, int] = {}
        for rec in self.snapshot.roles:
            if not rec.role_id:
                continue
            match = next(
                (r for r in live if r.name == rec.name and r.position == rec.position),
                None,
            )
            if match is None:
                match = next((r for r in live if r.name == rec.name), None)
            if match is not None:
                out[rec.role_id] = int(match.id)

        self._role_map = out
        return out

    def resolve_role(self, old_id) -> Optional[int]:
        if old_id is None:
            return None
        return self.role_id_map().get(str(old_id))

    def resolve_roles(self, old_ids: Iterable) -> List[int]:
        out = []
        for rid in old_ids or ():
            new_id = self.resolve_role(rid)
            if new_id is not None:
                out.append(new_id)
        return out

    # ── channels ──────────────────────────────────────────────────────────────

    def channel_lookup(self) -> Dict[str, ChannelMeta]:
        if self._channel_meta is not None:
            return self._channel_meta

        meta: Dict[str, ChannelMeta] = {}
        for cat in self.snapshot.channels.categories:
            if cat.channel_id:
                meta[cat.channel_id] = ChannelMeta(cat.name, ChannelKind.CATEGORY, None)
            for child in cat.children:
                if child.channel_id:
                    meta[child.channel_id] = ChannelMeta(child.name, child.kind, cat.name)
        for ch in self.snapshot.channels.others:
            if ch.channel_id:
                meta[ch.channel_id] = ChannelMeta(ch.name, ch.kind, None)

        self._channel_meta = meta
        return meta

    def resolve_channel(self, old_id) -> Optional[int]:
        if old_id is None:
            return None
        try:
            as_int = int(old_id)
        except (TypeError, ValueError):
            return None

        if self.guild.get_channel(as_int) is not None:
            return as_int

        meta = self.channel_lookup().get(str(old_id))
        if meta is None:
            return None

        for c in getattr(self.guild, "channels", None) or []:
            if c.name != meta.name or live_kind(c) is not meta.kind:
                continue
            parent = getattr(c, "category", None)
            if meta.parent:
                if parent is None or parent.name != meta.parent:
                    continue
            elif parent is not None:
                continue
            return int(c.id)
        return None

    def resolve_channels(self, old_ids: Iterable) -> List[int]:
        out = []
        for cid in old_ids or ():
            new_id = self.resolve_channel(cid)
            if new_id is not None:
                out.append(new_id)
        return out
