# =============================================================================
#  Guildvault
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Union

from common.models import (
    BanRecord,
    CategoryRecord,
    ChannelRecord,
    EmojiRecord,
    MemberRoleRecord,
    RoleRecord,
    Snapshot,
)
from common.errors import NotFound
from common.serializer import stable_stringify
from common.logctx import format_prefix

logger = logging.getLogger("common.diff")


@dataclass
class DiffSection:
    """Keys only in "to" are added, only in "from" removed, in both but unequal changed."""

    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    changed: List[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.added or self.removed or self.changed)


@dataclass
class BackupDiff:
    from_id: str = ""
    to_id: str = ""
    created_from: int = 0  # ms since epoch
    created_to: int = 0
    config_changed: bool = False
    onboarding_changed: bool = False
    roles: DiffSection = field(default_factory=DiffSection)
    channels: DiffSection = field(default_factory=DiffSection)
    emojis: DiffSection = field(default_factory=DiffSection)
    bans: DiffSection = field(default_factory=DiffSection)
    members: DiffSection = field(default_factory=DiffSection)

    @property
    def unchanged(self) -> bool:
        return (
            not self.config_changed
            and not self.onboarding_changed
            and all(
                s.empty
                for s in (self.roles, self.channels, self.emojis, self.bans, self.members)
            )
        )

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)


# ── key functions ─────────────────────────────────────────────────────────────


def role_key(r: RoleRecord) -> str:
    return r.role_id or r.name


def emoji_key(e: EmojiRecord) -> str:
    return e.name or (e.emoji_id or "")


def ban_key(b: BanRecord) -> str:
    return b.user_id


def member_key(m: MemberRoleRecord) -> str:
    return m.user_id


def channel_key(c: Union[ChannelRecord, CategoryRecord]) -> str:
    if c.channel_id:
        return c.channel_id
    key = f"{c.kind.value}:{c.name}"
    parent = getattr(c, "parent", None)
    if parent:
        key += f":{parent}"
    return key


def _flatten_channels(s: Snapshot) -> List[Any]:
    out: List[Any] = []
    for cat in s.channels.categories:
        # a child change must not mark its category changed
        out.append(dataclasses.replace(cat, children=()))
        out.extend(cat.children)
    out.extend(s.channels.others)
    return out


def diff_section(
    before: Iterable[Any], after: Iterable[Any], key: Callable[[Any], str]
) -> DiffSection:
    a: Dict[str, Any] = {key(x): x for x in before}
    b: Dict[str, Any] = {key(x): x for x in after}

    sec = DiffSection()
    for k, rec in b.items():
        if k not in a:
            sec.added.append(k)
        elif stable_stringify(a[k]) != stable_stringify(rec):
            sec.changed.append(k)
    for k in a:
        if k not in b:
            sec.removed.append(k)
    return sec


def config_shape(s: Snapshot) -> dict:
    """Guild configuration with ids, timestamps and roster sections left out."""
    community = s.community
    return {
        "name": s.name,
        "verification_level": s.verification_level,
        "explicit_content_filter": s.explicit_content_filter,
        "default_message_notifications": s.default_message_notifications,
        "afk": s.afk,
        "widget": s.widget,
        "icon_url": s.icon_url,
        "splash_url": s.splash_url,
        "banner_url": s.banner_url,
        "rules_channel": community.rules_channel_name if community else None,
        "public_updates_channel": (
            community.public_updates_channel_name if community else None
        ),
    }


def diff_snapshots(before: Snapshot, after: Snapshot) -> BackupDiff:
    out = BackupDiff(
        from_id=before.id,
        to_id=after.id,
        created_from=before.created_timestamp,
        created_to=after.created_timestamp,
        config_changed=stable_stringify(config_shape(before))
        != stable_stringify(config_shape(after)),
        onboarding_changed=stable_stringify(before.onboarding)
        != stable_stringify(after.onboarding),
        roles=diff_section(before.roles, after.roles, role_key),
        channels=diff_section(
            _flatten_channels(before), _flatten_channels(after), channel_key
        ),
        emojis=diff_section(before.emojis, after.emojis, emoji_key),
        bans=diff_section(before.bans, after.bans, ban_key),
        members=diff_section(before.members, after.members, member_key),
    )
    logger.debug(
        "%s[🔍] Diff %s → %s: config=%s onboarding=%s roles=%d/%d/%d channels=%d/%d/%d",
        format_prefix(),
        before.id,
        after.id,
        out.config_changed,
        out.onboarding_changed,
        len(out.roles.added),
        len(out.roles.removed),
        len(out.roles.changed),
        len(out.channels.added),
        len(out.channels.removed),
        len(out.channels.changed),
    )
    return out


class DiffEngine:
    """
    Resolves each side through the snapshot store when given an id, then
    compares the two snapshots section by section.
    """

    def __init__(self, store=None):
        self.store = store

    async def _resolve(self, snapshot_or_id: Union[Snapshot, str]) -> Snapshot:
        if isinstance(snapshot_or_id, Snapshot):
            return snapshot_or_id
        if self.store is None:
            raise NotFound(f"No snapshot store to resolve {snapshot_or_id!r}")
        return await self.store.get(str(snapshot_or_id))

    async def diff(
        self,
        before: Union[Snapshot, str],
        after: Union[Snapshot, str],
    ) -> BackupDiff:
        a = await self._resolve(before)
        b = await self._resolve(after)
        return diff_snapshots(a, b)
