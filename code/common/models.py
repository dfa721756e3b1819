# =============================================================================
#  Guildvault
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

"""
Platform-neutral snapshot records.

A guild is captured into a Snapshot; the restore pipeline and the diff
engine consume it. Every id stored here is a source-side id: it is only
meaningful against the guild the snapshot was taken from and is treated as
a hint everywhere else.
"""

from __future__ import annotations
from dataclasses import dataclass, field, fields, is_dataclass
from enum import Enum
from typing import Any, Dict, Iterator, Optional, Tuple


class ChannelKind(str, Enum):
    CATEGORY = "category"
    TEXT = "text"
    VOICE = "voice"
    STAGE = "stage"
    FORUM = "forum"


TEXT_CAPABLE = (ChannelKind.TEXT, ChannelKind.FORUM)


def to_plain(obj: Any) -> Any:
    """Recursively turn records into JSON-compatible dicts/lists."""
    if is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: to_plain(getattr(obj, f.name)) for f in fields(obj)}
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (list, tuple)):
        return [to_plain(v) for v in obj]
    if isinstance(obj, dict):
        return {str(k): to_plain(v) for k, v in obj.items()}
    return obj


def _opt_str(v) -> Optional[str]:
    return str(v) if v is not None else None


# ── leaf records ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PermissionOverwriteRecord:
    role_name: str
    allow: str = "0"
    deny: str = "0"

    @classmethod
    def from_dict(cls, d: dict) -> "PermissionOverwriteRecord":
        return cls(
            role_name=d.get("role_name", ""),
            allow=str(d.get("allow", "0")),
            deny=str(d.get("deny", "0")),
        )


@dataclass(frozen=True)
class FileRecord:
    name: str
    attachment: str  # remote URL, or base64 when inlined

    @property
    def is_inline(self) -> bool:
        return not self.attachment.startswith("http")


@dataclass(frozen=True)
class MessageRecord:
    username: str
    avatar: Optional[str] = None
    content: str = ""
    embeds: Tuple[dict, ...] = ()
    files: Tuple[FileRecord, ...] = ()
    pinned: bool = False
    sent_at: Optional[str] = None

    def is_relayable(self) -> bool:
        return bool(self.content or self.embeds or self.files)

    @classmethod
    def from_dict(cls, d: dict) -> "MessageRecord":
        return cls(
            username=d.get("username") or "",
            avatar=d.get("avatar"),
            content=d.get("content") or "",
            embeds=tuple(dict(e) for e in d.get("embeds") or ()),
            files=tuple(
                FileRecord(name=f.get("name") or "file", attachment=f.get("attachment") or "")
                for f in d.get("files") or ()
            ),
            pinned=bool(d.get("pinned", False)),
            sent_at=d.get("sent_at"),
        )


@dataclass(frozen=True)
class ThreadRecord:
    name: str
    archived: bool = False
    auto_archive_duration: int = 1440
    locked: bool = False
    rate_limit_per_user: int = 0
    messages: Tuple[MessageRecord, ...] = ()

    @classmethod
    def from_dict(cls, d: dict) -> "ThreadRecord":
        return cls(
            name=d.get("name", ""),
            archived=bool(d.get("archived", False)),
            auto_archive_duration=int(d.get("auto_archive_duration") or 1440),
            locked=bool(d.get("locked", False)),
            rate_limit_per_user=int(d.get("rate_limit_per_user") or 0),
            messages=tuple(MessageRecord.from_dict(m) for m in d.get("messages") or ()),
        )


@dataclass(frozen=True)
class ForumTagRecord:
    name: str
    moderated: bool = False
    emoji_id: Optional[str] = None
    emoji_name: Optional[str] = None


@dataclass(frozen=True)
class ReactionEmojiRecord:
    emoji_id: Optional[str] = None
    emoji_name: Optional[str] = None


# ── channel tree (tagged variant on `kind`) ───────────────────────────────────


@dataclass(frozen=True)
class ChannelRecord:
    name: str
    kind: ChannelKind = ChannelKind.TEXT
    parent: Optional[str] = None  # category *name*, ids do not survive recreation
    permissions: Tuple[PermissionOverwriteRecord, ...] = ()
    position: int = 0
    channel_id: Optional[str] = None


@dataclass(frozen=True)
class TextChannelRecord(ChannelRecord):
    kind: ChannelKind = ChannelKind.TEXT
    topic: Optional[str] = None
    nsfw: bool = False
    rate_limit_per_user: int = 0
    is_news: bool = False
    messages: Tuple[MessageRecord, ...] = ()
    threads: Tuple[ThreadRecord, ...] = ()


@dataclass(frozen=True)
class VoiceChannelRecord(ChannelRecord):
    kind: ChannelKind = ChannelKind.VOICE
    bitrate: int = 64000
    user_limit: int = 0


@dataclass(frozen=True)
class StageChannelRecord(ChannelRecord):
    kind: ChannelKind = ChannelKind.STAGE
    bitrate: int = 64000
    user_limit: int = 0
    topic: Optional[str] = None


@dataclass(frozen=True)
class ForumChannelRecord(ChannelRecord):
    kind: ChannelKind = ChannelKind.FORUM
    topic: Optional[str] = None
    nsfw: bool = False
    rate_limit_per_user: int = 0
    available_tags: Tuple[ForumTagRecord, ...] = ()
    default_reaction_emoji: Optional[ReactionEmojiRecord] = None
    threads: Tuple[ThreadRecord, ...] = ()


@dataclass(frozen=True)
class CategoryRecord:
    name: str
    kind: ChannelKind = ChannelKind.CATEGORY
    permissions: Tuple[PermissionOverwriteRecord, ...] = ()
    children: Tuple[ChannelRecord, ...] = ()
    position: int = 0
    channel_id: Optional[str] = None


def channel_from_dict(d: dict) -> ChannelRecord:
    kind = ChannelKind(d.get("kind", ChannelKind.TEXT.value))
    common = dict(
        name=d.get("name", ""),
        parent=d.get("parent"),
        permissions=tuple(
            PermissionOverwriteRecord.from_dict(p) for p in d.get("permissions") or ()
        ),
        position=int(d.get("position") or 0),
        channel_id=_opt_str(d.get("channel_id")),
    )
    threads = tuple(ThreadRecord.from_dict(t) for t in d.get("threads") or ())

    if kind is ChannelKind.TEXT:
        return TextChannelRecord(
            **common,
            topic=d.get("topic"),
            nsfw=bool(d.get("nsfw", False)),
            rate_limit_per_user=int(d.get("rate_limit_per_user") or 0),
            is_news=bool(d.get("is_news", False)),
            messages=tuple(MessageRecord.from_dict(m) for m in d.get("messages") or ()),
            threads=threads,
        )
    if kind is ChannelKind.VOICE:
        return VoiceChannelRecord(
            **common,
            bitrate=int(d.get("bitrate") or 64000),
            user_limit=int(d.get("user_limit") or 0),
        )
    if kind is ChannelKind.STAGE:
        return StageChannelRecord(
            **common,
            bitrate=int(d.get("bitrate") or 64000),
            user_limit=int(d.get("user_limit") or 0),
            topic=d.get("topic"),
        )
    if kind is ChannelKind.FORUM:
        dre = d.get("default_reaction_emoji")
        return ForumChannelRecord(
            **common,
            topic=d.get("topic"),
            nsfw=bool(d.get("nsfw", False)),
            rate_limit_per_user=int(d.get("rate_limit_per_user") or 0),
            available_tags=tuple(
                ForumTagRecord(
                    name=t.get("name", ""),
                    moderated=bool(t.get("moderated", False)),
                    emoji_id=_opt_str(t.get("emoji_id")),
                    emoji_name=t.get("emoji_name"),
                )
                for t in d.get("available_tags") or ()
            ),
            default_reaction_emoji=(
                ReactionEmojiRecord(
                    emoji_id=_opt_str(dre.get("emoji_id")),
                    emoji_name=dre.get("emoji_name"),
                )
                if dre
                else None
            ),
            threads=threads,
        )
    raise ValueError(f"Channel record {d.get('name')!r} has non-channel kind {kind.value!r}")


@dataclass(frozen=True)
class ChannelTree:
    categories: Tuple[CategoryRecord, ...] = ()
    others: Tuple[ChannelRecord, ...] = ()

    def iter_channels(self) -> Iterator[Tuple[Optional[CategoryRecord], ChannelRecord]]:
        for cat in self.categories:
            for ch in cat.children:
                yield cat, ch
        for ch in self.others:
            yield None, ch

    @classmethod
    def from_dict(cls, d: dict) -> "ChannelTree":
        cats = []
        for c in d.get("categories") or ():
            cats.append(
                CategoryRecord(
                    name=c.get("name", ""),
                    permissions=tuple(
                        PermissionOverwriteRecord.from_dict(p)
                        for p in c.get("permissions") or ()
                    ),
                    children=tuple(channel_from_dict(ch) for ch in c.get("children") or ()),
                    position=int(c.get("position") or 0),
                    channel_id=_opt_str(c.get("channel_id")),
                )
            )
        return cls(
            categories=tuple(cats),
            others=tuple(channel_from_dict(ch) for ch in d.get("others") or ()),
        )


# ── guild-level records ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class RoleRecord:
    name: str
    role_id: Optional[str] = None
    color: int = 0
    hoist: bool = False
    permissions: str = "0"  # 64-bit unsigned bitfield as a decimal string
    mentionable: bool = False
    position: int = 0
    is_everyone: bool = False
    icon_url: Optional[str] = None
    icon_base64: Optional[str] = None
    unicode_emoji: Optional[str] = None


@dataclass(frozen=True)
class EmojiRecord:
    name: str
    emoji_id: Optional[str] = None
    url: Optional[str] = None
    base64: Optional[str] = None
    animated: bool = False


@dataclass(frozen=True)
class BanRecord:
    user_id: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class MemberRoleRecord:
    user_id: str
    username: Optional[str] = None
    roles: Tuple[str, ...] = ()


@dataclass(frozen=True)
class OnboardingOptionRecord:
    title: str
    option_id: Optional[str] = None
    description: Optional[str] = None
    emoji: Optional[str] = None
    channels: Tuple[str, ...] = ()
    roles: Tuple[str, ...] = ()


@dataclass(frozen=True)
class OnboardingPromptRecord:
    title: str
    prompt_id: Optional[str] = None
    single_select: bool = False
    required: bool = False
    in_onboarding: bool = True
    type: int = 0
    options: Tuple[OnboardingOptionRecord, ...] = ()


@dataclass(frozen=True)
class OnboardingRecord:
    enabled: bool = False
    mode: int = 0
    default_channels: Tuple[str, ...] = ()
    prompts: Tuple[OnboardingPromptRecord, ...] = ()

    @classmethod
    def from_dict(cls, d: dict) -> "OnboardingRecord":
        return cls(
            enabled=bool(d.get("enabled", False)),
            mode=int(d.get("mode") or 0),
            default_channels=tuple(str(c) for c in d.get("default_channels") or ()),
            prompts=tuple(
                OnboardingPromptRecord(
                    title=p.get("title", ""),
                    prompt_id=_opt_str(p.get("prompt_id")),
                    single_select=bool(p.get("single_select", False)),
                    required=bool(p.get("required", False)),
                    in_onboarding=bool(p.get("in_onboarding", True)),
                    type=int(p.get("type") or 0),
                    options=tuple(
                        OnboardingOptionRecord(
                            title=o.get("title", ""),
                            option_id=_opt_str(o.get("option_id")),
                            description=o.get("description"),
                            emoji=o.get("emoji"),
                            channels=tuple(str(c) for c in o.get("channels") or ()),
                            roles=tuple(str(r) for r in o.get("roles") or ()),
                        )
                        for o in p.get("options") or ()
                    ),
                )
                for p in d.get("prompts") or ()
            ),
        )


@dataclass(frozen=True)
class ScheduledEventRecord:
    name: str
    event_id: Optional[str] = None
    description: Optional[str] = None
    scheduled_start_timestamp: Optional[int] = None  # ms since epoch
    scheduled_end_timestamp: Optional[int] = None
    privacy_level: int = 2
    entity_type: int = 3
    channel_id: Optional[str] = None
    location: Optional[str] = None
    image_url: Optional[str] = None
    image_base64: Optional[str] = None
    recurrence_rule: Optional[dict] = None


@dataclass(frozen=True)
class CommunityLinks:
    rules_channel_id: Optional[str] = None
    rules_channel_name: Optional[str] = None
    public_updates_channel_id: Optional[str] = None
    public_updates_channel_name: Optional[str] = None


@dataclass(frozen=True)
class AfkRecord:
    name: str
    timeout: int = 300


@dataclass(frozen=True)
class WidgetRecord:
    enabled: bool = False
    channel: Optional[str] = None


@dataclass(frozen=True)
class Snapshot:
    """
    A complete, immutable description of a guild's structure.
    Produced by SnapshotBuilder, consumed by the restore pipeline and the diff engine.
    """

    id: str
    guild_id: str
    name: str
    created_timestamp: int = 0  # ms since epoch
    verification_level: int = 0
    explicit_content_filter: int = 0
    default_message_notifications: int = 0
    afk: Optional[AfkRecord] = None
    widget: WidgetRecord = field(default_factory=WidgetRecord)
    icon_url: Optional[str] = None
    icon_base64: Optional[str] = None
    splash_url: Optional[str] = None
    splash_base64: Optional[str] = None
    banner_url: Optional[str] = None
    banner_base64: Optional[str] = None
    roles: Tuple[RoleRecord, ...] = ()
    channels: ChannelTree = field(default_factory=ChannelTree)
    emojis: Tuple[EmojiRecord, ...] = ()
    bans: Tuple[BanRecord, ...] = ()
    members: Tuple[MemberRoleRecord, ...] = ()
    onboarding: Optional[OnboardingRecord] = None
    scheduled_events: Optional[Tuple[ScheduledEventRecord, ...]] = None
    community: Optional[CommunityLinks] = None

    def summary(self) -> str:
        n_channels = len(self.channels.others) + sum(
            len(c.children) for c in self.channels.categories
        )
        return (
            f"'{self.name}' ({self.id}): "
            f"{len(self.roles)} roles, "
            f"{len(self.channels.categories)} categories, "
            f"{n_channels} channels, "
            f"{len(self.emojis)} emojis, "
            f"{len(self.bans)} bans"
        )

    def to_dict(self) -> Dict[str, Any]:
        return to_plain(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Snapshot":
        afk = d.get("afk")
        widget = d.get("widget") or {}
        community = d.get("community")
        onboarding = d.get("onboarding")
        events = d.get("scheduled_events")

        return cls(
            id=str(d["id"]),
            guild_id=str(d.get("guild_id") or ""),
            name=d.get("name", ""),
            created_timestamp=int(d.get("created_timestamp") or 0),
            verification_level=int(d.get("verification_level") or 0),
            explicit_content_filter=int(d.get("explicit_content_filter") or 0),
            default_message_notifications=int(d.get("default_message_notifications") or 0),
            afk=AfkRecord(name=afk["name"], timeout=int(afk.get("timeout") or 300)) if afk else None,
            widget=WidgetRecord(
                enabled=bool(widget.get("enabled", False)), channel=widget.get("channel")
            ),
            icon_url=d.get("icon_url"),
            icon_base64=d.get("icon_base64"),
            splash_url=d.get("splash_url"),
            splash_base64=d.get("splash_base64"),
            banner_url=d.get("banner_url"),
            banner_base64=d.get("banner_base64"),
            roles=tuple(
                RoleRecord(
                    name=r.get("name", ""),
                    role_id=_opt_str(r.get("role_id")),
                    color=int(r.get("color") or 0),
                    hoist=bool(r.get("hoist", False)),
                    permissions=str(r.get("permissions", "0")),
                    mentionable=bool(r.get("mentionable", False)),
                    position=int(r.get("position") or 0),
                    is_everyone=bool(r.get("is_everyone", False)),
                    icon_url=r.get("icon_url"),
                    icon_base64=r.get("icon_base64"),
                    unicode_emoji=r.get("unicode_emoji"),
                )
                for r in d.get("roles") or ()
            ),
            channels=ChannelTree.from_dict(d.get("channels") or {}),
            emojis=tuple(
                EmojiRecord(
                    name=e.get("name", ""),
                    emoji_id=_opt_str(e.get("emoji_id")),
                    url=e.get("url"),
                    base64=e.get("base64"),
                    animated=bool(e.get("animated", False)),
                )
                for e in d.get("emojis") or ()
            ),
            bans=tuple(
                BanRecord(user_id=str(b["user_id"]), reason=b.get("reason"))
                for b in d.get("bans") or ()
            ),
            members=tuple(
                MemberRoleRecord(
                    user_id=str(m["user_id"]),
                    username=m.get("username"),
                    roles=tuple(str(r) for r in m.get("roles") or ()),
                )
                for m in d.get("members") or ()
            ),
            onboarding=OnboardingRecord.from_dict(onboarding) if onboarding else None,
            scheduled_events=(
                tuple(
                    ScheduledEventRecord(
                        name=e.get("name", ""),
                        event_id=_opt_str(e.get("event_id")),
                        description=e.get("description"),
                        scheduled_start_timestamp=e.get("scheduled_start_timestamp"),
                        scheduled_end_timestamp=e.get("scheduled_end_timestamp"),
                        privacy_level=int(e.get("privacy_level") or 2),
                        entity_type=int(e.get("entity_type") or 3),
                        channel_id=_opt_str(e.get("channel_id")),
                        location=e.get("location"),
                        image_url=e.get("image_url"),
                        image_base64=e.get("image_base64"),
                        recurrence_rule=e.get("recurrence_rule"),
                    )
                    for e in events
                )
                if events is not None
                else None
            ),
            community=CommunityLinks(**community) if community else None,
        )
