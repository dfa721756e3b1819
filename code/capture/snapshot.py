# =============================================================================
#  Guildvault
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================


from __future__ import annotations
import base64
import logging
import time
from datetime import datetime, timezone
from typing import Any, List, Optional

import discord

from capture.messages import MessageCapture
from common.common_helpers import http_client_and_route, resolve_options
from common.config import Config
from common.errors import PermissionDenied
from common.logctx import format_prefix
from common.models import (
    AfkRecord,
    BanRecord,
    CategoryRecord,
    ChannelRecord,
    ChannelTree,
    CommunityLinks,
    EmojiRecord,
    ForumChannelRecord,
    ForumTagRecord,
    MemberRoleRecord,
    OnboardingOptionRecord,
    OnboardingPromptRecord,
    OnboardingRecord,
    PermissionOverwriteRecord,
    ReactionEmojiRecord,
    RoleRecord,
    ScheduledEventRecord,
    Snapshot,
    StageChannelRecord,
    TextChannelRecord,
    ThreadRecord,
    VoiceChannelRecord,
    WidgetRecord,
    to_plain,
)
from common.serializer import stable_stringify
from restore.rate_limiter import RateLimitManager
from restore.retry import RetryExecutor

logger = logging.getLogger("capture.snapshot")

# Keys left out of the structural shape used for change detection
_SHAPE_DROP = {
    "created_timestamp",
    "messages",
    "threads",
    "bans",
    "members",
    "onboarding",
    "scheduled_events",
}


def _enum_int(val, default=0):
    if val is None:
        return default
    v = getattr(val, "value", val)
    try:
        return int(v)
    except Exception:
        return default


def _opt_id(obj) -> Optional[str]:
    oid = getattr(obj, "id", None)
    return str(oid) if oid is not None else None


def _rule_dict(rule) -> Optional[dict]:
    if rule is None:
        return None
    if isinstance(rule, dict):
        return dict(rule)
    to_dict = getattr(rule, "to_dict", None)
    return to_dict() if callable(to_dict) else None


def _strip(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: _strip(v)
            for k, v in value.items()
            if k not in _SHAPE_DROP
            and k != "id"
            and not k.endswith("_id")
            and not k.endswith("base64")
        }
    if isinstance(value, list):
        return [_strip(v) for v in value]
    return value


def structural_shape(snapshot: Snapshot) -> str:
    """
    Canonical text of everything that describes the guild's layout: ids,
    timestamps, history, rosters and inlined binaries are excluded.
    """
    return stable_stringify(_strip(to_plain(snapshot)))


class SnapshotBuilder:
    """
    Reads a live guild into an immutable Snapshot.

    Optional sections (bans, members, onboarding, scheduled events…) that
    cannot be read are left empty instead of failing the whole build.
    """

    def __init__(
        self,
        bot=None,
        config: Optional[Config] = None,
        retry: Optional[RetryExecutor] = None,
        pacing: Optional[RateLimitManager] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.bot = bot
        self.config = config
        self.retry = retry or RetryExecutor()
        self.pacing = pacing or RateLimitManager(
            config.pacing_delays() if config else None
        )
        self.messages = MessageCapture(self.retry, self.pacing)
        self.logger = logger or logging.getLogger("capture.snapshot")

    def _log(self, level: str, msg: str, *args) -> None:
        prefix = format_prefix()
        if level == "info":
            self.logger.info(prefix + msg, *args)
        elif level == "warning":
            self.logger.warning(prefix + msg, *args)
        elif level == "error":
            self.logger.error(prefix + msg, *args)
        else:
            self.logger.debug(prefix + msg, *args)

    def _options(self, options: Optional[dict]) -> dict:
        cfg = self.config or Config()
        return resolve_options(cfg.default_capture_options(), options)

    def _check_intents(self) -> None:
        intents = getattr(self.bot, "intents", None)
        if intents is not None and not getattr(intents, "guilds", False):
            raise PermissionDenied("The guilds intent is required to capture a guild")

    async def _read_asset(self, asset, what: str) -> Optional[str]:
        try:
            raw = await self.retry.run(asset.read, max_attempts=2, base_delay_ms=500, operation_name=what)
            return base64.b64encode(raw).decode("ascii")
        except Exception as e:
            self._log("debug", "[🖼️] Could not inline %s: %s", what, e)
            return None

    # ── public API ────────────────────────────────────────────────────────────

    async def build(self, guild, options: Optional[dict] = None) -> Snapshot:
        self._check_intents()
        opts = self._options(options)
        snap = await self._build(guild, opts, lightweight=False)
        self._log("info", "[📸] Captured %s", snap.summary())
        return snap

    async def build_if_changed(
        self, guild, options: Optional[dict], previous: Optional[Snapshot]
    ) -> Snapshot:
        """
        Return `previous` itself when the guild's structure has not changed
        since it was taken, else a fresh full Snapshot. The comparison uses a
        cache-only capture that reads no history and no threads.
        """
        self._check_intents()
        opts = self._options(options)
        if previous is None:
            return await self.build(guild, options)

        light = await self._build(guild, opts, lightweight=True)
        if structural_shape(light) == structural_shape(previous):
            self._log("debug", "[📸] No structural change since %s", previous.id)
            return previous

        self._log("info", "[📸] Structure changed since %s; capturing", previous.id)
        return await self.build(guild, options)

    # ── sections ──────────────────────────────────────────────────────────────

    async def _build(self, guild, opts: dict, *, lightweight: bool) -> Snapshot:
        skip = opts["do_not_backup"]
        inline = opts["save_images"] == "base64" and not lightweight

        snapshot_id = opts.get("backup_id") or str(
            discord.utils.time_snowflake(datetime.now(timezone.utc))
        )

        icon_url = splash_url = banner_url = None
        icon_b64 = splash_b64 = banner_b64 = None
        for attr in ("icon", "splash", "banner"):
            asset = getattr(guild, attr, None)
            if not asset:
                continue
            url = str(asset.url)
            b64 = await self._read_asset(asset, f"guild {attr}") if inline else None
            if attr == "icon":
                icon_url, icon_b64 = url, b64
            elif attr == "splash":
                splash_url, splash_b64 = url, b64
            else:
                banner_url, banner_b64 = url, b64

        afk_ch = getattr(guild, "afk_channel", None)
        widget_ch = getattr(guild, "widget_channel", None)

        roles = () if "roles" in skip else tuple(await self._roles(guild, inline))
        emojis = () if "emojis" in skip else tuple(await self._emojis(guild, inline))
        channels = (
            ChannelTree()
            if "channels" in skip
            else await self._channels(guild, opts, lightweight)
        )

        bans: tuple = ()
        members: tuple = ()
        onboarding = None
        events = None
        if not lightweight:
            if "bans" not in skip:
                bans = tuple(await self._bans(guild))
            if opts.get("backup_members"):
                members = tuple(await self._members(guild))
            if "onboarding" not in skip:
                onboarding = await self._onboarding(guild)
            if "scheduled_events" not in skip:
                events = await self._scheduled_events(guild, inline)

        return Snapshot(
            id=str(snapshot_id),
            guild_id=str(guild.id),
            name=guild.name,
            created_timestamp=int(time.time() * 1000),
            verification_level=_enum_int(getattr(guild, "verification_level", None)),
            explicit_content_filter=_enum_int(getattr(guild, "explicit_content_filter", None)),
            default_message_notifications=_enum_int(getattr(guild, "default_notifications", None)),
            afk=(
                AfkRecord(name=afk_ch.name, timeout=int(getattr(guild, "afk_timeout", 300) or 300))
                if afk_ch
                else None
            ),
            widget=WidgetRecord(
                enabled=bool(getattr(guild, "widget_enabled", False)),
                channel=widget_ch.name if widget_ch else None,
            ),
            icon_url=icon_url,
            icon_base64=icon_b64,
            splash_url=splash_url,
            splash_base64=splash_b64,
            banner_url=banner_url,
            banner_base64=banner_b64,
            roles=roles,
            channels=channels,
            emojis=emojis,
            bans=bans,
            members=members,
            onboarding=onboarding,
            scheduled_events=events,
            community=self._community(guild),
        )

    async def _roles(self, guild, inline: bool) -> List[RoleRecord]:
        out = []
        live = sorted(
            (r for r in guild.roles if not r.managed),
            key=lambda r: r.position,
            reverse=True,
        )
        for r in live:
            icon = getattr(r, "icon", None)
            color = getattr(r, "color", 0)
            out.append(
                RoleRecord(
                    name=r.name,
                    role_id=str(r.id),
                    color=int(getattr(color, "value", color) or 0),
                    hoist=bool(r.hoist),
                    permissions=str(r.permissions.value),
                    mentionable=bool(r.mentionable),
                    position=int(r.position),
                    is_everyone=bool(r.is_default()),
                    icon_url=str(icon.url) if icon else None,
                    icon_base64=(
                        await self._read_asset(icon, f"role icon {r.name}")
                        if icon and inline
                        else None
                    ),
                    unicode_emoji=getattr(r, "unicode_emoji", None),
                )
            )
        return out

    async def _emojis(self, guild, inline: bool) -> List[EmojiRecord]:
        out = []
        for e in guild.emojis:
            out.append(
                EmojiRecord(
                    name=e.name,
                    emoji_id=str(e.id),
                    url=str(e.url),
                    base64=await self._read_asset(e, f"emoji {e.name}") if inline else None,
                    animated=bool(getattr(e, "animated", False)),
                )
            )
        return out

    async def _bans(self, guild) -> List[BanRecord]:
        out = []
        try:
            async for ban in guild.bans(limit=None):
                out.append(BanRecord(user_id=str(ban.user.id), reason=ban.reason))
        except Exception as e:
            self._log("warning", "[⚠️] Could not read bans: %s", e)
            return []
        return out

    async def _members(self, guild) -> List[MemberRoleRecord]:
        out = []
        try:
            async for m in guild.fetch_members(limit=None):
                out.append(
                    MemberRoleRecord(
                        user_id=str(m.id),
                        username=getattr(m, "name", None),
                        roles=tuple(str(r.id) for r in m.roles if not r.is_default()),
                    )
                )
        except Exception as e:
            self._log("warning", "[⚠️] Could not read members: %s", e)
            return []
        return out

    def _overwrites(self, guild, ch) -> tuple:
        out = []
        for target, ow in (getattr(ch, "overwrites", None) or {}).items():
            role = guild.get_role(getattr(target, "id", 0))
            if role is None:
                continue
            allow, deny = ow.pair()
            out.append(
                PermissionOverwriteRecord(
                    role_name=role.name, allow=str(allow.value), deny=str(deny.value)
                )
            )
        return tuple(out)

    async def _archived_threads(self, ch) -> list:
        lister = getattr(ch, "archived_threads", None)
        if lister is None:
            return []

        async def _collect():
            return [t async for t in lister(limit=None)]

        try:
            return await self.retry.run(_collect, operation_name=f"archived threads #{ch.name}")
        except Exception as e:
            self._log("warning", "[⚠️] Could not list archived threads of #%s: %s", ch.name, e)
            return []

    async def _threads(self, ch, opts: dict) -> tuple:
        live = list(getattr(ch, "threads", None) or [])
        seen = {t.id for t in live}
        archived = [t for t in await self._archived_threads(ch) if t.id not in seen]

        out = []
        for t in live + archived:
            msgs = await self.messages.capture(
                t, opts["max_messages_per_channel"], opts["save_images"]
            )
            out.append(
                ThreadRecord(
                    name=t.name,
                    archived=bool(getattr(t, "archived", False)),
                    auto_archive_duration=int(getattr(t, "auto_archive_duration", 1440) or 1440),
                    locked=bool(getattr(t, "locked", False)),
                    rate_limit_per_user=int(getattr(t, "slowmode_delay", 0) or 0),
                    messages=msgs,
                )
            )
        return tuple(out)

    async def _channel(self, guild, ch, opts: dict, lightweight: bool) -> Optional[ChannelRecord]:
        parent = getattr(ch, "category", None)
        common = dict(
            name=ch.name,
            parent=parent.name if parent else None,
            permissions=self._overwrites(guild, ch),
            position=int(getattr(ch, "position", 0) or 0),
            channel_id=str(ch.id),
        )
        ctype = getattr(ch, "type", None)

        if ctype in (discord.ChannelType.text, discord.ChannelType.news):
            messages = ()
            threads = ()
            if not lightweight:
                try:
                    threads = await self._threads(ch, opts)
                    messages = await self.messages.capture(
                        ch, opts["max_messages_per_channel"], opts["save_images"]
                    )
                except Exception as e:
                    self._log("warning", "[⚠️] Could not read history of #%s: %s", ch.name, e)
            return TextChannelRecord(
                **common,
                topic=getattr(ch, "topic", None),
                nsfw=bool(getattr(ch, "nsfw", False)),
                rate_limit_per_user=int(getattr(ch, "slowmode_delay", 0) or 0),
                is_news=ctype == discord.ChannelType.news,
                messages=messages,
                threads=threads,
            )

        if ctype == discord.ChannelType.voice:
            return VoiceChannelRecord(
                **common,
                bitrate=int(getattr(ch, "bitrate", 64000) or 64000),
                user_limit=int(getattr(ch, "user_limit", 0) or 0),
            )

        if ctype == discord.ChannelType.stage_voice:
            return StageChannelRecord(
                **common,
                bitrate=int(getattr(ch, "bitrate", 64000) or 64000),
                user_limit=int(getattr(ch, "user_limit", 0) or 0),
                topic=getattr(ch, "topic", None),
            )

        if ctype == discord.ChannelType.forum:
            tags = []
            for t in getattr(ch, "available_tags", None) or []:
                em = getattr(t, "emoji", None)
                tags.append(
                    ForumTagRecord(
                        name=t.name,
                        moderated=bool(getattr(t, "moderated", False)),
                        emoji_id=_opt_id(em) if em else None,
                        emoji_name=getattr(em, "name", None) if em else None,
                    )
                )
            dre = getattr(ch, "default_reaction_emoji", None)
            threads = ()
            if not lightweight:
                try:
                    threads = await self._threads(ch, opts)
                except Exception as e:
                    self._log("warning", "[⚠️] Could not read posts of forum %s: %s", ch.name, e)
            return ForumChannelRecord(
                **common,
                topic=getattr(ch, "topic", None),
                nsfw=bool(getattr(ch, "nsfw", False)),
                rate_limit_per_user=int(getattr(ch, "slowmode_delay", 0) or 0),
                available_tags=tuple(tags),
                default_reaction_emoji=(
                    ReactionEmojiRecord(emoji_id=_opt_id(dre), emoji_name=getattr(dre, "name", None))
                    if dre
                    else None
                ),
                threads=threads,
            )

        return None

    async def _channels(self, guild, opts: dict, lightweight: bool) -> ChannelTree:
        categories = []
        for cat in sorted(guild.categories, key=lambda c: c.position):
            children = []
            for ch in sorted(cat.channels, key=lambda c: c.position):
                rec = await self._channel(guild, ch, opts, lightweight)
                if rec is not None:
                    children.append(rec)
            categories.append(
                CategoryRecord(
                    name=cat.name,
                    permissions=self._overwrites(guild, cat),
                    children=tuple(children),
                    position=int(getattr(cat, "position", 0) or 0),
                    channel_id=str(cat.id),
                )
            )

        others = []
        loose = [
            c
            for c in guild.channels
            if getattr(c, "category", None) is None
            and getattr(c, "type", None) != discord.ChannelType.category
        ]
        for ch in sorted(loose, key=lambda c: c.position):
            rec = await self._channel(guild, ch, opts, lightweight)
            if rec is not None:
                others.append(rec)

        return ChannelTree(categories=tuple(categories), others=tuple(others))

    async def _onboarding(self, guild) -> Optional[OnboardingRecord]:
        try:
            ob = await guild.onboarding()
        except Exception as e:
            self._log("debug", "[🧭] Onboarding unavailable: %s", e)
            return None

        try:
            prompts = []
            for p in getattr(ob, "prompts", None) or []:
                options = []
                for o in getattr(p, "options", None) or []:
                    em = getattr(o, "emoji", None)
                    options.append(
                        OnboardingOptionRecord(
                            title=getattr(o, "title", "") or "",
                            option_id=_opt_id(o),
                            description=getattr(o, "description", None),
                            emoji=str(em) if em else None,
                            channels=tuple(
                                str(c.id) for c in getattr(o, "channels", None) or []
                            ),
                            roles=tuple(str(r.id) for r in getattr(o, "roles", None) or []),
                        )
                    )
                prompts.append(
                    OnboardingPromptRecord(
                        title=getattr(p, "title", "") or "",
                        prompt_id=_opt_id(p),
                        single_select=bool(getattr(p, "single_select", False)),
                        required=bool(getattr(p, "required", False)),
                        in_onboarding=bool(getattr(p, "in_onboarding", True)),
                        type=_enum_int(getattr(p, "type", None)),
                        options=tuple(options),
                    )
                )
            return OnboardingRecord(
                enabled=bool(getattr(ob, "enabled", False)),
                mode=_enum_int(getattr(ob, "mode", None)),
                default_channels=tuple(
                    str(c.id) for c in getattr(ob, "default_channels", None) or []
                ),
                prompts=tuple(prompts),
            )
        except Exception as e:
            self._log("warning", "[⚠️] Could not read onboarding: %s", e)
            return None

    async def _recurrence_rules(self, guild) -> dict:
        """Event id -> raw recurrence rule, read straight from the REST payload."""
        http_client, Route = http_client_and_route(guild)
        if http_client is None:
            return {}
        try:
            data = await http_client.request(
                Route("GET", "/guilds/{guild_id}/scheduled-events", guild_id=guild.id)
            )
        except Exception as e:
            self._log("debug", "[📅] Recurrence rules unavailable: %s", e)
            return {}
        return {
            str(d.get("id")): d["recurrence_rule"]
            for d in data or []
            if isinstance(d, dict) and d.get("recurrence_rule")
        }

    async def _scheduled_events(self, guild, inline: bool) -> Optional[tuple]:
        try:
            events = await guild.fetch_scheduled_events()
        except Exception as e:
            self._log("debug", "[📅] Scheduled events unavailable: %s", e)
            return None

        rules = await self._recurrence_rules(guild)

        out = []
        try:
            for e in events:
                start = getattr(e, "start_time", None)
                end = getattr(e, "end_time", None)
                cover = getattr(e, "cover_image", None)
                rule = rules.get(_opt_id(e)) or getattr(e, "recurrence_rule", None)
                out.append(
                    ScheduledEventRecord(
                        name=e.name,
                        event_id=_opt_id(e),
                        description=getattr(e, "description", None),
                        scheduled_start_timestamp=int(start.timestamp() * 1000) if start else None,
                        scheduled_end_timestamp=int(end.timestamp() * 1000) if end else None,
                        privacy_level=_enum_int(getattr(e, "privacy_level", None), 2),
                        entity_type=_enum_int(getattr(e, "entity_type", None), 3),
                        channel_id=(
                            str(e.channel_id) if getattr(e, "channel_id", None) else None
                        ),
                        location=getattr(e, "location", None),
                        image_url=str(cover.url) if cover else None,
                        image_base64=(
                            await self._read_asset(cover, f"event cover {e.name}")
                            if cover and inline
                            else None
                        ),
                        recurrence_rule=_rule_dict(rule),
                    )
                )
        except Exception as e:
            self._log("warning", "[⚠️] Could not read scheduled events: %s", e)
            return None
        return tuple(out)

    def _community(self, guild) -> Optional[CommunityLinks]:
        rules = getattr(guild, "rules_channel", None)
        updates = getattr(guild, "public_updates_channel", None)
        if not rules and not updates:
            return None
        return CommunityLinks(
            rules_channel_id=_opt_id(rules) if rules else None,
            rules_channel_name=rules.name if rules else None,
            public_updates_channel_id=_opt_id(updates) if updates else None,
            public_updates_channel_name=updates.name if updates else None,
        )
