# =============================================================================
#  Guildvault
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================


from __future__ import annotations
import asyncio, logging, discord
from typing import Dict, List, Optional, Tuple

from common.logctx import format_prefix
from common.models import (
    CategoryRecord,
    ChannelKind,
    ChannelRecord,
    ForumChannelRecord,
    PermissionOverwriteRecord,
    StageChannelRecord,
    TextChannelRecord,
    ThreadRecord,
    VoiceChannelRecord,
)
from restore.relay import MessageRelay, select_messages
from restore.report import RestoreContext

logger = logging.getLogger("restore.channels")

MAX_BITRATE_PER_TIER: Dict[int, int] = {
    0: 64000,
    1: 128000,
    2: 256000,
    3: 384000,
}

THREAD_ARCHIVE_DURATIONS = (60, 1440, 4320, 10080)


def clamp_bitrate(bitrate: int, premium_tier: int) -> int:
    """
    Step `bitrate` down through the tier caps until it fits under the
    ceiling of `premium_tier`.
    """
    caps = sorted(MAX_BITRATE_PER_TIER.values())
    ceiling = MAX_BITRATE_PER_TIER.get(int(premium_tier or 0), caps[0])
    bitrate = int(bitrate)
    while bitrate > ceiling:
        lower = [c for c in caps if c < bitrate]
        bitrate = lower[-1] if lower else caps[0]
    return bitrate


def _archive_duration(value: int) -> int:
    v = int(value or 1440)
    return v if v in THREAD_ARCHIVE_DURATIONS else 1440


class ChannelManager:
    """
    Recreates the channel tree: categories in snapshot order, each category's
    children concurrently, then uncategorized channels. Text and forum
    channels get their threads and messages replayed afterwards.
    """

    def __init__(self, ctx: RestoreContext, relay: Optional[MessageRelay] = None):
        self.ctx = ctx
        self.relay = relay or MessageRelay(ctx)

    def _log(self, level: str, msg: str, *args) -> None:
        prefix = format_prefix()
        if level == "info":
            logger.info(prefix + msg, *args)
        elif level == "warning":
            logger.warning(prefix + msg, *args)
        elif level == "error":
            logger.error(prefix + msg, *args)
        else:
            logger.debug(prefix + msg, *args)

    # ── helpers ───────────────────────────────────────────────────────────────

    def _overwrites(self, perms: Tuple[PermissionOverwriteRecord, ...]) -> dict:
        """Role-name overwrites mapped onto live roles; unknown roles are dropped."""
        out = {}
        for p in perms:
            role = discord.utils.get(self.ctx.guild.roles, name=p.role_name)
            if role is None:
                continue
            out[role] = discord.PermissionOverwrite.from_pair(
                discord.Permissions(int(p.allow)), discord.Permissions(int(p.deny))
            )
        return out

    def _community_match(self, rec: ChannelRecord) -> Optional[object]:
        """The live rules / public-updates channel this record stands for, if any."""
        links = self.ctx.snapshot.community
        if links is None:
            return None
        guild = self.ctx.guild

        def _is(cid, cname) -> bool:
            if cid and rec.channel_id == cid:
                return True
            return bool(cname) and rec.name == cname

        if _is(links.rules_channel_id, links.rules_channel_name):
            return getattr(guild, "rules_channel", None)
        if _is(links.public_updates_channel_id, links.public_updates_channel_name):
            return getattr(guild, "public_updates_channel", None)
        return None

    # ── creation per kind ─────────────────────────────────────────────────────

    async def _create(self, rec: ChannelRecord, category) -> object:
        guild = self.ctx.guild
        features = guild.features
        base = dict(
            name=rec.name,
            category=category,
            overwrites=self._overwrites(rec.permissions),
            position=rec.position,
            reason="Restored from backup",
        )

        if rec.kind is ChannelKind.TEXT:
            assert isinstance(rec, TextChannelRecord)
            return await self.ctx.retry.run(
                lambda: guild.create_text_channel(
                    topic=rec.topic,
                    nsfw=rec.nsfw,
                    slowmode_delay=rec.rate_limit_per_user,
                    news=bool(rec.is_news and "NEWS" in features),
                    **base,
                ),
                operation_name=f"create #{rec.name}",
            )

        if rec.kind is ChannelKind.VOICE:
            assert isinstance(rec, VoiceChannelRecord)
            return await self.ctx.retry.run(
                lambda: guild.create_voice_channel(
                    bitrate=clamp_bitrate(rec.bitrate, guild.premium_tier),
                    user_limit=rec.user_limit,
                    **base,
                ),
                operation_name=f"create voice {rec.name}",
            )

        if rec.kind is ChannelKind.STAGE:
            assert isinstance(rec, StageChannelRecord)
            bitrate = clamp_bitrate(rec.bitrate, guild.premium_tier)
            if "COMMUNITY" not in features:
                return await self.ctx.retry.run(
                    lambda: guild.create_voice_channel(
                        bitrate=bitrate, user_limit=rec.user_limit, **base
                    ),
                    operation_name=f"create voice {rec.name}",
                )
            stage = await self.ctx.retry.run(
                lambda: guild.create_stage_channel(
                    bitrate=bitrate, user_limit=rec.user_limit, **base
                ),
                operation_name=f"create stage {rec.name}",
            )
            if rec.topic:
                try:
                    await stage.edit(topic=rec.topic)
                except Exception as e:
                    self._log("debug", "[🎤] Stage topic for %s not applied: %s", rec.name, e)
            return stage

        if rec.kind is ChannelKind.FORUM:
            assert isinstance(rec, ForumChannelRecord)
            tags = [
                discord.ForumTag(
                    name=t.name,
                    moderated=t.moderated,
                    emoji=(
                        discord.PartialEmoji(
                            name=t.emoji_name or "",
                            id=int(t.emoji_id) if t.emoji_id else None,
                        )
                        if (t.emoji_id or t.emoji_name)
                        else None
                    ),
                )
                for t in rec.available_tags
            ]
            dre = rec.default_reaction_emoji
            kwargs = dict(base)
            if tags:
                kwargs["available_tags"] = tags
            if dre and (dre.emoji_id or dre.emoji_name):
                kwargs["default_reaction_emoji"] = discord.PartialEmoji(
                    name=dre.emoji_name or "",
                    id=int(dre.emoji_id) if dre.emoji_id else None,
                )
            return await self.ctx.retry.run(
                lambda: guild.create_forum(
                    topic=rec.topic,
                    nsfw=rec.nsfw,
                    slowmode_delay=rec.rate_limit_per_user,
                    **kwargs,
                ),
                operation_name=f"create forum {rec.name}",
            )

        raise ValueError(f"Unsupported channel kind {rec.kind!r} for {rec.name!r}")

    async def _apply_existing(self, channel, rec: ChannelRecord, category) -> None:
        fields = dict(
            name=rec.name,
            overwrites=self._overwrites(rec.permissions),
            category=category,
            reason="Restored from backup",
        )
        if isinstance(rec, TextChannelRecord):
            fields.update(
                topic=rec.topic, nsfw=rec.nsfw, slowmode_delay=rec.rate_limit_per_user
            )
        await self.ctx.retry.run(
            lambda: channel.edit(**fields), operation_name=f"edit #{rec.name}"
        )

    # ── threads & messages ────────────────────────────────────────────────────

    async def _text_content(self, channel, rec: TextChannelRecord) -> None:
        await self.relay.replay(channel, rec.messages)
        for t in rec.threads:
            try:
                thread = await self.ctx.retry.run(
                    lambda: channel.create_thread(
                        name=t.name,
                        auto_archive_duration=_archive_duration(t.auto_archive_duration),
                        type=discord.ChannelType.public_thread,
                    ),
                    operation_name=f"thread {t.name}",
                )
                self.ctx.report.ok("threads", f"#{rec.name}/{t.name}")
                await self.relay.replay(channel, t.messages, thread=thread)
            except Exception as e:
                self._log("warning", "[⚠️] Failed restoring thread %s in #%s: %s", t.name, rec.name, e)
                self.ctx.report.skip("threads", f"#{rec.name}/{t.name}", e)

    async def _forum_post(self, forum, rec: ForumChannelRecord, t: ThreadRecord) -> None:
        chosen = select_messages(
            t.messages, self.ctx.options.get("max_messages_per_channel", 10)
        )
        opening = chosen[0] if chosen else None

        kwargs = dict(
            name=t.name,
            auto_archive_duration=_archive_duration(t.auto_archive_duration),
            content=(opening.content[:2000] if opening and opening.content else t.name),
        )
        if opening and opening.embeds:
            kwargs["embeds"] = [discord.Embed.from_dict(e) for e in opening.embeds[:10]]

        created = await self.ctx.retry.run(
            lambda: forum.create_thread(**kwargs),
            operation_name=f"forum post {t.name}",
        )
        thread = getattr(created, "thread", created)
        self.ctx.report.ok("threads", f"{rec.name}/{t.name}")

        if len(chosen) > 1:
            await self.relay.replay(forum, chosen[1:], thread=thread, presorted=True)

    async def _forum_content(self, forum, rec: ForumChannelRecord) -> None:
        for t in rec.threads:
            try:
                await self._forum_post(forum, rec, t)
            except Exception as e:
                self._log("warning", "[⚠️] Failed restoring post %s in %s: %s", t.name, rec.name, e)
                self.ctx.report.skip("threads", f"{rec.name}/{t.name}", e)

    # ── tree ──────────────────────────────────────────────────────────────────

    async def _restore_one(self, rec: ChannelRecord, category) -> Optional[object]:
        try:
            existing = self._community_match(rec)
            if existing is not None:
                await self._apply_existing(existing, rec, category)
                channel = existing
                self._log("debug", "[📁] Updated existing community channel #%s", rec.name)
            else:
                channel = await self._create(rec, category)
                self._log("debug", "[📁] Created %s channel %s", rec.kind.value, rec.name)
            self.ctx.report.ok("channels", rec.name)
        except Exception as e:
            self._log("warning", "[⚠️] Failed creating channel %s: %s", rec.name, e)
            self.ctx.report.skip("channels", rec.name, e)
            return None

        if isinstance(rec, TextChannelRecord):
            await self._text_content(channel, rec)
        elif isinstance(rec, ForumChannelRecord):
            await self._forum_content(channel, rec)
        return channel

    async def _restore_category(self, rec: CategoryRecord):
        guild = self.ctx.guild
        try:
            category = await self.ctx.retry.run(
                lambda: guild.create_category(
                    name=rec.name,
                    overwrites=self._overwrites(rec.permissions),
                    position=rec.position,
                    reason="Restored from backup",
                ),
                max_attempts=3,
                base_delay_ms=2000,
                operation_name=f"create category {rec.name}",
            )
            self.ctx.report.ok("channels", rec.name)
        except Exception as e:
            self._log("warning", "[⚠️] Failed creating category %s: %s", rec.name, e)
            self.ctx.report.skip("channels", rec.name, e)
            category = None
        return category

    async def restore_channels(self) -> List[object]:
        created: List[object] = []
        tree = self.ctx.snapshot.channels

        for cat_rec in tree.categories:
            category = await self._restore_category(cat_rec)
            if category is not None:
                created.append(category)
            children = await asyncio.gather(
                *(self._restore_one(ch, category) for ch in cat_rec.children)
            )
            created.extend(c for c in children if c is not None)

        for rec in tree.others:
            ch = await self._restore_one(rec, None)
            if ch is not None:
                created.append(ch)

        self._log(
            "info",
            "[📁] Channel restore complete: %d created/updated, %d skipped",
            len(created),
            len(self.ctx.report.skipped("channels")),
        )
        return created
