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
from discord.enums import try_enum

from common.logctx import format_prefix
from restore.rate_limiter import ActionType
from restore.report import RestoreContext

logger = logging.getLogger("restore.guild")

DEFAULT_BAN_REASON = "Restored from backup"
DEFAULT_AFK_TIMEOUT = 300


def _find_channel(guild, name: str, ctype=None):
    for ch in guild.channels:
        if ch.name == name and (ctype is None or ch.type == ctype):
            return ch
    return None


class GuildSettingsManager:
    """
    Guild-wide state: wiping a target before a restore, the top-level
    configuration, AFK, widget and the ban list.
    """

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

    async def _attempt(self, ctx: RestoreContext, stage: str, item: str, coro) -> bool:
        try:
            await coro
            ctx.report.ok(stage, item)
            return True
        except Exception as e:
            self._log("warning", "[⚠️] %s: could not apply %s: %s", stage, item, e)
            ctx.report.skip(stage, item, e)
            return False

    # ── clear ─────────────────────────────────────────────────────────────────

    async def clear(self, ctx: RestoreContext) -> None:
        guild = ctx.guild
        stage = "clear"

        for role in list(guild.roles):
            if role.managed or role.is_default() or not role.is_assignable():
                continue
            await self._attempt(ctx, stage, f"role {role.name}", role.delete())

        for ch in list(guild.channels):
            await self._attempt(ctx, stage, f"channel {ch.name}", ch.delete())

        for emoji in list(guild.emojis):
            await self._attempt(ctx, stage, f"emoji {emoji.name}", emoji.delete())

        try:
            hooks = await guild.webhooks()
        except Exception as e:
            self._log("debug", "[🧹] Could not list webhooks: %s", e)
            hooks = []
        for wh in hooks:
            await self._attempt(ctx, stage, f"webhook {wh.name}", wh.delete())

        try:
            bans = [b async for b in guild.bans(limit=None)]
        except Exception as e:
            self._log("debug", "[🧹] Could not list bans: %s", e)
            bans = []
        for ban in bans:
            await self._attempt(ctx, stage, f"ban {ban.user.id}", guild.unban(ban.user))

        resets = dict(
            afk_channel=None,
            afk_timeout=DEFAULT_AFK_TIMEOUT,
            icon=None,
            default_notifications=discord.NotificationLevel.only_mentions,
            widget_enabled=False,
            widget_channel=None,
            system_channel=None,
            system_channel_flags=discord.SystemChannelFlags(
                join_notifications=False,
                premium_subscriptions=False,
                guild_reminder_notifications=False,
            ),
        )
        if "COMMUNITY" not in guild.features:
            resets["explicit_content_filter"] = discord.ContentFilter.disabled
            resets["verification_level"] = discord.VerificationLevel.none

        await self._attempt(ctx, stage, "settings", guild.edit(**resets))
        # banner and splash need boost features; failures are expected
        await self._attempt(ctx, stage, "banner", guild.edit(banner=None))
        await self._attempt(ctx, stage, "splash", guild.edit(splash=None))

        self._log("info", "[🧹] Cleared guild: %s", ctx.report.summary())

    # ── config ────────────────────────────────────────────────────────────────

    async def apply_config(self, ctx: RestoreContext) -> None:
        guild, snap = ctx.guild, ctx.snapshot
        stage = "config"
        jobs = []

        async def _edit(item: str, **fields):
            await ctx.retry.run(lambda: guild.edit(**fields), operation_name=f"config {item}")

        async def _edit_image(item: str, b64, url):
            data = await ctx.media(b64, url)
            await _edit(item, **{item: data})

        if snap.name:
            jobs.append(("name", _edit("name", name=snap.name)))
        if snap.icon_base64 or snap.icon_url:
            jobs.append(("icon", _edit_image("icon", snap.icon_base64, snap.icon_url)))
        if snap.splash_base64 or snap.splash_url:
            jobs.append(("splash", _edit_image("splash", snap.splash_base64, snap.splash_url)))
        if snap.banner_base64 or snap.banner_url:
            jobs.append(("banner", _edit_image("banner", snap.banner_base64, snap.banner_url)))
        if snap.verification_level:
            jobs.append(
                (
                    "verification_level",
                    _edit(
                        "verification_level",
                        verification_level=try_enum(discord.VerificationLevel, snap.verification_level),
                    ),
                )
            )
        if snap.default_message_notifications:
            jobs.append(
                (
                    "default_notifications",
                    _edit(
                        "default_notifications",
                        default_notifications=try_enum(
                            discord.NotificationLevel, snap.default_message_notifications
                        ),
                    ),
                )
            )
        if snap.explicit_content_filter and "COMMUNITY" in guild.features:
            jobs.append(
                (
                    "explicit_content_filter",
                    _edit(
                        "explicit_content_filter",
                        explicit_content_filter=try_enum(
                            discord.ContentFilter, snap.explicit_content_filter
                        ),
                    ),
                )
            )

        results = await asyncio.gather(*(j for _, j in jobs), return_exceptions=True)
        for (item, _), res in zip(jobs, results):
            if isinstance(res, BaseException):
                self._log("warning", "[⚠️] config: could not apply %s: %s", item, res)
                ctx.report.skip(stage, item, res)
            else:
                ctx.report.ok(stage, item)

        self._log("info", "[⚙️] Applied guild configuration (%d fields)", len(jobs))

    # ── afk / widget ──────────────────────────────────────────────────────────

    async def apply_afk(self, ctx: RestoreContext) -> None:
        afk = ctx.snapshot.afk
        if not afk:
            return
        ch = _find_channel(ctx.guild, afk.name, discord.ChannelType.voice)
        await ctx.retry.run(
            lambda: ctx.guild.edit(afk_channel=ch, afk_timeout=int(afk.timeout)),
            operation_name="afk",
        )
        ctx.report.ok("afk", afk.name)
        self._log("info", "[💤] AFK channel set to %s (%ss)", afk.name, afk.timeout)

    async def apply_widget(self, ctx: RestoreContext) -> None:
        widget = ctx.snapshot.widget
        if not widget.channel:
            return
        ch = _find_channel(ctx.guild, widget.channel)
        await ctx.retry.run(
            lambda: ctx.guild.edit(widget_enabled=widget.enabled, widget_channel=ch),
            operation_name="widget",
        )
        ctx.report.ok("widget", widget.channel)

    # ── bans ──────────────────────────────────────────────────────────────────

    async def restore_bans(self, ctx: RestoreContext) -> None:
        banned = 0
        for rec in ctx.snapshot.bans:
            try:
                await ctx.retry.run(
                    lambda: ctx.guild.ban(
                        discord.Object(id=int(rec.user_id)),
                        reason=rec.reason or DEFAULT_BAN_REASON,
                    ),
                    operation_name=f"ban {rec.user_id}",
                )
                ctx.report.ok("bans", rec.user_id)
                banned += 1
            except Exception as e:
                self._log("warning", "[⚠️] Failed to ban %s: %s", rec.user_id, e)
                ctx.report.skip("bans", rec.user_id, e)
            await ctx.pacing.acquire(ActionType.BAN)

        if ctx.snapshot.bans:
            self._log("info", "[🔨] Restored %d/%d bans", banned, len(ctx.snapshot.bans))
