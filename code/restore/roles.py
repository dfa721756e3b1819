# =============================================================================
#  Guildvault
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================


from __future__ import annotations
import logging, discord
from typing import List, Optional

from common.logctx import format_prefix
from common.models import RoleRecord
from restore.rate_limiter import ActionType
from restore.report import RestoreContext

logger = logging.getLogger("restore.roles")

MAX_ROLE_NAME = 100


class RoleManager:
    def __init__(self):
        self.MAX_ROLES = 250

    def _log(self, level: str, msg: str, *args) -> None:
        """
        Role restore logging with the restore task prefix, so every role
        create/edit line is tied to the run that produced it.
        """
        prefix = format_prefix()

        if level == "info":
            logger.info(prefix + msg, *args)
        elif level == "warning":
            logger.warning(prefix + msg, *args)
        elif level == "error":
            logger.error(prefix + msg, *args)
        else:
            logger.debug(prefix + msg, *args)

    async def _role_kwargs(self, ctx: RestoreContext, rec: RoleRecord) -> dict:
        kwargs = dict(
            colour=discord.Colour(int(rec.color or 0)),
            permissions=discord.Permissions(int(rec.permissions or 0)),
            mentionable=bool(rec.mentionable),
        )
        if "ROLE_ICONS" in ctx.guild.features and not rec.is_everyone:
            icon: Optional[bytes | str] = None
            try:
                icon = await ctx.media(rec.icon_base64, rec.icon_url)
            except Exception as e:
                self._log("debug", "[🧩] Icon for %r unavailable: %s", rec.name, e)
            if icon is None and rec.unicode_emoji:
                icon = rec.unicode_emoji
            if icon is not None:
                kwargs["display_icon"] = icon
        return kwargs

    async def restore_roles(self, ctx: RestoreContext) -> List[discord.Role]:
        guild = ctx.guild
        created: List[discord.Role] = []
        edited = 0

        for rec in ctx.snapshot.roles:
            try:
                kwargs = await self._role_kwargs(ctx, rec)
                if rec.is_everyone:
                    everyone = guild.default_role
                    await ctx.retry.run(
                        lambda: everyone.edit(**kwargs),
                        operation_name="edit @everyone",
                    )
                    edited += 1
                    ctx.report.ok("roles", rec.name)
                else:
                    if len(guild.roles) >= self.MAX_ROLES:
                        raise RuntimeError(f"guild is at the role limit ({self.MAX_ROLES})")
                    role = await ctx.retry.run(
                        lambda: guild.create_role(
                            name=rec.name[:MAX_ROLE_NAME],
                            hoist=bool(rec.hoist),
                            reason="Restored from backup",
                            **kwargs,
                        ),
                        operation_name=f"create role {rec.name}",
                    )
                    created.append(role)
                    ctx.report.ok("roles", rec.name)
                    self._log("debug", "[🧩] Created role %s", rec.name)
            except Exception as e:
                self._log("warning", "[⚠️] Failed restoring role %s: %s", rec.name, e)
                ctx.report.skip("roles", rec.name, e)

            await ctx.pacing.acquire(ActionType.ROLE)

        self._log(
            "info",
            "[🧩] Role restore complete: created %d, edited %d",
            len(created),
            edited,
        )
        return created

    async def restore_members(self, ctx: RestoreContext) -> int:
        """
        Re-apply member→role assignments for members who are still in the
        guild. Role ids are remapped through the reconciler; unresolved
        roles are dropped.
        """
        if not ctx.options.get("restore_members") or not ctx.snapshot.members:
            return 0

        guild = ctx.guild
        updated = 0
        for rec in ctx.snapshot.members:
            try:
                member = guild.get_member(int(rec.user_id))
                if member is None:
                    try:
                        member = await guild.fetch_member(int(rec.user_id))
                    except discord.NotFound:
                        member = None
                if member is None:
                    ctx.report.skip("members", rec.user_id, "not in guild")
                    continue

                new_roles = [
                    discord.Object(id=rid) for rid in ctx.reconciler.resolve_roles(rec.roles)
                ]
                await ctx.retry.run(
                    lambda: member.edit(roles=new_roles, reason="Restored from backup"),
                    operation_name=f"member roles {rec.user_id}",
                )
                updated += 1
                ctx.report.ok("members", rec.user_id)
                await ctx.pacing.acquire(ActionType.MEMBER)
            except Exception as e:
                self._log("warning", "[⚠️] Failed restoring roles of %s: %s", rec.user_id, e)
                ctx.report.skip("members", rec.user_id, e)

        self._log("info", "[👥] Restored roles for %d members", updated)
        return updated
