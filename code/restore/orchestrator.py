# =============================================================================
#  Guildvault
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================


from __future__ import annotations
import logging
from typing import Awaitable, Callable, Optional, Union

import aiohttp

from common.common_helpers import fetch_bytes, resolve_options
from common.config import Config
from common.errors import InvalidTarget, NotFound
from common.logctx import format_prefix, task_context
from common.models import Snapshot
from restore.channels import ChannelManager
from restore.community import restore_onboarding, restore_scheduled_events
from restore.emojis import EmojiManager
from restore.guild_settings import GuildSettingsManager
from restore.rate_limiter import RateLimitManager
from restore.reconcile import IdentifierReconciler
from restore.report import ItemResult, RestoreContext, RestoreReport
from restore.retry import RetryExecutor
from restore.roles import RoleManager

logger = logging.getLogger("restore.orchestrator")

__all__ = ["RestoreOrchestrator", "RestoreReport", "ItemResult"]


class RestoreOrchestrator:
    """
    Replays a Snapshot onto a guild, one stage at a time:

        clear → config → roles → members → channels → afk → emojis
        → bans → widget → onboarding → scheduled events

    Each stage finishes before the next starts. Per-item failures are
    recorded in the RestoreReport and never stop the run; an error escaping
    a stage aborts the whole restore.
    """

    def __init__(
        self,
        store=None,
        config: Optional[Config] = None,
        retry: Optional[RetryExecutor] = None,
        pacing: Optional[RateLimitManager] = None,
        fetcher: Optional[Callable[[str], Awaitable[bytes]]] = None,
    ):
        self.store = store
        self.config = config or Config()
        self.retry = retry or RetryExecutor()
        self.pacing = pacing or RateLimitManager(self.config.pacing_delays())
        self.fetcher = fetcher
        self.settings = GuildSettingsManager()
        self.roles = RoleManager()
        self.emojis = EmojiManager()
        self.session: Optional[aiohttp.ClientSession] = None

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

    async def _fetch(self, url: str) -> bytes:
        if self.fetcher is not None:
            return await self.fetcher(url)
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
        return await fetch_bytes(url, self.session)

    async def _close_session(self) -> None:
        if self.session is not None and not self.session.closed:
            await self.session.close()
        self.session = None

    async def _resolve(self, snapshot_or_id: Union[Snapshot, str]) -> Snapshot:
        if isinstance(snapshot_or_id, Snapshot):
            return snapshot_or_id
        if self.store is None:
            raise NotFound(f"No snapshot store to resolve {snapshot_or_id!r}")
        return await self.store.get(str(snapshot_or_id))

    def _context(self, guild, snapshot: Snapshot, options: dict) -> RestoreContext:
        return RestoreContext(
            guild=guild,
            snapshot=snapshot,
            options=options,
            report=RestoreReport(snapshot=snapshot, guild_id=str(guild.id)),
            retry=self.retry,
            pacing=self.pacing,
            reconciler=IdentifierReconciler(guild, snapshot),
            fetcher=self._fetch,
        )

    # ── public API ────────────────────────────────────────────────────────────

    async def run(
        self,
        snapshot_or_id: Union[Snapshot, str],
        guild,
        options: Optional[dict] = None,
    ) -> RestoreReport:
        if guild is None:
            raise InvalidTarget("A target guild is required to restore")
        snapshot = await self._resolve(snapshot_or_id)
        opts = resolve_options(self.config.default_restore_options(), options)

        with task_context("restore", getattr(guild, "name", None)):
            ctx = self._context(guild, snapshot, opts)
            self._log("info", "[♻️] Restoring snapshot %s onto guild %s", snapshot.id, guild.id)
            try:
                if opts.get("clear_guild_before_restore"):
                    await self.settings.clear(ctx)
                await self.settings.apply_config(ctx)
                await self.roles.restore_roles(ctx)
                await self.roles.restore_members(ctx)
                await ChannelManager(ctx).restore_channels()
                await self.settings.apply_afk(ctx)
                await self.emojis.restore_emojis(ctx)
                await self.settings.restore_bans(ctx)
                await self.settings.apply_widget(ctx)
                if opts.get("restore_onboarding"):
                    await restore_onboarding(ctx)
                if opts.get("restore_scheduled_events"):
                    await restore_scheduled_events(ctx)
            finally:
                await self._close_session()

            self._log("info", "[♻️] Restore finished: %s", ctx.report.summary())
            return ctx.report

    async def restore(
        self,
        snapshot_or_id: Union[Snapshot, str],
        guild,
        options: Optional[dict] = None,
    ) -> Snapshot:
        """Run the full pipeline and return the snapshot that was applied."""
        report = await self.run(snapshot_or_id, guild, options)
        return report.snapshot

    async def clear(self, guild) -> RestoreReport:
        """Wipe `guild` back to a bare baseline without restoring anything."""
        if guild is None:
            raise InvalidTarget("A target guild is required to clear")
        empty = Snapshot(id="clear", guild_id=str(guild.id), name=getattr(guild, "name", ""))
        with task_context("clear", getattr(guild, "name", None)):
            ctx = self._context(guild, empty, self.config.default_restore_options())
            try:
                await self.settings.clear(ctx)
            finally:
                await self._close_session()
            return ctx.report
