# =============================================================================
#  Guildvault
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================


from __future__ import annotations
import asyncio
import logging
from typing import Optional

from capture.snapshot import SnapshotBuilder
from common.logctx import format_prefix, task_context
from common.models import Snapshot

logger = logging.getLogger("capture.scheduler")


class CaptureScheduler:
    """
    Periodically captures `guild` and persists the result.

    With `skip_if_unchanged` the previous snapshot is handed to
    `build_if_changed`, and nothing is written when it comes back unchanged.
    """

    def __init__(
        self,
        builder: SnapshotBuilder,
        store,
        guild,
        interval: float,
        options: Optional[dict] = None,
        skip_if_unchanged: bool = True,
        sleep=None,
    ):
        self.builder = builder
        self.store = store
        self.guild = guild
        self.interval = max(1.0, float(interval))
        self.options = options
        self.skip_if_unchanged = skip_if_unchanged
        self.last: Optional[Snapshot] = None
        self.saved = 0
        self._sleep = sleep or asyncio.sleep
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> Optional[Snapshot]:
        """One capture; returns the snapshot written, or None if skipped."""
        with task_context("capture", getattr(self.guild, "name", None)):
            if self.skip_if_unchanged:
                snap = await self.builder.build_if_changed(
                    self.guild, self.options, self.last
                )
                if snap is self.last:
                    logger.debug("%s[📸] Unchanged; nothing saved", format_prefix())
                    return None
            else:
                snap = await self.builder.build(self.guild, self.options)

            await self.store.put(snap.id, snap)
            self.last = snap
            self.saved += 1
            logger.info("%s[💾] Saved scheduled snapshot %s", format_prefix(), snap.id)
            return snap

    async def _loop(self) -> None:
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error in scheduled capture")
            await self._sleep(self.interval)

    def start(self) -> "CaptureScheduler":
        if not self.running:
            self._task = asyncio.create_task(self._loop(), name="capture-scheduler")
        return self

    async def stop(self) -> None:
        t, self._task = self._task, None
        if t is None:
            return
        t.cancel()
        try:
            await t
        except asyncio.CancelledError:
            pass
