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
from dataclasses import dataclass
from typing import List, Optional, Union

from capture.scheduler import CaptureScheduler
from capture.snapshot import SnapshotBuilder
from common.common_helpers import resolve_options
from common.config import Config
from common.diff import BackupDiff, DiffEngine
from common.logctx import format_prefix
from common.models import Snapshot
from common.storage import SnapshotStore, store_from_config
from restore.orchestrator import RestoreOrchestrator, RestoreReport
from restore.rate_limiter import RateLimitManager
from restore.retry import RetryExecutor

logger = logging.getLogger("vault.client")


@dataclass(frozen=True)
class SnapshotInfo:
    id: str
    snapshot: Snapshot
    size_kb: float


class BackupClient:
    """
    One object that wires the builder, a snapshot store, the restore
    pipeline and the diff engine together.

    The store is opened lazily on first use; call `close()` (or use
    `async with`) when done.
    """

    def __init__(
        self,
        bot=None,
        store: Optional[SnapshotStore] = None,
        config: Optional[Config] = None,
        retry: Optional[RetryExecutor] = None,
        pacing: Optional[RateLimitManager] = None,
        fetcher=None,
    ):
        self.config = config or Config()
        self.store = store or store_from_config(self.config)
        self.retry = retry or RetryExecutor()
        self.pacing = pacing or RateLimitManager(self.config.pacing_delays())
        self.builder = SnapshotBuilder(
            bot=bot, config=self.config, retry=self.retry, pacing=self.pacing
        )
        self.restorer = RestoreOrchestrator(
            store=self.store,
            config=self.config,
            retry=self.retry,
            pacing=self.pacing,
            fetcher=fetcher,
        )
        self.differ = DiffEngine(self.store)
        self._opened = False
        self._schedules: List[CaptureScheduler] = []

    async def _ready(self) -> SnapshotStore:
        if not self._opened:
            await self.store.open()
            self._opened = True
        return self.store

    async def close(self) -> None:
        for s in list(self._schedules):
            await s.stop()
        self._schedules.clear()
        if self._opened:
            await self.store.close()
            self._opened = False

    async def __aenter__(self):
        await self._ready()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # ── capture ───────────────────────────────────────────────────────────────

    async def create(self, guild, options: Optional[dict] = None) -> Snapshot:
        """Capture `guild`; persisted unless `json_save` is false."""
        opts = resolve_options(self.config.default_capture_options(), options)
        snap = await self.builder.build(guild, opts)
        if opts.get("json_save", True):
            store = await self._ready()
            await store.put(snap.id, snap, beautify=opts.get("json_beautify"))
            logger.info("%s[💾] Saved snapshot %s", format_prefix(), snap.id)
        return snap

    def schedule(
        self,
        guild,
        interval: Optional[float] = None,
        options: Optional[dict] = None,
        skip_if_unchanged: bool = True,
    ) -> CaptureScheduler:
        """Start periodic captures; the returned handle's `stop()` cancels them."""
        sched = CaptureScheduler(
            self.builder,
            _LazyStore(self),
            guild,
            interval or self.config.SCHEDULE_INTERVAL_SECONDS,
            options=options,
            skip_if_unchanged=skip_if_unchanged,
        )
        self._schedules.append(sched)
        return sched.start()

    # ── storage ───────────────────────────────────────────────────────────────

    async def fetch(self, snapshot_id: str) -> SnapshotInfo:
        store = await self._ready()
        snap = await store.get(snapshot_id)
        return SnapshotInfo(
            id=snapshot_id, snapshot=snap, size_kb=await store.size_kb(snapshot_id)
        )

    async def list(self) -> List[str]:
        store = await self._ready()
        return await store.list()

    async def remove(self, snapshot_id: str) -> None:
        store = await self._ready()
        await store.delete(snapshot_id)
        logger.info("%s[💾] Removed snapshot %s", format_prefix(), snapshot_id)

    # ── restore / diff ────────────────────────────────────────────────────────

    async def load(
        self,
        snapshot_or_id: Union[Snapshot, str],
        guild,
        options: Optional[dict] = None,
    ) -> Snapshot:
        if not isinstance(snapshot_or_id, Snapshot):
            await self._ready()
        return await self.restorer.restore(snapshot_or_id, guild, options)

    async def load_with_report(
        self,
        snapshot_or_id: Union[Snapshot, str],
        guild,
        options: Optional[dict] = None,
    ) -> RestoreReport:
        if not isinstance(snapshot_or_id, Snapshot):
            await self._ready()
        return await self.restorer.run(snapshot_or_id, guild, options)

    async def diff(
        self, before: Union[Snapshot, str], after: Union[Snapshot, str]
    ) -> BackupDiff:
        if not (isinstance(before, Snapshot) and isinstance(after, Snapshot)):
            await self._ready()
        return await self.differ.diff(before, after)


class _LazyStore:
    """Store proxy for schedules that opens the client's store on first write."""

    def __init__(self, client: BackupClient):
        self.client = client

    async def put(self, snapshot_id: str, snapshot: Snapshot) -> None:
        store = await self.client._ready()
        await store.put(snapshot_id, snapshot)
