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
from collections import Counter
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from common.models import Snapshot
from restore.rate_limiter import RateLimitManager
from restore.reconcile import IdentifierReconciler
from restore.retry import RetryExecutor


@dataclass
class ItemResult:
    stage: str
    item: str
    ok: bool
    reason: Optional[str] = None


@dataclass
class RestoreReport:
    """Per-item outcome of one restore run, in the order items were processed."""

    snapshot: Snapshot
    guild_id: str
    items: List[ItemResult] = field(default_factory=list)

    def ok(self, stage: str, item: str) -> None:
        self.items.append(ItemResult(stage, item, True))

    def skip(self, stage: str, item: str, reason) -> None:
        self.items.append(ItemResult(stage, item, False, str(reason)))

    def succeeded(self, stage: Optional[str] = None) -> List[ItemResult]:
        return [r for r in self.items if r.ok and (stage is None or r.stage == stage)]

    def skipped(self, stage: Optional[str] = None) -> List[ItemResult]:
        return [r for r in self.items if not r.ok and (stage is None or r.stage == stage)]

    def summary(self) -> str:
        done = Counter(r.stage for r in self.items if r.ok)
        failed = Counter(r.stage for r in self.items if not r.ok)
        stages = list(dict.fromkeys(r.stage for r in self.items))
        if not stages:
            return "nothing to do"
        return ", ".join(
            f"{s} {done[s]} ok" + (f"/{failed[s]} skipped" if failed[s] else "")
            for s in stages
        )


@dataclass
class RestoreContext:
    """Everything a restore stage needs, built once per run."""

    guild: object
    snapshot: Snapshot
    options: dict
    report: RestoreReport
    retry: RetryExecutor
    pacing: RateLimitManager
    reconciler: IdentifierReconciler
    fetcher: Callable[[str], Awaitable[bytes]]

    async def media(self, b64: Optional[str], url: Optional[str]) -> Optional[bytes]:
        """Inlined base64 wins over the URL; None when neither is set."""
        if b64:
            return base64.b64decode(b64)
        if url:
            return await self.fetcher(url)
        return None
