# =============================================================================
#  Guildvault
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

logger = logging.getLogger("restore.ratelimit")


class ActionType(Enum):
    ROLE = "role"
    MEMBER = "member"
    EMOJI = "emoji"
    BAN = "ban"
    MESSAGE = "message"
    PAGE = "page"


# Milliseconds to wait after each paced action
DEFAULT_DELAYS_MS: Dict[ActionType, int] = {
    ActionType.ROLE: 250,
    ActionType.MEMBER: 300,
    ActionType.EMOJI: 500,
    ActionType.BAN: 1000,
    ActionType.MESSAGE: 1000,
    ActionType.PAGE: 100,
}


class RateLimitManager:
    """
    Fixed-delay self-throttling between sequential remote writes.

    Server-side 429s are handled by the retry executor; this only spaces out
    loops that would otherwise burst (role creation, bans, message relay…).
    """

    def __init__(
        self,
        delays_ms: Optional[Dict] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.delays_ms: Dict[ActionType, int] = dict(DEFAULT_DELAYS_MS)
        for k, v in (delays_ms or {}).items():
            action = k if isinstance(k, ActionType) else ActionType(str(k).lower())
            self.delays_ms[action] = max(0, int(v))
        self._sleep = sleep or asyncio.sleep

    def delay_for(self, action: ActionType) -> float:
        """Seconds to wait for `action`."""
        return self.delays_ms.get(action, 0) / 1000.0

    async def acquire(self, action: ActionType) -> None:
        delay = self.delay_for(action)
        if delay <= 0:
            return
        logger.debug("Pacing %s for %.3fs", action.value, delay)
        await self._sleep(delay)
