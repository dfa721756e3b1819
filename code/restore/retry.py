# =============================================================================
#  Guildvault
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

"""
Retry with exponential backoff for remote calls.

PermissionDenied and ValidationError are never retried. RateLimited waits
for the server-provided retry-after hint and then counts as an attempt like
any other failure. Everything else is treated as transient and backed off
exponentially: base, 2×base, 4×base …
"""

from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from common.errors import (
    PermissionDenied,
    RateLimited,
    RetriesExhausted,
    ValidationError,
    classify,
)
from common.logctx import format_prefix

logger = logging.getLogger("restore.retry")


@dataclass
class RetryConfig:
    """
    Attributes:
        max_attempts: Maximum number of attempts (including the first try)
        base_delay_ms: Delay before the second attempt; doubles afterwards
    """

    max_attempts: int = 3
    base_delay_ms: float = 1000.0


def calculate_delay(attempt: int, base_delay_ms: float) -> float:
    """
    Delay in seconds after the failed `attempt` (1-based).
    """
    return (base_delay_ms * (2 ** (attempt - 1))) / 1000.0


class RetryExecutor:
    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.config = config or RetryConfig()
        self._sleep = sleep or asyncio.sleep

    async def run(
        self,
        operation: Callable[[], Awaitable[Any]],
        max_attempts: Optional[int] = None,
        base_delay_ms: Optional[float] = None,
        operation_name: str = "operation",
    ) -> Any:
        attempts = max(1, int(max_attempts or self.config.max_attempts))
        base = self.config.base_delay_ms if base_delay_ms is None else base_delay_ms
        last_error: Optional[BaseException] = None

        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except Exception as raw:
                err = classify(raw)
                if isinstance(err, (PermissionDenied, ValidationError)):
                    if err is raw:
                        raise
                    raise err from raw

                last_error = err
                if attempt >= attempts:
                    break

                if isinstance(err, RateLimited) and err.retry_after is not None:
                    delay = max(0.0, float(err.retry_after))
                else:
                    delay = calculate_delay(attempt, base)

                logger.debug(
                    "%s%s failed (attempt %d/%d): %s; retrying in %.2fs",
                    format_prefix(),
                    operation_name,
                    attempt,
                    attempts,
                    err,
                    delay,
                )
                await self._sleep(delay)

        logger.warning(
            "%s[⚠️] %s gave up after %d attempts: %s",
            format_prefix(),
            operation_name,
            attempts,
            last_error,
        )
        raise RetriesExhausted(attempts, last_error)
