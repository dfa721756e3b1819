import asyncio

import pytest

from common.errors import (
    PermissionDenied,
    RateLimited,
    RetriesExhausted,
    ValidationError,
)
from restore.rate_limiter import ActionType, RateLimitManager
from restore.retry import RetryExecutor, calculate_delay


class Flaky:
    """Fails with the queued errors, then returns 'ok'."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


def test_permission_denied_is_not_retried(sleeps):
    op = Flaky(PermissionDenied("no"))
    ex = RetryExecutor(sleep=sleeps)

    with pytest.raises(PermissionDenied):
        asyncio.run(ex.run(op))

    assert op.calls == 1
    assert sleeps.calls == []


def test_validation_error_is_not_retried(sleeps):
    op = Flaky(ValidationError("bad body"))
    ex = RetryExecutor(sleep=sleeps)

    with pytest.raises(ValidationError):
        asyncio.run(ex.run(op))

    assert op.calls == 1


def test_transient_errors_back_off_exponentially(sleeps):
    op = Flaky(RuntimeError("boom"), RuntimeError("boom"))
    ex = RetryExecutor(sleep=sleeps)

    assert asyncio.run(ex.run(op, max_attempts=3, base_delay_ms=1000)) == "ok"
    assert op.calls == 3
    assert sleeps.calls == [1.0, 2.0]


def test_exhaustion_wraps_last_error(sleeps):
    last = RuntimeError("third")
    op = Flaky(RuntimeError("first"), RuntimeError("second"), last)
    ex = RetryExecutor(sleep=sleeps)

    with pytest.raises(RetriesExhausted) as info:
        asyncio.run(ex.run(op, max_attempts=3, base_delay_ms=10))

    assert info.value.last_error is last
    assert info.value.attempts == 3
    # no wait after the final attempt
    assert sleeps.calls == [0.01, 0.02]


def test_rate_limited_waits_server_hint(sleeps):
    op = Flaky(RateLimited(retry_after=7.5))
    ex = RetryExecutor(sleep=sleeps)

    assert asyncio.run(ex.run(op)) == "ok"
    assert sleeps.calls == [7.5]


def test_rate_limited_without_hint_uses_backoff(sleeps):
    op = Flaky(RateLimited())
    ex = RetryExecutor(sleep=sleeps)

    assert asyncio.run(ex.run(op, base_delay_ms=500)) == "ok"
    assert sleeps.calls == [0.5]


def test_calculate_delay():
    assert calculate_delay(1, 1000) == 1.0
    assert calculate_delay(2, 1000) == 2.0
    assert calculate_delay(3, 250) == 1.0


def test_pacing_defaults_and_overrides(sleeps):
    pacing = RateLimitManager({"message": 0, ActionType.BAN: 20}, sleep=sleeps)

    asyncio.run(pacing.acquire(ActionType.ROLE))
    asyncio.run(pacing.acquire(ActionType.MESSAGE))
    asyncio.run(pacing.acquire(ActionType.BAN))

    assert sleeps.calls == [0.25, 0.02]
