import asyncio
from types import SimpleNamespace

import discord
import pytest

from common.errors import (
    NotFound,
    PermissionDenied,
    RateLimited,
    RetriesExhausted,
    ValidationError,
    classify,
)
from restore.retry import RetryExecutor


def response(status, reason="", headers=None):
    return SimpleNamespace(status=status, reason=reason, headers=headers or {})


def test_forbidden_is_permission_denied():
    exc = discord.Forbidden(response(403, "Forbidden"), {"code": 50013, "message": "Missing Permissions"})

    out = classify(exc)

    assert isinstance(out, PermissionDenied)
    assert isinstance(out, PermissionError)


def test_missing_access_code_without_403():
    exc = discord.HTTPException(response(500, "Server Error"), {"code": 50001, "message": "Missing Access"})

    assert isinstance(classify(exc), PermissionDenied)


def test_bad_request_is_validation_error():
    exc = discord.HTTPException(response(400, "Bad Request"), {"code": 50035, "message": "Invalid Form Body"})

    assert isinstance(classify(exc), ValidationError)


def test_not_found():
    exc = discord.NotFound(response(404, "Not Found"), {"code": 10003, "message": "Unknown Channel"})

    out = classify(exc)

    assert isinstance(out, NotFound)
    assert isinstance(out, LookupError)


def test_http_429_reads_retry_after_header():
    exc = discord.HTTPException(response(429, "Too Many Requests", {"Retry-After": "2.5"}), "slow down")

    out = classify(exc)

    assert isinstance(out, RateLimited)
    assert out.retry_after == 2.5


def test_http_429_with_junk_header_has_no_hint():
    exc = discord.HTTPException(response(429, "Too Many Requests", {"Retry-After": "soon"}), "slow down")

    out = classify(exc)

    assert isinstance(out, RateLimited)
    assert out.retry_after is None


def test_client_rate_limit_keeps_retry_after():
    out = classify(discord.RateLimited(7.0))

    assert isinstance(out, RateLimited)
    assert out.retry_after == 7.0


def test_taxonomy_and_unknown_errors_pass_through():
    own = ValidationError("bad")
    other = RuntimeError("boom")
    server = discord.HTTPException(response(502, "Bad Gateway"), "upstream")

    assert classify(own) is own
    assert classify(other) is other
    assert classify(server) is server


def test_forbidden_from_the_platform_is_attempted_once(sleeps):
    calls = []

    async def op():
        calls.append(1)
        raise discord.Forbidden(response(403, "Forbidden"), {"code": 50013, "message": "Missing Permissions"})

    with pytest.raises(PermissionDenied):
        asyncio.run(RetryExecutor(sleep=sleeps).run(op))

    assert len(calls) == 1
    assert sleeps.calls == []


def test_server_errors_are_retried_then_wrapped(sleeps):
    calls = []

    async def op():
        calls.append(1)
        raise discord.HTTPException(response(502, "Bad Gateway"), "upstream")

    with pytest.raises(RetriesExhausted) as info:
        asyncio.run(RetryExecutor(sleep=sleeps).run(op, max_attempts=3))

    assert len(calls) == 3
    assert isinstance(info.value.last_error, discord.HTTPException)
