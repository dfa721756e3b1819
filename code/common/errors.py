# =============================================================================
#  Guildvault
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
from typing import Optional

import discord

# Discord JSON error codes that must never be retried
MISSING_ACCESS = 50001
MISSING_PERMISSIONS = 50013
INVALID_FORM_BODY = 50035


class BackupError(Exception):
    """Base class for every error raised by the backup engine."""


class NotFound(BackupError, LookupError):
    pass


class PermissionDenied(BackupError, PermissionError):
    pass


class ValidationError(BackupError, ValueError):
    pass


class InvalidTarget(BackupError):
    pass


class RateLimited(BackupError):
    def __init__(self, message: str = "Rate limited", retry_after: Optional[float] = None):
        super().__init__(message)
        # seconds, as reported by the server
        self.retry_after = retry_after


class RetriesExhausted(BackupError):
    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


def classify(exc: BaseException) -> BaseException:
    """
    Map a remote-platform exception onto the backup error taxonomy.

    Errors that are already part of the taxonomy are returned untouched.
    Anything that cannot be classified is returned as-is and is treated
    as a generic transient failure by the retry policy.
    """
    if isinstance(exc, BackupError):
        return exc

    if isinstance(exc, discord.RateLimited):
        return RateLimited(str(exc), retry_after=getattr(exc, "retry_after", None))

    if isinstance(exc, discord.HTTPException):
        status = getattr(exc, "status", None)
        code = getattr(exc, "code", 0)

        if status == 403 or code in (MISSING_ACCESS, MISSING_PERMISSIONS):
            return PermissionDenied(str(exc))
        if status == 400 or code == INVALID_FORM_BODY:
            return ValidationError(str(exc))
        if status == 429:
            retry_after = None
            resp = getattr(exc, "response", None)
            headers = getattr(resp, "headers", None) or {}
            try:
                raw = headers.get("Retry-After")
                retry_after = float(raw) if raw is not None else None
            except (TypeError, ValueError):
                retry_after = None
            return RateLimited(str(exc), retry_after=retry_after)
        if status == 404:
            return NotFound(str(exc))

    return exc
