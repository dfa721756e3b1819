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
import logging
from typing import List, Optional, Tuple

import discord

from common.config import MESSAGE_HARD_CAP
from common.logctx import format_prefix
from common.models import FileRecord, MessageRecord
from restore.rate_limiter import ActionType, RateLimitManager
from restore.retry import RetryExecutor

logger = logging.getLogger("capture.messages")

RASTER_EXTENSIONS = {"png", "jpg", "jpeg", "jpe", "jif", "jfif", "jfi", "gif", "webp"}
MAX_INLINE_BYTES = 8 * 1024 * 1024
PAGE_SIZE = 100
MAX_EMBEDS = 10


def file_extension(url: str) -> str:
    path = (url or "").split("?", 1)[0].split("#", 1)[0]
    tail = path.rsplit("/", 1)[-1]
    return tail.rsplit(".", 1)[-1].lower() if "." in tail else ""


class MessageCapture:
    """
    Pages backward through a channel's (or thread's) history and shapes each
    message into a MessageRecord. Records come out newest-first.
    """

    def __init__(
        self,
        retry: Optional[RetryExecutor] = None,
        pacing: Optional[RateLimitManager] = None,
    ):
        self.retry = retry or RetryExecutor()
        self.pacing = pacing or RateLimitManager()

    async def _fetch_page(self, channel, limit: int, before) -> List[discord.Message]:
        async def _op():
            return [m async for m in channel.history(limit=limit, before=before)]

        return await self.retry.run(
            _op, max_attempts=3, base_delay_ms=1000, operation_name=f"history #{channel.name}"
        )

    async def _file_record(self, att, save_images: str) -> FileRecord:
        url = str(getattr(att, "url", "") or "")
        name = getattr(att, "filename", None) or "file"
        payload = url

        if (
            save_images == "base64"
            and url
            and file_extension(url) in RASTER_EXTENSIONS
            and int(getattr(att, "size", 0) or 0) <= MAX_INLINE_BYTES
        ):
            try:
                raw = await self.retry.run(
                    att.read, max_attempts=2, base_delay_ms=500, operation_name=f"attachment {name}"
                )
                if len(raw) <= MAX_INLINE_BYTES:
                    payload = base64.b64encode(raw).decode("ascii")
            except Exception as e:
                logger.debug(
                    "%s[📎] Could not inline %s, keeping URL: %s", format_prefix(), name, e
                )

        return FileRecord(name=name, attachment=payload)

    async def _to_record(self, msg, save_images: str) -> MessageRecord:
        author = msg.author
        avatar = getattr(author, "display_avatar", None)

        embeds = []
        for e in list(getattr(msg, "embeds", None) or [])[:MAX_EMBEDS]:
            d = e.to_dict() if hasattr(e, "to_dict") else dict(e)
            if isinstance(d.get("fields"), list):
                d["fields"] = d["fields"][:25]
            embeds.append(d)

        files = []
        for att in getattr(msg, "attachments", None) or []:
            files.append(await self._file_record(att, save_images))

        created = getattr(msg, "created_at", None)
        return MessageRecord(
            username=getattr(author, "name", None) or "Unknown User",
            avatar=str(avatar.url) if avatar is not None else None,
            content=getattr(msg, "clean_content", None) or getattr(msg, "content", "") or "",
            embeds=tuple(embeds),
            files=tuple(files),
            pinned=bool(getattr(msg, "pinned", False)),
            sent_at=created.isoformat() if created else None,
        )

    async def capture(
        self, channel, limit: int, save_images: str = "url"
    ) -> Tuple[MessageRecord, ...]:
        want = max(0, min(int(limit), MESSAGE_HARD_CAP))
        out: List[MessageRecord] = []
        before = None
        done = False

        while not done and len(out) < want:
            try:
                page = await self._fetch_page(channel, min(PAGE_SIZE, want), before)
            except Exception as e:
                logger.warning(
                    "%s[⚠️] Stopped reading history of #%s: %s",
                    format_prefix(),
                    getattr(channel, "name", "?"),
                    e,
                )
                break

            if not page:
                break
            before = discord.Object(id=page[-1].id)

            for msg in page:
                # unauthored and system messages end the walk
                if msg.author is None or msg.is_system() or len(out) >= want:
                    done = True
                    break
                try:
                    out.append(await self._to_record(msg, save_images))
                except Exception as e:
                    logger.debug(
                        "%s[⚠️] Skipped message %s: %s", format_prefix(), getattr(msg, "id", "?"), e
                    )

            await self.pacing.acquire(ActionType.PAGE)

        return tuple(out)
