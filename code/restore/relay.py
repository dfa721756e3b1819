# =============================================================================
#  Guildvault
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import io
import logging
from typing import Dict, List, Optional, Sequence, Tuple

import discord

from common.logctx import format_prefix
from common.models import MessageRecord
from restore.rate_limiter import ActionType
from restore.report import RestoreContext

logger = logging.getLogger("restore.relay")

WEBHOOK_NAME = "MessagesBackup"
MAX_CONTENT = 2000
MAX_USERNAME = 80
MAX_EMBEDS = 10
MAX_FILES = 10
DEFAULT_USERNAME = "Unknown User"


def select_messages(messages: Sequence[MessageRecord], cap: int) -> List[MessageRecord]:
    """
    The `cap` most recent relayable messages, oldest first.

    Stored messages are newest-first.
    """
    relayable = [m for m in messages if m.is_relayable()]
    return list(reversed(relayable[: max(0, int(cap))]))


class MessageRelay:
    """
    Replays stored messages through one webhook per channel so they appear
    under the original author's name and avatar. Threads reuse their parent
    channel's webhook.
    """

    def __init__(self, ctx: RestoreContext):
        self.ctx = ctx
        self._webhooks: Dict[int, discord.Webhook] = {}

    def _log(self, level: str, msg: str, *args) -> None:
        prefix = format_prefix()
        if level == "info":
            logger.info(prefix + msg, *args)
        elif level == "warning":
            logger.warning(prefix + msg, *args)
        else:
            logger.debug(prefix + msg, *args)

    async def webhook_for(self, channel) -> Optional[discord.Webhook]:
        wh = self._webhooks.get(channel.id)
        if wh is not None:
            return wh
        try:
            wh = await self.ctx.retry.run(
                lambda: channel.create_webhook(name=WEBHOOK_NAME, reason="Message restore"),
                max_attempts=2,
                base_delay_ms=1000,
                operation_name=f"webhook #{channel.name}",
            )
        except Exception as e:
            self._log("warning", "[⚠️] Could not create webhook in #%s: %s", channel.name, e)
            self.ctx.report.skip("messages", f"webhook #{channel.name}", e)
            return None
        self._webhooks[channel.id] = wh
        return wh

    async def _attachments(self, msg: MessageRecord) -> List[Tuple[str, bytes]]:
        out = []
        for f in msg.files[:MAX_FILES]:
            try:
                if f.is_inline:
                    data = await self.ctx.media(f.attachment, None)
                else:
                    data = await self.ctx.media(None, f.attachment)
                out.append((f.name, data))
            except Exception as e:
                self._log("debug", "[📎] Dropped attachment %s: %s", f.name, e)
        return out

    async def _send(self, webhook, msg: MessageRecord, thread=None):
        kwargs = dict(
            username=(msg.username or "")[:MAX_USERNAME] or DEFAULT_USERNAME,
            allowed_mentions=self.ctx.options.get("allowed_mentions")
            or discord.AllowedMentions.none(),
            wait=True,
        )
        if msg.content:
            kwargs["content"] = msg.content[:MAX_CONTENT]
        if msg.avatar:
            kwargs["avatar_url"] = msg.avatar
        if msg.embeds:
            kwargs["embeds"] = [discord.Embed.from_dict(e) for e in msg.embeds[:MAX_EMBEDS]]
        if thread is not None:
            kwargs["thread"] = thread
        attachments = await self._attachments(msg)

        async def _op():
            # files are closed after each send, so build them per attempt
            if attachments:
                kwargs["files"] = [
                    discord.File(io.BytesIO(data), filename=name) for name, data in attachments
                ]
            return await webhook.send(**kwargs)

        return await self.ctx.retry.run(
            _op,
            max_attempts=2,
            base_delay_ms=500,
            operation_name="relay message",
        )

    async def replay(
        self,
        channel,
        messages: Sequence[MessageRecord],
        thread=None,
        presorted: bool = False,
    ) -> int:
        """
        Relay into `channel` (or into `thread`, a thread of `channel`).
        Returns the number of messages sent.
        """
        chosen = (
            list(messages)
            if presorted
            else select_messages(
                messages, self.ctx.options.get("max_messages_per_channel", 10)
            )
        )
        if not chosen:
            return 0

        webhook = await self.webhook_for(channel)
        if webhook is None:
            return 0

        where = f"#{channel.name}" + (f"/{thread.name}" if thread is not None else "")
        sent = 0
        for i, msg in enumerate(chosen):
            try:
                out = await self._send(webhook, msg, thread)
                sent += 1
                self.ctx.report.ok("messages", f"{where}:{i}")
                if msg.pinned and out is not None:
                    try:
                        await self.ctx.retry.run(
                            out.pin, max_attempts=1, operation_name="pin message"
                        )
                    except Exception as e:
                        self._log("debug", "[📌] Could not pin message in %s: %s", where, e)
            except Exception as e:
                self._log("warning", "[⚠️] Failed relaying message %d in %s: %s", i, where, e)
                self.ctx.report.skip("messages", f"{where}:{i}", e)

            if i < len(chosen) - 1:
                await self.ctx.pacing.acquire(ActionType.MESSAGE)

        self._log("debug", "[✉️] Relayed %d/%d messages into %s", sent, len(chosen), where)
        return sent
