# =============================================================================
#  Guildvault
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================


from __future__ import annotations
import asyncio, io, logging, discord
from typing import List
from PIL import Image, ImageSequence

from common.logctx import format_prefix
from restore.rate_limiter import ActionType
from restore.report import RestoreContext

logger = logging.getLogger("restore.emojis")

EMOJI_LIMIT_PER_TIER = {0: 50, 1: 100, 2: 150, 3: 250}
MAX_EMOJI_BYTES = 262_144
MAX_EMOJI_NAME = 32


def emoji_limit(premium_tier: int) -> int:
    return EMOJI_LIMIT_PER_TIER.get(int(premium_tier or 0), EMOJI_LIMIT_PER_TIER[0])


class EmojiManager:
    def _log(self, level: str, msg: str, *args) -> None:
        prefix = format_prefix()
        if level == "info":
            logger.info(prefix + msg, *args)
        elif level == "warning":
            logger.warning(prefix + msg, *args)
        elif level == "error":
            logger.error(prefix + msg, *args)
        else:
            logger.debug(prefix + msg, *args)

    async def restore_emojis(self, ctx: RestoreContext) -> List[discord.Emoji]:
        """
        Recreate stored emoji until the target's tier cap is reached.
        Static and animated emoji count against separate caps.
        """
        guild = ctx.guild
        limit = emoji_limit(guild.premium_tier)
        static_count = sum(1 for e in guild.emojis if not e.animated)
        animated_count = sum(1 for e in guild.emojis if e.animated)
        skipped_limit = 0
        created: List[discord.Emoji] = []

        for rec in ctx.snapshot.emojis:
            name = rec.name[:MAX_EMOJI_NAME]
            if rec.animated and animated_count >= limit:
                skipped_limit += 1
                ctx.report.skip("emojis", name, f"tier limit ({limit})")
                continue
            if not rec.animated and static_count >= limit:
                skipped_limit += 1
                ctx.report.skip("emojis", name, f"tier limit ({limit})")
                continue

            try:
                raw = await ctx.media(rec.base64, rec.url)
                if raw is None:
                    raise ValueError("no image data stored")
                if len(raw) > MAX_EMOJI_BYTES:
                    try:
                        if rec.animated:
                            raw = await self._shrink_animated(raw, max_bytes=MAX_EMOJI_BYTES)
                        else:
                            raw = await self._shrink_static(raw, max_bytes=MAX_EMOJI_BYTES)
                    except Exception as e:
                        self._log("debug", "[😊] Error shrinking emoji %s: %s", name, e)

                emo = await ctx.retry.run(
                    lambda: guild.create_custom_emoji(
                        name=name, image=raw, reason="Restored from backup"
                    ),
                    operation_name=f"emoji {name}",
                )
                created.append(emo)
                ctx.report.ok("emojis", name)
                if rec.animated:
                    animated_count += 1
                else:
                    static_count += 1
                self._log("debug", "[😊] Created emoji %s", name)
            except Exception as e:
                self._log("warning", "[⚠️] Failed creating emoji %s: %s", name, e)
                ctx.report.skip("emojis", name, e)

            await ctx.pacing.acquire(ActionType.EMOJI)

        if skipped_limit:
            self._log(
                "info",
                "[😊] Skipped %d emoji due to the tier limit (%d). Consider boosting.",
                skipped_limit,
                limit,
            )
        self._log("info", "[😊] Emoji restore complete: created %d", len(created))
        return created

    async def _shrink_static(self, data: bytes, max_bytes: int) -> bytes:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, self._sync_shrink_static, data, max_bytes
        )

    def _sync_shrink_static(self, data: bytes, max_bytes: int) -> bytes:
        img = Image.open(io.BytesIO(data)).convert("RGBA")
        img.thumbnail((128, 128), Image.LANCZOS)

        out = io.BytesIO()
        img.save(out, format="PNG", optimize=True)
        result = out.getvalue()
        if len(result) <= max_bytes:
            return result

        out = io.BytesIO()
        img.convert("P", palette=Image.ADAPTIVE).save(out, format="PNG", optimize=True)
        result = out.getvalue()
        return result if len(result) <= max_bytes else data

    async def _shrink_animated(self, data: bytes, max_bytes: int) -> bytes:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, self._sync_shrink_animated, data, max_bytes
        )

    def _sync_shrink_animated(self, data: bytes, max_bytes: int) -> bytes:
        img = Image.open(io.BytesIO(data))
        frames, durations = [], []
        for frame in ImageSequence.Iterator(img):
            f = frame.convert("RGBA")
            f.thumbnail((128, 128), Image.LANCZOS)
            frames.append(f)
            durations.append(frame.info.get("duration", 100))

        out = io.BytesIO()
        frames[0].save(
            out,
            format="GIF",
            save_all=True,
            append_images=frames[1:],
            duration=durations,
            loop=0,
            optimize=True,
        )
        result = out.getvalue()
        return result if len(result) <= max_bytes else data
