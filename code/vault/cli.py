# =============================================================================
#  Guildvault
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================


from __future__ import annotations
import argparse
import asyncio
import contextlib
import json
import logging
import os
import sys
from pathlib import Path

import discord
from discord.errors import LoginFailure
from dotenv import load_dotenv

from common.config import Config
from common.errors import BackupError, NotFound
from common.serializer import dumps_snapshot
from vault.client import BackupClient

logger = logging.getLogger("vault")


def setup_logging(level_name: str | None = None) -> None:
    level = getattr(logging, (level_name or "INFO").upper(), logging.INFO)

    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-5s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    root = logging.getLogger()
    root.setLevel(level)

    ch = logging.StreamHandler()
    ch.setFormatter(formatter)
    ch.setLevel(level)
    root.addHandler(ch)

    for lib in (
        "discord",
        "discord.client",
        "discord.gateway",
        "discord.state",
        "discord.http",
    ):
        logging.getLogger(lib).setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="guildvault", description="Back up, restore and diff Discord guilds."
    )
    sub = p.add_subparsers(dest="command", required=True)

    c = sub.add_parser("create", help="capture a guild into a new snapshot")
    c.add_argument("guild_id")
    c.add_argument("--id", dest="backup_id")
    c.add_argument("--max-messages", type=int, dest="max_messages_per_channel")
    c.add_argument("--save-images", choices=("url", "base64"))
    c.add_argument("--members", action="store_true", help="also capture member roles")
    c.add_argument(
        "--skip",
        action="append",
        default=[],
        help="section to leave out (roles, bans, emojis, channels, onboarding, scheduled_events)",
    )

    ld = sub.add_parser("load", help="restore a snapshot onto a guild")
    ld.add_argument("snapshot_id")
    ld.add_argument("guild_id")
    ld.add_argument("--no-clear", action="store_true")
    ld.add_argument("--max-messages", type=int, dest="max_messages_per_channel")
    ld.add_argument("--members", action="store_true", help="re-apply member roles")
    ld.add_argument("--no-onboarding", action="store_true")
    ld.add_argument("--no-events", action="store_true")

    sub.add_parser("list", help="list stored snapshot ids")

    i = sub.add_parser("info", help="show a stored snapshot")
    i.add_argument("snapshot_id")
    i.add_argument("--full", action="store_true", help="print the whole document")

    r = sub.add_parser("remove", help="delete a stored snapshot")
    r.add_argument("snapshot_id")

    d = sub.add_parser("diff", help="compare two stored snapshots")
    d.add_argument("before")
    d.add_argument("after")

    s = sub.add_parser("schedule", help="capture a guild periodically")
    s.add_argument("guild_id")
    s.add_argument("--interval", type=float, help="seconds between captures")
    s.add_argument("--always", action="store_true", help="save even when unchanged")

    return p


def _intents(members: bool) -> discord.Intents:
    intents = discord.Intents.default()
    intents.members = bool(members)
    return intents


async def _with_guild(config: Config, guild_id: str, members: bool, fn):
    """Log in, wait for the gateway cache, run `fn(client, guild)`, log out."""
    token = (config.DISCORD_TOKEN or "").strip()
    if not token:
        raise BackupError("DISCORD_TOKEN is missing. Set it in your environment or .env.")

    bot = discord.Client(intents=_intents(members))
    async with bot:
        runner = asyncio.create_task(bot.start(token))
        try:
            ready = asyncio.create_task(bot.wait_until_ready())
            done, _ = await asyncio.wait(
                {runner, ready}, return_when=asyncio.FIRST_COMPLETED
            )
            if runner in done:
                ready.cancel()
                runner.result()
            guild = bot.get_guild(int(guild_id))
            if guild is None:
                raise NotFound(f"Guild {guild_id} is not visible to this bot")
            vault = BackupClient(bot=bot, config=config)
            try:
                return await fn(vault, guild)
            finally:
                await vault.close()
        finally:
            await bot.close()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await runner


async def _offline(config: Config, fn):
    vault = BackupClient(config=config)
    try:
        return await fn(vault)
    finally:
        await vault.close()


async def run_command(args: argparse.Namespace, config: Config) -> int:
    cmd = args.command

    if cmd == "create":
        opts = {
            "backup_id": args.backup_id,
            "max_messages_per_channel": args.max_messages_per_channel,
            "save_images": args.save_images,
            "backup_members": True if args.members else None,
            "do_not_backup": args.skip or None,
        }

        async def _create(vault, guild):
            snap = await vault.create(guild, opts)
            print(snap.id)

        await _with_guild(config, args.guild_id, args.members, _create)
        return 0

    if cmd == "load":
        opts = {
            "clear_guild_before_restore": False if args.no_clear else None,
            "max_messages_per_channel": args.max_messages_per_channel,
            "restore_members": True if args.members else None,
            "restore_onboarding": False if args.no_onboarding else None,
            "restore_scheduled_events": False if args.no_events else None,
        }

        async def _load(vault, guild):
            report = await vault.load_with_report(args.snapshot_id, guild, opts)
            for item in report.skipped():
                logger.warning("[⚠️] skipped %s %s: %s", item.stage, item.item, item.reason)
            print(report.summary())

        await _with_guild(config, args.guild_id, args.members, _load)
        return 0

    if cmd == "schedule":
        async def _schedule(vault, guild):
            handle = vault.schedule(
                guild, interval=args.interval, skip_if_unchanged=not args.always
            )
            logger.info("[⏱️] Capturing %s every %ss", guild.name, handle.interval)
            try:
                await asyncio.Event().wait()
            finally:
                await handle.stop()

        await _with_guild(config, args.guild_id, False, _schedule)
        return 0

    if cmd == "list":
        async def _list(vault):
            for sid in await vault.list():
                print(sid)

        await _offline(config, _list)
        return 0

    if cmd == "info":
        async def _info(vault):
            info = await vault.fetch(args.snapshot_id)
            if args.full:
                print(dumps_snapshot(info.snapshot, beautify=True))
            else:
                print(f"{info.id}  {info.size_kb} KiB  {info.snapshot.summary()}")

        await _offline(config, _info)
        return 0

    if cmd == "remove":
        await _offline(config, lambda vault: vault.remove(args.snapshot_id))
        return 0

    if cmd == "diff":
        async def _diff(vault):
            result = await vault.diff(args.before, args.after)
            print(json.dumps(result.to_dict(), indent=2))
            return 0 if result.unchanged else 1

        return await _offline(config, _diff)

    raise SystemExit(f"unknown command {cmd!r}")


def main(argv=None) -> int:
    load_dotenv(Path(os.getcwd()) / ".env")
    args = build_parser().parse_args(argv)
    setup_logging(os.getenv("LOG_LEVEL", "INFO"))
    config = Config(logger=logger)

    try:
        return asyncio.run(run_command(args, config))
    except KeyboardInterrupt:
        return 130
    except LoginFailure as e:
        logger.error("[⛔] Discord login failed: %s. Check DISCORD_TOKEN.", e)
        return 2
    except NotFound as e:
        logger.error("[⛔] %s", e)
        return 3
    except BackupError as e:
        logger.error("[⛔] %s", e)
        return 2


if __name__ == "__main__":
    sys.exit(main())
