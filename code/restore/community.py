# =============================================================================
#  Guildvault
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================


from __future__ import annotations
import logging, discord
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from discord.enums import try_enum

from common.common_helpers import http_client_and_route
from common.logctx import format_prefix
from common.models import OnboardingRecord, ScheduledEventRecord
from restore.reconcile import IdentifierReconciler
from restore.report import RestoreContext

logger = logging.getLogger("restore.community")

EVENT_DEDUPE_WINDOW_MS = 60_000
EXTERNAL_ENTITY_TYPE = 3
DEFAULT_LOCATION = "TBD"


def _log(level: str, msg: str, *args) -> None:
    prefix = format_prefix()
    if level == "info":
        logger.info(prefix + msg, *args)
    elif level == "warning":
        logger.warning(prefix + msg, *args)
    else:
        logger.debug(prefix + msg, *args)


def build_onboarding_payload(
    onboarding: OnboardingRecord, reconciler: IdentifierReconciler
) -> dict:
    """
    Onboarding configuration with every stored channel/role id remapped
    onto the target guild. Unresolved ids are dropped.
    """
    prompts = []
    for p in onboarding.prompts:
        options = []
        for o in p.options:
            options.append(
                {
                    "title": o.title,
                    "description": o.description,
                    "emoji": o.emoji,
                    "channel_ids": reconciler.resolve_channels(o.channels),
                    "role_ids": reconciler.resolve_roles(o.roles),
                }
            )
        prompts.append(
            {
                "title": p.title,
                "single_select": bool(p.single_select),
                "required": bool(p.required),
                "in_onboarding": bool(p.in_onboarding),
                "type": int(p.type),
                "options": options,
            }
        )
    return {
        "enabled": bool(onboarding.enabled),
        "mode": int(onboarding.mode),
        "default_channel_ids": reconciler.resolve_channels(onboarding.default_channels),
        "prompts": prompts,
    }


async def restore_onboarding(ctx: RestoreContext) -> bool:
    """Submit the remapped onboarding flow. Any failure skips the whole stage."""
    onboarding = ctx.snapshot.onboarding
    if onboarding is None:
        return False

    try:
        payload = build_onboarding_payload(onboarding, ctx.reconciler)
        prompts = []
        for p in payload["prompts"]:
            options = [
                discord.OnboardingPromptOption(
                    title=o["title"],
                    description=o["description"],
                    emoji=o["emoji"] or discord.utils.MISSING,
                    channels=[discord.Object(id=c) for c in o["channel_ids"]],
                    roles=[discord.Object(id=r) for r in o["role_ids"]],
                )
                for o in p["options"]
            ]
            prompts.append(
                discord.OnboardingPrompt(
                    type=try_enum(discord.OnboardingPromptType, p["type"]),
                    title=p["title"],
                    options=options,
                    single_select=p["single_select"],
                    required=p["required"],
                    in_onboarding=p["in_onboarding"],
                )
            )

        await ctx.retry.run(
            lambda: ctx.guild.edit_onboarding(
                prompts=prompts,
                default_channels=[discord.Object(id=c) for c in payload["default_channel_ids"]],
                enabled=payload["enabled"],
                mode=try_enum(discord.OnboardingMode, payload["mode"]),
                reason="Restored from backup",
            ),
            operation_name="onboarding",
        )
    except Exception as e:
        _log("warning", "[⚠️] Onboarding not restored: %s", e)
        ctx.report.skip("onboarding", "onboarding", e)
        return False

    ctx.report.ok("onboarding", "onboarding")
    _log("info", "[🧭] Onboarding restored (%d prompts)", len(onboarding.prompts))
    return True


def _ms(dt: Optional[datetime]) -> Optional[int]:
    if dt is None:
        return None
    return int(dt.timestamp() * 1000)


def _from_ms(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def is_duplicate_event(rec: ScheduledEventRecord, existing) -> bool:
    """Same name and a start time within the dedupe window of a live event."""
    if rec.scheduled_start_timestamp is None:
        return False
    for ev in existing:
        if ev.name != rec.name:
            continue
        start = _ms(getattr(ev, "start_time", None))
        if start is not None and abs(start - rec.scheduled_start_timestamp) < EVENT_DEDUPE_WINDOW_MS:
            return True
    return False


def _raw_event_payload(kwargs: dict, rule: dict) -> dict:
    """REST body for an event create, for fields the library call cannot carry."""
    payload = {
        "name": kwargs["name"],
        "privacy_level": kwargs["privacy_level"].value,
        "scheduled_start_time": kwargs["start_time"].isoformat(),
        "entity_type": kwargs["entity_type"].value,
        "recurrence_rule": rule,
    }
    if "end_time" in kwargs:
        payload["scheduled_end_time"] = kwargs["end_time"].isoformat()
    if "description" in kwargs:
        payload["description"] = kwargs["description"]
    if "location" in kwargs:
        payload["entity_metadata"] = {"location": kwargs["location"]}
    if "channel" in kwargs:
        payload["channel_id"] = str(kwargs["channel"].id)
    if "image" in kwargs:
        payload["image"] = discord.utils._bytes_to_base64_data(kwargs["image"])
    return payload


async def _create_event(ctx: RestoreContext, rec: ScheduledEventRecord, kwargs: dict):
    guild = ctx.guild
    http_client, Route = http_client_and_route(guild)
    if not rec.recurrence_rule or http_client is None:
        return await ctx.retry.run(
            lambda: guild.create_scheduled_event(**kwargs),
            operation_name=f"event {rec.name}",
        )

    # recurring events go through the raw endpoint so the rule survives
    payload = _raw_event_payload(kwargs, rec.recurrence_rule)
    route = Route("POST", "/guilds/{guild_id}/scheduled-events", guild_id=guild.id)
    data = await ctx.retry.run(
        lambda: http_client.request(route, json=payload, reason=kwargs.get("reason")),
        operation_name=f"event {rec.name}",
    )
    return discord.ScheduledEvent(state=guild._state, data=data)


async def restore_scheduled_events(ctx: RestoreContext) -> List[object]:
    events = ctx.snapshot.scheduled_events
    if not events:
        return []

    guild = ctx.guild
    try:
        existing = list(await guild.fetch_scheduled_events())
    except Exception as e:
        _log("debug", "[📅] Could not list existing events: %s", e)
        existing = []

    created = []
    for rec in events:
        try:
            if is_duplicate_event(rec, existing):
                ctx.report.skip("scheduled_events", rec.name, "already exists")
                continue
            if rec.scheduled_start_timestamp is None:
                ctx.report.skip("scheduled_events", rec.name, "no start time")
                continue

            start = _from_ms(rec.scheduled_start_timestamp)
            kwargs = dict(
                name=rec.name,
                start_time=start,
                entity_type=try_enum(discord.EntityType, rec.entity_type),
                privacy_level=try_enum(discord.PrivacyLevel, rec.privacy_level),
                reason="Restored from backup",
            )
            if rec.description:
                kwargs["description"] = rec.description

            if rec.entity_type == EXTERNAL_ENTITY_TYPE:
                kwargs["location"] = rec.location or DEFAULT_LOCATION
                kwargs["end_time"] = (
                    _from_ms(rec.scheduled_end_timestamp)
                    if rec.scheduled_end_timestamp
                    else start + timedelta(hours=1)
                )
            else:
                channel_id = ctx.reconciler.resolve_channel(rec.channel_id)
                if channel_id is None:
                    ctx.report.skip("scheduled_events", rec.name, "channel unresolved")
                    continue
                kwargs["channel"] = discord.Object(id=channel_id)
                if rec.scheduled_end_timestamp:
                    kwargs["end_time"] = _from_ms(rec.scheduled_end_timestamp)

            image = await ctx.media(rec.image_base64, rec.image_url)
            if image is not None:
                kwargs["image"] = image

            ev = await _create_event(ctx, rec, kwargs)
            created.append(ev)
            existing.append(ev)
            ctx.report.ok("scheduled_events", rec.name)
        except Exception as e:
            _log("warning", "[⚠️] Failed creating event %s: %s", rec.name, e)
            ctx.report.skip("scheduled_events", rec.name, e)

    _log("info", "[📅] Scheduled events restored: %d/%d", len(created), len(events))
    return created
