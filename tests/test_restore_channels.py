import asyncio

import discord
import pytest

from common.models import (
    CategoryRecord,
    ChannelTree,
    CommunityLinks,
    FileRecord,
    ForumChannelRecord,
    ForumTagRecord,
    MessageRecord,
    PermissionOverwriteRecord,
    Snapshot,
    StageChannelRecord,
    TextChannelRecord,
    ThreadRecord,
    VoiceChannelRecord,
)
from fakes import FakeChannel, FakeGuild, FakeRole
from restore.channels import MAX_BITRATE_PER_TIER, ChannelManager, clamp_bitrate
from restore.relay import select_messages


def tree_snapshot(categories=(), others=(), **kw):
    return Snapshot(
        id="s",
        guild_id="g",
        name="Guild",
        channels=ChannelTree(categories=tuple(categories), others=tuple(others)),
        **kw,
    )


def restore(make_ctx, guild, snapshot, options=None, fetcher=None):
    ctx = make_ctx(guild, snapshot, options, fetcher) if fetcher else make_ctx(guild, snapshot, options)
    asyncio.run(ChannelManager(ctx).restore_channels())
    return ctx


def by_name(guild, name):
    return [c for c in guild.channels if c.name == name]


# ── bitrate ───────────────────────────────────────────────────────────────────


@pytest.mark.parametrize(
    "bitrate,tier,expected",
    [
        (384000, 1, 128000),
        (384000, 0, 64000),
        (256000, 2, 256000),
        (96000, 0, 64000),
        (96000, 3, 96000),
        (8000, 0, 8000),
    ],
)
def test_clamp_bitrate(bitrate, tier, expected):
    assert clamp_bitrate(bitrate, tier) == expected
    assert clamp_bitrate(bitrate, tier) <= MAX_BITRATE_PER_TIER[tier]


def test_voice_bitrate_is_clamped_to_tier(make_ctx):
    guild = FakeGuild(premium_tier=1)
    snap = tree_snapshot(others=[VoiceChannelRecord(name="lounge", bitrate=384000, user_limit=5)])

    restore(make_ctx, guild, snap)

    (lounge,) = by_name(guild, "lounge")
    assert lounge.type == discord.ChannelType.voice
    assert lounge.bitrate <= 128000
    assert lounge.user_limit == 5


# ── kinds ─────────────────────────────────────────────────────────────────────


def test_stage_becomes_voice_without_community(make_ctx):
    guild = FakeGuild()
    snap = tree_snapshot(others=[StageChannelRecord(name="town hall", topic="AMA")])

    restore(make_ctx, guild, snap)

    (ch,) = by_name(guild, "town hall")
    assert ch.type == discord.ChannelType.voice
    assert ch.edits == []


def test_stage_keeps_topic_with_community(make_ctx):
    guild = FakeGuild(features=["COMMUNITY"])
    snap = tree_snapshot(others=[StageChannelRecord(name="town hall", topic="AMA")])

    restore(make_ctx, guild, snap)

    (ch,) = by_name(guild, "town hall")
    assert ch.type == discord.ChannelType.stage_voice
    assert ch.topic == "AMA"


def test_news_needs_news_feature(make_ctx):
    plain = FakeGuild()
    news = FakeGuild(features=["NEWS"])
    snap = tree_snapshot(others=[TextChannelRecord(name="updates", is_news=True)])

    restore(make_ctx, plain, snap)
    restore(make_ctx, news, snap)

    assert by_name(plain, "updates")[0].type == discord.ChannelType.text
    assert by_name(news, "updates")[0].type == discord.ChannelType.news


def test_category_children_and_overwrites(make_ctx):
    guild = FakeGuild()
    mods = FakeRole("mods", position=1)
    guild.roles.append(mods)
    perms = (
        PermissionOverwriteRecord(role_name="mods", allow="1024", deny="2048"),
        PermissionOverwriteRecord(role_name="ghost", allow="8"),
    )
    snap = tree_snapshot(
        categories=[
            CategoryRecord(
                name="Info",
                permissions=perms,
                children=(
                    TextChannelRecord(name="a", parent="Info", topic="first"),
                    VoiceChannelRecord(name="b", parent="Info"),
                ),
            )
        ],
        others=[TextChannelRecord(name="loose")],
    )

    ctx = restore(make_ctx, guild, snap)

    (info,) = by_name(guild, "Info")
    assert list(info.overwrites) == [mods]
    allow, deny = info.overwrites[mods].pair()
    assert allow.value == 1024 and deny.value == 2048
    assert {c.name for c in info.channels} == {"a", "b"}
    assert by_name(guild, "a")[0].topic == "first"
    assert by_name(guild, "loose")[0].category is None
    assert len(ctx.report.succeeded("channels")) == 4


def test_failed_category_does_not_stop_children(make_ctx):
    guild = FakeGuild()

    async def broken(*a, **kw):
        raise discord.DiscordException("nope")

    guild.create_category = broken
    snap = tree_snapshot(
        categories=[CategoryRecord(name="Info", children=(TextChannelRecord(name="a", parent="Info"),))]
    )

    ctx = restore(make_ctx, guild, snap)

    assert [r.item for r in ctx.report.skipped("channels")] == ["Info"]
    assert by_name(guild, "a")[0].category is None


def test_rules_channel_is_edited_in_place(make_ctx):
    guild = FakeGuild(features=["COMMUNITY"])
    rules = guild.add_channel("rules", discord.ChannelType.text)
    guild.rules_channel = rules
    snap = tree_snapshot(
        others=[TextChannelRecord(name="rules", channel_id="555", topic="Be nice")],
        community=CommunityLinks(rules_channel_id="555", rules_channel_name="rules"),
    )

    restore(make_ctx, guild, snap)

    assert by_name(guild, "rules") == [rules]
    assert rules.edits[0]["topic"] == "Be nice"


# ── messages ──────────────────────────────────────────────────────────────────


def stored_messages(n):
    # newest first, as captured
    return tuple(MessageRecord(username="alice", content=f"m{i}") for i in range(n, 0, -1))


def test_select_messages_keeps_most_recent_oldest_first():
    msgs = (MessageRecord(username="x", content=""),) + stored_messages(5)

    chosen = select_messages(msgs, 3)

    assert [m.content for m in chosen] == ["m3", "m4", "m5"]


def test_relay_replays_ten_most_recent_oldest_first(make_ctx, sleeps):
    guild = FakeGuild()
    snap = tree_snapshot(others=[TextChannelRecord(name="chat", messages=stored_messages(25))])

    restore(make_ctx, guild, snap, {"max_messages_per_channel": 10})

    (chat,) = by_name(guild, "chat")
    (hook,) = chat.webhooks
    assert hook.name == "MessagesBackup"
    assert [s["content"] for s in hook.sent] == [f"m{i}" for i in range(16, 26)]
    assert all(s["username"] == "alice" for s in hook.sent)
    assert all(s["allowed_mentions"].everyone is False for s in hook.sent)
    # paced between messages, not after the last one
    assert sleeps.calls.count(1.0) == 9


def test_relay_truncates_and_pins(make_ctx):
    guild = FakeGuild()
    msg = MessageRecord(username="u" * 120, content="x" * 2500, pinned=True)
    snap = tree_snapshot(others=[TextChannelRecord(name="chat", messages=(msg,))])

    restore(make_ctx, guild, snap)

    (hook,) = by_name(guild, "chat")[0].webhooks
    sent = hook.sent[0]
    assert len(sent["content"]) == 2000
    assert len(sent["username"]) == 80
    assert hook.delivered[0].pinned_by_restore


def test_relay_reuploads_attachments(make_ctx):
    fetched = []

    async def fetcher(url):
        fetched.append(url)
        return b"remote"

    guild = FakeGuild()
    msg = MessageRecord(
        username="alice",
        files=(
            FileRecord(name="a.png", attachment="https://cdn.example/a.png"),
            FileRecord(name="b.png", attachment="aW5saW5l"),
        ),
    )
    snap = tree_snapshot(others=[TextChannelRecord(name="chat", messages=(msg,))])

    restore(make_ctx, guild, snap, fetcher=fetcher)

    (hook,) = by_name(guild, "chat")[0].webhooks
    files = hook.sent[0]["files"]
    assert [f.filename for f in files] == ["a.png", "b.png"]
    assert fetched == ["https://cdn.example/a.png"]


def test_threads_share_the_channel_webhook(make_ctx):
    guild = FakeGuild()
    thread = ThreadRecord(name="side", auto_archive_duration=4320, messages=stored_messages(2))
    snap = tree_snapshot(
        others=[TextChannelRecord(name="chat", messages=stored_messages(1), threads=(thread,))]
    )

    ctx = restore(make_ctx, guild, snap)

    (chat,) = by_name(guild, "chat")
    assert len(chat.webhooks) == 1
    (side,) = chat.threads
    assert side.auto_archive_duration == 4320
    sends = chat.webhooks[0].sent
    assert "thread" not in sends[0]
    assert [s["thread"] for s in sends[1:]] == [side, side]
    assert ctx.report.succeeded("threads")[0].item == "#chat/side"


def test_forum_posts_open_with_oldest_message(make_ctx):
    guild = FakeGuild()
    post = ThreadRecord(name="bug report", messages=stored_messages(3))
    snap = tree_snapshot(
        others=[
            ForumChannelRecord(
                name="support",
                available_tags=(ForumTagRecord(name="bug", moderated=True),),
                threads=(post,),
            )
        ]
    )

    restore(make_ctx, guild, snap)

    (forum,) = by_name(guild, "support")
    assert forum.type == discord.ChannelType.forum
    assert [t.name for t in forum.available_tags] == ["bug"]
    (thread,) = forum.threads
    assert thread.opening["content"] == "m1"
    (hook,) = forum.webhooks
    assert [s["content"] for s in hook.sent] == ["m2", "m3"]
    assert all(s["thread"] is thread for s in hook.sent)


def test_webhook_failure_is_recorded(make_ctx):
    guild = FakeGuild()

    async def no_hooks(self, name, reason=None):
        raise discord.DiscordException("webhooks disabled")

    snap = tree_snapshot(others=[TextChannelRecord(name="chat", messages=stored_messages(2))])
    original = FakeChannel.create_webhook
    FakeChannel.create_webhook = no_hooks
    try:
        ctx = restore(make_ctx, guild, snap)
    finally:
        FakeChannel.create_webhook = original

    assert ctx.report.succeeded("channels")[0].item == "chat"
    assert ctx.report.skipped("messages")[0].item == "webhook #chat"
