import discord

from common.models import (
    CategoryRecord,
    ChannelTree,
    RoleRecord,
    Snapshot,
    TextChannelRecord,
    VoiceChannelRecord,
)
from fakes import FakeGuild, FakeRole
from restore.reconcile import IdentifierReconciler


def snapshot_with_roles(*roles):
    return Snapshot(id="s", guild_id="g", name="Guild", roles=tuple(roles))


def test_role_matches_name_and_position():
    guild = FakeGuild()
    decoy = FakeRole("mods", position=7)
    mods = FakeRole("mods", position=3)
    guild.roles += [decoy, mods]

    rec = IdentifierReconciler(guild, snapshot_with_roles(RoleRecord("mods", role_id="42", position=3)))

    assert rec.resolve_role("42") == mods.id


def test_role_falls_back_to_name():
    guild = FakeGuild()
    mods = FakeRole("mods", position=9)
    guild.roles.append(mods)

    rec = IdentifierReconciler(guild, snapshot_with_roles(RoleRecord("mods", role_id="42", position=3)))

    assert rec.resolve_role("42") == mods.id


def test_unresolved_roles_are_dropped():
    guild = FakeGuild()
    mods = FakeRole("mods", position=3)
    guild.roles.append(mods)

    rec = IdentifierReconciler(
        guild,
        snapshot_with_roles(
            RoleRecord("mods", role_id="42", position=3),
            RoleRecord("gone", role_id="43", position=4),
        ),
    )

    assert rec.resolve_role("43") is None
    assert rec.resolve_role("unknown") is None
    assert rec.resolve_roles(["42", "43", "99"]) == [mods.id]


def test_channel_live_id_short_circuits():
    guild = FakeGuild()
    live = guild.add_channel("chat", discord.ChannelType.text)

    rec = IdentifierReconciler(guild, Snapshot(id="s", guild_id="g", name="Guild"))

    assert rec.resolve_channel(str(live.id)) == live.id


def test_channel_matches_name_kind_and_parent():
    tree = ChannelTree(
        categories=(
            CategoryRecord(
                name="Info",
                channel_id="100",
                children=(TextChannelRecord(name="rules", parent="Info", channel_id="101"),),
            ),
        ),
        others=(VoiceChannelRecord(name="rules", channel_id="102"),),
    )
    snap = Snapshot(id="s", guild_id="g", name="Guild", channels=tree)

    guild = FakeGuild()
    loose_text = guild.add_channel("rules", discord.ChannelType.text)
    info = guild.add_channel("Info", discord.ChannelType.category)
    nested = guild.add_channel("rules", discord.ChannelType.text, category=info)
    voice = guild.add_channel("rules", discord.ChannelType.voice)

    rec = IdentifierReconciler(guild, snap)

    assert rec.resolve_channel("101") == nested.id
    assert rec.resolve_channel("102") == voice.id
    assert rec.resolve_channel("100") == info.id
    assert loose_text.id not in rec.resolve_channels(["101", "102", "999"])
    assert rec.resolve_channels(["101", "102", "999"]) == [nested.id, voice.id]


def test_announcement_channel_counts_as_text():
    tree = ChannelTree(others=(TextChannelRecord(name="news", channel_id="5", is_news=True),))
    guild = FakeGuild()
    news = guild.add_channel("news", discord.ChannelType.news)

    rec = IdentifierReconciler(guild, Snapshot(id="s", guild_id="g", name="G", channels=tree))

    assert rec.resolve_channel("5") == news.id
